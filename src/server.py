import asyncio
from contextlib import asynccontextmanager, suppress

import jwt
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from admin import PUBLIC_ROUTES as ADMIN_PUBLIC_ROUTES
from admin import check_token
from admin import rt as admin_rt
from config import Config, load_config
from counters import CounterStore
from db import PersistenceManager, snapshot_task
from errors import CounterError, InvalidKey, StorageUnavailable
from handlers import always_get_store, client_address, page_referer, user_agent
from merge import MergeEngine
from models.api import APIError, CountResult
from models.generic import EventCounts
from utils import ERROR, LOG, parse_referer
from visitors import FingerprintGenerator


def start_engine(app: FastAPI, config: Config):
    """ Builds the engine and loads the database. Raises on unreadable storage. """
    store = CounterStore(config, FingerprintGenerator.from_config(config))
    persistence = PersistenceManager(config)
    persistence.load(store)
    app.state.store = store
    app.state.persistence = persistence
    app.state.merger = MergeEngine(store)


@asynccontextmanager
async def lifespan(app: FastAPI):
    config: Config = app.state.config
    start_engine(app, config)
    store, persistence = app.state.store, app.state.persistence

    task = asyncio.create_task(snapshot_task(persistence, store, config.save_interval, config.save_timeout))
    print(f"Data saves every {config.save_interval}s to {config.db_path}")
    print(f"Admin API protected: {bool(config.admin_token)}")
    try:
        yield
    finally:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        print("Shutting down, saving data...")
        try:
            persistence.snapshot_and_persist(store)
        except StorageUnavailable as e:
            ERROR("Failed to save on shutdown:", e)
        persistence.close()


def create_app(config: Config | None = None) -> FastAPI:
    if config is None:
        config = load_config()

    app = FastAPI(lifespan=lifespan)
    app.state.config = config
    app.include_router(admin_rt)

    ################## Middlewares #####################

    @app.middleware("http")
    async def check_admin(request: Request, call_next):
        path = request.url.path
        if path.startswith("/api/admin") and path not in ADMIN_PUBLIC_ROUTES and request.method != "OPTIONS":
            if not config.admin_token:
                if not config.dev:
                    return PlainTextResponse("admin api is disabled, set ADMIN_TOKEN", status_code=403)
                LOG("ADMIN_TOKEN is not set! Admin API is unprotected (dev mode).")
                return await call_next(request)
            token = request.headers.get("token")
            auth = request.headers.get("authorization", "")
            if not token and auth.startswith("Bearer "):
                token = auth.split(" ", 1)[1].strip()
            if not token:
                return PlainTextResponse("bad request, missing token", status_code=403)
            try:
                check_token(token, config.jwt_secret)
            except jwt.ExpiredSignatureError:
                return PlainTextResponse("token expired", status_code=403)
            except jwt.InvalidTokenError:
                return PlainTextResponse("invalid token", status_code=403)
        return await call_next(request)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins(),
        allow_credentials=config.cors_origins() != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["*"],
    )

    @app.exception_handler(CounterError)
    async def counter_error(request: Request, exc: CounterError):
        if isinstance(exc, StorageUnavailable):
            ERROR(f"{request.method} {request.url.path}:", exc)
        return JSONResponse(APIError(error_message=str(exc)).model_dump(), status_code=exc.status_code)

    ################### Routes #####################

    @app.get("/ping")
    async def ping():
        return PlainTextResponse("pong")

    @app.post("/api")
    async def count(request: Request) -> CountResult:
        """ Counts the view and returns the new counts. """
        try:
            site, page = parse_referer(page_referer(request))
            counts = always_get_store(request).record_event(site, page, client_address(request), user_agent(request))
        except InvalidKey as e:
            return CountResult(success=False, message=str(e))
        return CountResult(success=True, message="ok", data=counts)

    @app.get("/api")
    async def get_counts(request: Request) -> CountResult:
        """ Current counts, nothing is counted. """
        store = always_get_store(request)
        try:
            site, page = parse_referer(page_referer(request))
            site_counts = store.peek(site)
            page_counts = store.peek(site, page)
        except InvalidKey as e:
            return CountResult(success=False, message=str(e))
        return CountResult(success=True, message="ok", data=EventCounts(
            site_pv=site_counts.pv, site_uv=site_counts.uv,
            page_pv=page_counts.pv, page_uv=page_counts.uv,
        ))

    @app.put("/api")
    async def submit(request: Request):
        """ Counts the view without replying with counts. """
        try:
            site, page = parse_referer(page_referer(request))
            always_get_store(request).submit(site, page, client_address(request), user_agent(request))
        except InvalidKey:
            return Response(status_code=status.HTTP_400_BAD_REQUEST)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    return app


def main():
    import uvicorn
    config = load_config()
    print(f"visitcount listening on {config.web_host}:{config.web_port}")
    uvicorn.run(create_app(config), host=config.web_host, port=config.web_port)


if __name__ == "__main__":
    main()

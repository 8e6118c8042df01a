import asyncio
import secrets
import time

import jwt
from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from errors import StorageUnavailable
from handlers import (
    admin_log,
    always_get_config,
    always_get_merger,
    always_get_persistence,
    always_get_store,
)
from models.api import (
    AdminCredentials,
    APISuccess,
    AuthenticationFailure,
    AuthenticationResult,
    AuthenticationSuccess,
    KeyUpdate,
)
from models.export import ExportDocument, MergeMode, SyncRequest
from utils import ERROR, LOG

rt = APIRouter(prefix="/api/admin")

JWT_ALGORITHM = "HS256"
TOKEN_LIFETIME = 60 * 60 * 24  # 24 hours

PUBLIC_ROUTES = {
    "/api/admin/authenticate",
}


def issue_token(jwt_secret: str) -> str:
    now = int(time.time())
    payload = {"sub": "admin", "iat": now, "exp": now + TOKEN_LIFETIME}
    return jwt.encode(payload, jwt_secret, algorithm=JWT_ALGORITHM)


def check_token(token: str, jwt_secret: str) -> dict:
    """ Raises jwt.InvalidTokenError (or ExpiredSignatureError) on a bad token. """
    payload = jwt.decode(token, jwt_secret, algorithms=[JWT_ALGORITHM])
    if payload.get("sub") != "admin":
        raise jwt.InvalidTokenError("not an admin token")
    return payload


async def persist_now(request: Request):
    # After bulk changes; a failure here leaves it to the next periodic save
    try:
        await asyncio.to_thread(always_get_persistence(request).snapshot_and_persist, always_get_store(request))
    except StorageUnavailable as e:
        ERROR("Save after admin change failed:", e)


@rt.post("/authenticate")
async def authenticate(request: Request, creds: AdminCredentials) -> AuthenticationResult:
    config = always_get_config(request)
    if not config.admin_token:
        return AuthenticationFailure(message="admin login is disabled: ADMIN_TOKEN is not set")
    if not secrets.compare_digest(creds.token.encode(), config.admin_token.encode()):
        LOG("Refused admin login from", request.client.host if request.client else "unknown")
        return AuthenticationFailure(message="wrong admin token")
    return AuthenticationSuccess(token=issue_token(config.jwt_secret))


@rt.get("/stats")
async def stats(request: Request):
    # Whole-store reads run in a worker thread, live counting stays on the loop
    data = await asyncio.to_thread(always_get_store(request).stats)
    saved_at = await asyncio.to_thread(always_get_persistence(request).last_snapshot_at)
    return {"success": True, "data": data, "last_snapshot_at": saved_at}


@rt.get("/keys")
async def list_keys(request: Request, cursor: int = 0, count: int = 20):
    cursor, count = max(cursor, 0), min(max(count, 1), 500)
    sites, total = await asyncio.to_thread(always_get_store(request).list_sites, cursor, count)
    next_cursor = cursor + count if len(sites) == count and cursor + count < total else 0
    return {"success": True, "data": sites, "total": total, "next_cursor": next_cursor}


@rt.delete("/keys")
async def delete_key(request: Request, site: str, page: str | None = None) -> APISuccess:
    removed = always_get_store(request).delete(site, page)
    if page is None:
        await admin_log(request, "delete_site", f"{site} ({removed} records)")
        return APISuccess(message="site deleted")
    await admin_log(request, "delete_page", f"{site} {page}")
    return APISuccess(message="page deleted")


@rt.post("/keys/update")
async def update_key(request: Request, update: KeyUpdate):
    counts = always_get_store(request).admin_set(update.site, update.page, pv=update.pv, uv=update.uv)
    await admin_log(request, "edit_page" if update.page is not None else "edit_site",
                    f"{update.site} {update.page or ''} pv = {update.pv} uv = {update.uv}")
    return {"success": True, "message": "updated", "data": counts}


@rt.get("/pages")
async def list_pages(request: Request, site: str, cursor: int = 0, count: int = 50):
    cursor, count = max(cursor, 0), min(max(count, 1), 500)
    pages, total = await asyncio.to_thread(always_get_store(request).list_pages, site, cursor, count)
    next_cursor = cursor + count if len(pages) == count and cursor + count < total else 0
    return {"success": True, "data": pages, "total": total, "next_cursor": next_cursor}


@rt.post("/reset")
async def reset(request: Request) -> APISuccess:
    await asyncio.to_thread(always_get_store(request).reset)
    await admin_log(request, "reset", "all records dropped")
    return APISuccess(message="store reset")


@rt.get("/export")
async def export(request: Request):
    merger, store = always_get_merger(request), always_get_store(request)
    body = await asyncio.to_thread(lambda: merger.export_document(store).model_dump_json())
    filename = time.strftime("visitcount-%Y%m%d-%H%M%S.json")
    return Response(
        body,
        media_type=JSONResponse.media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@rt.post("/import")
async def import_document(request: Request, document: ExportDocument, mode: MergeMode):
    summary = await asyncio.to_thread(always_get_merger(request).import_document, document, mode)
    await admin_log(request, "import", f"{summary.sites} sites, {summary.pages} pages ({mode.value})")
    await persist_now(request)
    return {"success": True, "message": f"Imported {summary.sites} sites, {summary.pages} pages", "data": summary}


@rt.post("/sync")
async def sync(request: Request, body: SyncRequest):
    summary = await asyncio.to_thread(always_get_merger(request).sync, body.records)
    await admin_log(request, "sync", f"{summary.sites} sites, {summary.pages} pages, {summary.errors} errors")
    await persist_now(request)
    return {
        "success": True,
        "message": f"Synced {summary.sites + summary.pages}/{len(body.records)}, {summary.errors} failed",
        "data": summary,
    }


@rt.post("/save")
async def save(request: Request):
    sites, pages = await asyncio.to_thread(
        always_get_persistence(request).snapshot_and_persist, always_get_store(request))
    return {"success": True, "message": "saved", "data": {"sites": sites, "pages": pages}}


@rt.get("/logs")
async def logs(request: Request, page: int = 1, size: int = 20):
    page, size = max(page, 1), min(max(size, 1), 200)
    rows, total = await asyncio.to_thread(always_get_persistence(request).query_logs, page, size)
    return {"success": True, "data": rows, "total": total, "page": page, "size": size}

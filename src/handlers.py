import asyncio

from fastapi import HTTPException, Request

from config import Config
from counters import CounterStore
from db import PersistenceManager
from errors import StorageUnavailable
from merge import MergeEngine
from utils import ERROR, LOG

REFERER_HEADERS = ("x-bsz-referer", "referer")


def client_address(request: Request) -> str:
    # Behind cloudflare / a reverse proxy the socket peer is the proxy
    ip = request.headers.get("cf-connecting-ip")
    if ip:
        return ip.strip()
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    ip = request.headers.get("x-real-ip")
    if ip:
        return ip.strip()
    if request.client is not None:
        return request.client.host
    return "unknown"


def user_agent(request: Request) -> str:
    return request.headers.get("user-agent", "")


def page_referer(request: Request) -> str | None:
    for h in REFERER_HEADERS:
        v = request.headers.get(h)
        if v:
            return v
    return None


def always_get_config(request: Request) -> Config:
    config = getattr(request.app.state, "config", None)
    if config is None:
        raise HTTPException(status_code=503, detail="Server is still starting.")
    return config


def always_get_store(request: Request) -> CounterStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="Server is still starting.")
    return store


def always_get_persistence(request: Request) -> PersistenceManager:
    persistence = getattr(request.app.state, "persistence", None)
    if persistence is None:
        raise HTTPException(status_code=503, detail="Server is still starting.")
    return persistence


def always_get_merger(request: Request) -> MergeEngine:
    merger = getattr(request.app.state, "merger", None)
    if merger is None:
        raise HTTPException(status_code=503, detail="Server is still starting.")
    return merger


async def admin_log(request: Request, action: str, detail: str):
    """ Records an admin operation. The operation itself already happened. """
    ip = client_address(request)
    LOG(f"[admin] {action}: {detail} ({ip})")
    try:
        # Off the event loop: a running snapshot holds the connection
        await asyncio.to_thread(always_get_persistence(request).add_log, action, detail, ip)
    except StorageUnavailable as e:
        ERROR(f"Could not record admin operation {action} ({detail}):", e)

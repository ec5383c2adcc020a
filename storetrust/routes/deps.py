"""Shared route dependencies (overridable in tests via app.dependency_overrides)."""

import hmac
from collections.abc import AsyncGenerator

import httpx
from fastapi import Depends, Header, HTTPException

from storetrust.schemas.common import UNAUTHORIZED, error_body
from storetrust.services.analysis import AnalyzerChain, build_default_chain
from storetrust.services.places_client import GooglePlacesClient
from storetrust.services.snapshot import PostgresSnapshotStore, SnapshotCache
from storetrust.services.store_detail import DetailDeps
from storetrust.settings import get_settings
from storetrust.stores.repository import StoreRepository, open_repository

# Shared outbound client (created lazily, closed on shutdown)
_http_client: httpx.AsyncClient | None = None


def get_http_client() -> httpx.AsyncClient:
    global _http_client
    if _http_client is None:
        _http_client = httpx.AsyncClient(timeout=30.0)
    return _http_client


async def close_http_client() -> None:
    global _http_client
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None


async def get_repository() -> AsyncGenerator[StoreRepository, None]:
    async with open_repository() as repo:
        yield repo


def get_places_client() -> GooglePlacesClient:
    return GooglePlacesClient(http_client=get_http_client())


def get_analyzer() -> AnalyzerChain:
    return build_default_chain(get_http_client())


def get_detail_deps(
    places: GooglePlacesClient = Depends(get_places_client),
    analyzer: AnalyzerChain = Depends(get_analyzer),
) -> DetailDeps:
    return DetailDeps(
        places=places,
        analyzer=analyzer,
        cache_factory=lambda repo: SnapshotCache(PostgresSnapshotStore(repo)),
    )


def require_cron_secret(
    x_cron_secret: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> None:
    """Accept `x-cron-secret: <secret>` or `Authorization: Bearer <secret>`.

    No-op when CRON_SECRET is not configured.
    """
    secret = get_settings().cron_secret
    if not secret:
        return
    provided = x_cron_secret or ""
    if not provided and authorization and authorization.lower().startswith("bearer "):
        provided = authorization[7:].strip()
    if not provided or not hmac.compare_digest(provided, secret):
        raise HTTPException(
            status_code=401,
            detail=error_body(UNAUTHORIZED, "Missing or invalid cron secret"),
        )

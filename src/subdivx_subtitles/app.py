from __future__ import annotations

import asyncio
import datetime
import logging
import re
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Protocol, Tuple
from urllib.parse import parse_qs

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from . import __version__, metrics
from .cache import KEY_SEPARATOR, KVStore, Memoizer
from .errors import ArchiveError, SubdivxError, UpstreamError
from .logs import REQUEST_ID
from .metadata import CinemetaClient, parse_stremio_id
from .service import SEARCH_KEY_PREFIX, TITLE_KEY_PREFIX, SubtitleService, Subtitles
from .settings import Settings
from .sources.subdivx import SubdivxClient

log = logging.getLogger("subdivx_subtitles.app")

IMDB_ID_RE = re.compile(r"^tt\d+$")
MEDIA_TYPES = ("movie", "series")

LONG_CACHE = "public, max-age=1296000"
SHORT_CACHE = "public, max-age=120"

MANIFEST = {
    "id": "ar.xor.subdivx.py",
    "version": __version__,
    "name": "Subdivx",
    "description": "Subdivx subtitles addon",
    "catalogs": [],
    "resources": ["subtitles"],
    "types": list(MEDIA_TYPES),
    "idPrefixes": ["tt"],
}


class SubtitleBackend(Protocol):
    async def search_subtitles(
        self, media_type: str, imdb_id: str, season: int = 0, episode: int = 0, filename: str = ""
    ) -> Subtitles: ...

    async def get_subtitle(self, subtitle_id: int) -> bytes: ...


# ---------------------------------------------------------------------
# Request validation
# ---------------------------------------------------------------------
def validate_media_type(media_type: str) -> str:
    if media_type not in MEDIA_TYPES:
        raise HTTPException(status_code=400, detail="invalid subtitle type, only movie and series are supported")
    return media_type


def parse_item_id(raw_id: str) -> Tuple[str, int, int]:
    """``tt0944947:1:2`` -> ``("tt0944947", 1, 2)``; season/episode default to 0."""
    parsed = parse_stremio_id(raw_id)
    if not IMDB_ID_RE.match(parsed.base):
        raise HTTPException(status_code=400, detail="invalid IMDB title")
    season = episode = 0
    if parsed.season is not None and parsed.episode is not None:
        try:
            season, episode = int(parsed.season), int(parsed.episode)
        except ValueError:
            log.warning("Non-numeric season/episode in %r", raw_id)
            season = episode = 0
    return parsed.base, season, episode


def parse_filename(extra: str) -> str:
    """Pull ``filename`` out of the Stremio extra segment (``filename=a.mkv&videoSize=1``)."""
    values = parse_qs(extra)
    filename = (values.get("filename") or [""])[0]
    if not filename:
        raise HTTPException(status_code=400, detail="filename not found")
    return filename


def validate_subtitle_id(raw_id: str) -> int:
    try:
        value = int(raw_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid Subdivx subtitle id, not a number") from None
    if value <= 0:
        raise HTTPException(status_code=400, detail="invalid Subdivx subtitle id, less than or equal to 0")
    return value


def subtitles_cache_control(subtitles: Subtitles, today: Optional[datetime.date] = None) -> str:
    """Old titles with several results rarely change; cache them for 15 days."""
    today = today or datetime.date.today()
    if subtitles.year < today.year - 1 and len(subtitles.ids) > 1:
        return LONG_CACHE
    return SHORT_CACHE


def create_app(settings: Optional[Settings] = None, service: Optional[SubtitleBackend] = None) -> FastAPI:
    """Build the addon app.

    Without an injected ``service`` the lifespan opens the cache store and
    the upstream clients, and closes them on shutdown.
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if service is not None:
            app.state.service = service
            app.state.store = None
            yield
            return

        store = KVStore(settings.cache_dir)
        subdivx = SubdivxClient.from_settings(settings)
        cinemeta = CinemetaClient.from_settings(settings)
        app.state.store = store
        app.state.service = SubtitleService.from_settings(settings, subdivx, cinemeta, Memoizer(store))
        log.info("Addon ready at %s (cache %s)", settings.addon_host, store.path)
        try:
            yield
        finally:
            await subdivx.aclose()
            await cinemeta.aclose()
            store.close()

    app = FastAPI(title="Subdivx Subtitles for Stremio", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "HEAD", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        rid = request.headers.get("x-request-id") or uuid.uuid4().hex[:16]
        token = REQUEST_ID.set(rid)
        try:
            response = await call_next(request)
        finally:
            REQUEST_ID.reset(token)
        response.headers["X-Request-ID"] = rid
        return response

    @app.exception_handler(SubdivxError)
    async def subdivx_error_handler(request: Request, exc: SubdivxError) -> JSONResponse:
        status_code = 502 if isinstance(exc, (UpstreamError, ArchiveError)) else 500
        log.error("%s %s failed: %s: %s", request.method, request.url.path, type(exc).__name__, exc)
        return JSONResponse({"error": type(exc).__name__}, status_code=status_code)

    # -----------------------------------------------------------------
    # Manifest, health and metrics
    # -----------------------------------------------------------------
    @app.get("/manifest.json")
    async def manifest() -> JSONResponse:
        return JSONResponse(MANIFEST)

    @app.get("/healthz")
    async def healthz() -> JSONResponse:
        return JSONResponse({"status": "ok", "version": __version__})

    @app.get("/metrics")
    async def metrics_endpoint(request: Request) -> Response:
        store = request.app.state.store
        if store is not None:
            for prefix in (TITLE_KEY_PREFIX, SEARCH_KEY_PREFIX):
                live = await asyncio.to_thread(store.count, prefix + KEY_SEPARATOR)
                metrics.CACHE_ENTRIES.labels(key_prefix=prefix).set(live)
        return Response(content=metrics.render(), media_type=metrics.CONTENT_TYPE_LATEST)

    # -----------------------------------------------------------------
    # Subtitles
    # -----------------------------------------------------------------
    @app.get("/subtitles/{media_type}/{item_id}/{extra}.json")
    async def subtitles(request: Request, media_type: str, item_id: str, extra: str) -> JSONResponse:
        t0 = time.perf_counter()
        validate_media_type(media_type)
        imdb_id, season, episode = parse_item_id(item_id)
        filename = parse_filename(extra)

        found = await request.app.state.service.search_subtitles(
            media_type, imdb_id, season, episode, filename
        )
        payload = {
            "subtitles": [
                {"id": str(sid), "lang": found.lang, "url": f"{settings.addon_host}/subdivx/{sid}"}
                for sid in found.ids
            ]
        }
        cache_control = subtitles_cache_control(found)
        metrics.REQ_LATENCY.labels(route="subtitles").observe(time.perf_counter() - t0)
        return JSONResponse(
            payload,
            headers={"Cache-Control": cache_control, "CDN-Cache-Control": cache_control},
        )

    @app.get("/subdivx/{subtitle_id}")
    async def subdivx_subtitle(request: Request, subtitle_id: str) -> Response:
        t0 = time.perf_counter()
        sid = validate_subtitle_id(subtitle_id)
        data = await request.app.state.service.get_subtitle(sid)
        metrics.REQ_LATENCY.labels(route="subtitle").observe(time.perf_counter() - t0)
        return Response(
            content=data,
            media_type="text/plain; charset=utf-8",
            headers={"Cache-Control": LONG_CACHE, "CDN-Cache-Control": LONG_CACHE},
        )

    return app


__all__ = ["MANIFEST", "create_app", "parse_filename", "parse_item_id", "subtitles_cache_control"]

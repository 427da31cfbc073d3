from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional, Sequence
from urllib.parse import unquote

import httpx

from .errors import UpstreamProtocolError, UpstreamUnavailable
from .settings import Settings

log = logging.getLogger("subdivx_subtitles.metadata")

# Prefer v3 endpoint; fall back to cinemeta-live if needed
CINEMETA_FALLBACK = "https://cinemeta-live.strem.io"

YEAR_RE = re.compile(r"(19|20)\d{2}")


@dataclass
class StremioID:
    base: str
    season: Optional[str]
    episode: Optional[str]


@dataclass(frozen=True)
class Title:
    name: str
    year: int = 0


def parse_stremio_id(raw_id: str) -> StremioID:
    """Parse Stremio IDs that may be URL-encoded once or twice.

    Examples of incoming IDs:
    - tt0369179                   (movie)
    - tt0369179:1:2               (series S01E02)
    - tt0369179%3A1%3A2           (encoded once)
    - tt0369179%253A1%253A2       (encoded twice)
    """
    s = raw_id or ""
    # Decode up to twice to handle cases like %253A -> %3A -> :
    for _ in range(2):
        decoded = unquote(s)
        if decoded == s:
            break
        s = decoded

    parts = s.split(":")
    base = parts[0] if parts else s
    season = parts[1] if len(parts) > 1 and parts[1] else None
    episode = parts[2] if len(parts) > 2 and parts[2] else None
    return StremioID(base=base, season=season, episode=episode)


def normalize_year(raw: object) -> int:
    """First plausible year in ``raw`` ("2011-2019", "1999"), 0 when none."""
    if not raw:
        return 0
    match = YEAR_RE.search(str(raw))
    return int(match.group(0)) if match else 0


class CinemetaClient:
    """Title lookups against Stremio's Cinemeta addon."""

    def __init__(
        self,
        bases: Sequence[str] = ("https://v3-cinemeta.strem.io", CINEMETA_FALLBACK),
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.bases = [b.rstrip("/") for b in dict.fromkeys(bases)]
        self._client = httpx.AsyncClient(timeout=timeout, follow_redirects=True, transport=transport)

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "CinemetaClient":
        return cls(
            (settings.cinemeta_url, CINEMETA_FALLBACK),
            timeout=settings.request_timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _fetch_meta(self, media_type: str, imdb_id: str) -> dict:
        last_exc: Optional[Exception] = None
        for base in self.bases:
            url = f"{base}/meta/{media_type}/{imdb_id}.json"
            try:
                resp = await self._client.get(url)
            except httpx.RequestError as exc:
                last_exc = exc
                continue
            if resp.status_code == 404:
                # Try next base
                continue
            if not resp.is_success:
                last_exc = UpstreamProtocolError(f"{url} returned HTTP {resp.status_code}")
                continue
            try:
                payload = resp.json()
            except ValueError as exc:
                last_exc = exc
                continue
            meta = payload.get("meta") if isinstance(payload, dict) else None
            if meta:
                return meta

        if isinstance(last_exc, httpx.RequestError):
            log.warning("Failed to fetch Cinemeta metadata", exc_info=last_exc)
            raise UpstreamUnavailable(f"Cinemeta lookup for {imdb_id} failed: {last_exc}") from last_exc
        if last_exc is not None:
            log.warning("Failed to fetch Cinemeta metadata: %s", last_exc)
            raise UpstreamProtocolError(f"Cinemeta lookup for {imdb_id} failed: {last_exc}") from last_exc
        raise UpstreamProtocolError(f"Cinemeta has no {media_type} metadata for {imdb_id}")

    async def get_title(self, media_type: str, imdb_id: str) -> Title:
        meta = await self._fetch_meta(media_type, imdb_id)
        name = str(meta.get("name") or "").strip()
        if not name:
            raise UpstreamProtocolError(f"Cinemeta metadata for {imdb_id} has no name")
        year = normalize_year(meta.get("releaseInfo") or meta.get("year") or meta.get("released"))
        return Title(name=name, year=year)


__all__ = ["CinemetaClient", "StremioID", "Title", "normalize_year", "parse_stremio_id"]

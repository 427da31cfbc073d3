"""Search and download orchestration for the addon routes."""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import List

from . import metrics
from .cache import Memoizer
from .encoding import detect_encoding, normalize
from .extract import ExtractedFile, extract_subtitle
from .matching import rank_candidates
from .metadata import CinemetaClient, Title
from .settings import Settings
from .sources.subdivx import SearchResult, SubdivxClient

log = logging.getLogger("subdivx_subtitles.service")

LANG_ISO639_2 = "spa"

TITLE_KEY_PREFIX = "imdb.title"
SEARCH_KEY_PREFIX = "subdivx.subtitles.v1"


@dataclass(frozen=True)
class Subtitles:
    ids: List[int] = field(default_factory=list)
    scores: List[int] = field(default_factory=list)
    lang: str = LANG_ISO639_2
    year: int = 0


def search_term(media_type: str, title: Title, season: int = 0, episode: int = 0) -> str:
    """``"The Matrix (1999)"`` for movies, ``"Dark S01E02"`` for series."""
    if media_type == "movie":
        return f"{title.name} ({title.year})"
    return f"{title.name} S{season:02d}E{episode:02d}"


class SubtitleService:
    def __init__(
        self,
        subdivx: SubdivxClient,
        metadata: CinemetaClient,
        memoizer: Memoizer,
        *,
        title_ttl: float = 48 * 60 * 60,
        search_ttl: float = 24 * 60 * 60,
    ) -> None:
        self.subdivx = subdivx
        self.metadata = metadata
        self.memoizer = memoizer
        self.title_ttl = title_ttl
        self.search_ttl = search_ttl

    @classmethod
    def from_settings(
        cls, settings: Settings, subdivx: SubdivxClient, metadata: CinemetaClient, memoizer: Memoizer
    ) -> "SubtitleService":
        return cls(
            subdivx,
            metadata,
            memoizer,
            title_ttl=settings.title_cache_ttl,
            search_ttl=settings.search_cache_ttl,
        )

    async def get_title(self, media_type: str, imdb_id: str) -> Title:
        return await self.memoizer.get_or_compute(
            f"{TITLE_KEY_PREFIX} : {imdb_id}",
            self.title_ttl,
            lambda: self.metadata.get_title(media_type, imdb_id),
            Title,
        )

    async def _search(self, term: str) -> SearchResult:
        token = await self.subdivx.get_token()
        return await self.subdivx.search(token, term)

    async def search_subtitles(
        self,
        media_type: str,
        imdb_id: str,
        season: int = 0,
        episode: int = 0,
        filename: str = "",
    ) -> Subtitles:
        """Find Subdivx subtitles for a title, best filename match first."""
        metrics.SEARCH_COUNT.labels(media_type=media_type).inc()

        title = await self.get_title(media_type, imdb_id)
        term = search_term(media_type, title, season, episode)
        result = await self.memoizer.get_or_compute(
            f"{SEARCH_KEY_PREFIX} : {term}",
            self.search_ttl,
            lambda: self._search(term),
            SearchResult,
        )

        ranked = rank_candidates(result.candidates, filename)
        ids = [candidate.id for candidate, _ in ranked]
        scores = [value for _, value in ranked]
        log.info(
            "Found subtitles title=%r total=%d ids=%s scores=%s",
            term,
            result.total_records,
            ids,
            scores,
        )
        return Subtitles(ids=ids, scores=scores, lang=LANG_ISO639_2, year=title.year)

    async def fetch_subtitle(self, subtitle_id: int) -> ExtractedFile:
        archive = await self.subdivx.download(subtitle_id)
        extracted = extract_subtitle(archive)
        return dataclasses.replace(extracted, detected_encoding=detect_encoding(extracted.data))

    async def get_subtitle(self, subtitle_id: int) -> bytes:
        """Download, unpack and transcode one subtitle to UTF-8."""
        extracted = await self.fetch_subtitle(subtitle_id)
        log.info(
            "Got subtitle id=%s name=%s encoding=%s size=%d",
            subtitle_id,
            extracted.name,
            extracted.detected_encoding.value,
            len(extracted.data),
        )
        metrics.DOWNLOAD_COUNT.labels(encoding=extracted.detected_encoding.value).inc()
        return normalize(extracted.data, extracted.detected_encoding)


__all__ = ["LANG_ISO639_2", "SubtitleService", "Subtitles", "search_term"]

"""Subdivx session, search and archive download client.

Subdivx has no public API. Searching takes three requests:

1. ``GET /inc/gt.php?gt=1`` hands out a token plus a session cookie.
2. ``GET /`` serves the landing page, whose footer carries the deployed site
   version (``>v1.2.3<``). The search form field is named ``buscar`` followed
   by that version with the dots removed, so it changes on every redeploy.
3. ``POST /inc/ajax.php`` with the form and the cookie returns the rows.

Every call is a coroutine over one shared ``httpx.AsyncClient``; cancelling
the calling task aborts the request and returns the connection to the pool.
Nothing here retries.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from http.cookies import CookieError, SimpleCookie
from typing import List, Optional, Tuple

import httpx
from pydantic import BaseModel, PositiveInt, ValidationError

from ..errors import UpstreamProtocolError, UpstreamUnavailable
from ..matching import tokenize
from ..settings import Settings

log = logging.getLogger("subdivx_subtitles.sources.subdivx")

SITE_VERSION_RE = re.compile(r">v([0-9.a-z]+)<")

TOKEN_PATH = "/inc/gt.php"
SEARCH_PATH = "/inc/ajax.php"
DOWNLOAD_PATH = "/descargar.php"

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded; charset=UTF-8"


@dataclass(frozen=True)
class SessionToken:
    token: str
    cookie_name: str
    cookie_value: str

    @property
    def cookie_header(self) -> str:
        return f"{self.cookie_name}={self.cookie_value}"


@dataclass(frozen=True)
class SearchCandidate:
    id: int
    title: str
    description: str
    # tokenized once from "<title> <description>"
    description_tokens: Tuple[str, ...] = ()

    @classmethod
    def from_row(cls, id: int, title: str, description: str) -> "SearchCandidate":
        return cls(
            id=id,
            title=title,
            description=description,
            description_tokens=tuple(tokenize(f"{title} {description}")),
        )


@dataclass(frozen=True)
class SearchResult:
    total_records: int
    candidates: Tuple[SearchCandidate, ...] = ()


class _TokenPayload(BaseModel):
    token: str


class _Row(BaseModel):
    id: PositiveInt
    titulo: str = ""
    descripcion: str = ""


class _SearchPayload(BaseModel):
    iTotalRecords: int
    aaData: List[_Row] = []


def parse_site_version(html: str) -> str:
    """Return the site version scraped from the landing page, dots stripped.

    Raises ``UpstreamProtocolError`` when no marker is present or when the
    page carries more than one distinct version.
    """
    found = {m.group(1) for m in SITE_VERSION_RE.finditer(html)}
    if not found:
        raise UpstreamProtocolError("site version marker not found on landing page")
    if len(found) > 1:
        raise UpstreamProtocolError(f"ambiguous site version markers: {sorted(found)}")
    version = found.pop().replace(".", "")
    if not version:
        raise UpstreamProtocolError("site version marker is empty")
    return version


def _parse_session_cookie(set_cookie: Optional[str]) -> Tuple[str, str]:
    if not set_cookie:
        raise UpstreamProtocolError("token response carries no session cookie")
    jar: SimpleCookie = SimpleCookie()
    try:
        jar.load(set_cookie)
    except CookieError as exc:
        raise UpstreamProtocolError(f"invalid session cookie: {exc}") from exc
    for name, morsel in jar.items():
        return name, morsel.value
    raise UpstreamProtocolError("invalid session cookie: nothing parsed")


class SubdivxClient:
    def __init__(
        self,
        base_url: str = "https://www.subdivx.com",
        *,
        timeout: float = 10.0,
        download_timeout: float = 20.0,
        max_archive_bytes: int = 200 * 1024,
        user_agent: Optional[str] = None,
        accept_language: Optional[str] = None,
        max_connections: int = 100,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.max_archive_bytes = max_archive_bytes
        self._download_timeout = download_timeout
        headers = {}
        if user_agent:
            headers["User-Agent"] = user_agent
        if accept_language:
            headers["Accept-Language"] = accept_language
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            limits=httpx.Limits(
                max_connections=max_connections,
                max_keepalive_connections=max_connections,
            ),
            follow_redirects=True,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "SubdivxClient":
        return cls(
            settings.base_url,
            timeout=settings.request_timeout,
            download_timeout=settings.download_timeout,
            max_archive_bytes=settings.max_archive_bytes,
            user_agent=settings.user_agent,
            accept_language=settings.accept_language,
            max_connections=settings.max_connections,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.RequestError as exc:
            log.warning("subdivx %s %s failed: %s", method, url, exc)
            raise UpstreamUnavailable(f"{method} {url} failed: {exc}") from exc

    async def get_token(self) -> SessionToken:
        response = await self._request("GET", TOKEN_PATH, params={"gt": "1"})
        if not response.is_success:
            raise UpstreamProtocolError(f"token request returned HTTP {response.status_code}")
        try:
            payload = _TokenPayload.model_validate_json(response.content)
        except ValidationError as exc:
            raise UpstreamProtocolError(f"malformed token response: {exc}") from exc
        name, value = _parse_session_cookie(response.headers.get("set-cookie"))
        return SessionToken(token=payload.token, cookie_name=name, cookie_value=value)

    async def fetch_site_version(self) -> str:
        response = await self._request("GET", "/")
        if not response.is_success:
            raise UpstreamProtocolError(f"landing page returned HTTP {response.status_code}")
        return parse_site_version(response.text)

    async def search(self, token: SessionToken, query: str) -> SearchResult:
        """Run one search for ``query`` using a freshly acquired ``token``.

        The site version is scraped on every call since a redeploy renames
        the search field.
        """
        version = await self.fetch_site_version()
        form = {
            "tabla": "resultados",
            "filtros": "",
            f"buscar{version}": query,
            "token": token.token,
        }
        response = await self._request(
            "POST",
            SEARCH_PATH,
            data=form,
            headers={"Cookie": token.cookie_header, "Content-Type": FORM_CONTENT_TYPE},
        )
        if response.status_code != 200:
            raise UpstreamProtocolError(f"search returned HTTP {response.status_code}")
        try:
            payload = _SearchPayload.model_validate_json(response.content)
        except ValidationError as exc:
            raise UpstreamProtocolError(f"malformed search response: {exc}") from exc

        candidates = tuple(
            SearchCandidate.from_row(row.id, row.titulo, row.descripcion) for row in payload.aaData
        )
        log.debug(
            "subdivx search %r: %d rows of %d total", query, len(candidates), payload.iTotalRecords
        )
        return SearchResult(total_records=payload.iTotalRecords, candidates=candidates)

    async def download(self, subtitle_id: int) -> bytes:
        """Fetch the archive for ``subtitle_id``, refusing bodies over the cap."""
        try:
            async with self._client.stream(
                "GET", DOWNLOAD_PATH, params={"id": str(subtitle_id)}, timeout=self._download_timeout
            ) as response:
                if response.status_code != 200:
                    raise UpstreamProtocolError(
                        f"download of {subtitle_id} returned HTTP {response.status_code}"
                    )
                buf = bytearray()
                async for chunk in response.aiter_bytes():
                    buf.extend(chunk)
                    if len(buf) > self.max_archive_bytes:
                        raise UpstreamProtocolError(
                            f"archive {subtitle_id} exceeds {self.max_archive_bytes} bytes"
                        )
        except httpx.RequestError as exc:
            log.warning("subdivx download %s failed: %s", subtitle_id, exc)
            raise UpstreamUnavailable(f"download of {subtitle_id} failed: {exc}") from exc
        return bytes(buf)


__all__ = [
    "SessionToken",
    "SearchCandidate",
    "SearchResult",
    "SubdivxClient",
    "parse_site_version",
]

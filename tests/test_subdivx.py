import asyncio
from urllib.parse import parse_qs

import httpx
import pytest

from subdivx_subtitles.errors import UpstreamProtocolError, UpstreamUnavailable
from subdivx_subtitles.settings import Settings
from subdivx_subtitles.sources.subdivx import (
    SearchCandidate,
    SessionToken,
    SubdivxClient,
    parse_site_version,
)


LANDING = "<html><footer><span>v3.2.1</span></footer></html>"

ROWS = {
    "iTotalRecords": 42,
    "aaData": [
        {"id": 101, "titulo": "Dark S01E01", "descripcion": "version WEB-DL de netflix"},
        {"id": 102, "titulo": "Dark S01E01", "descripcion": "bluray x264"},
    ],
}


def _client(handler, **kwargs) -> SubdivxClient:
    return SubdivxClient(transport=httpx.MockTransport(handler), **kwargs)


def _run(coro_fn):
    async def runner():
        return await coro_fn()

    return asyncio.run(runner())


def test_parse_site_version_strips_dots():
    assert parse_site_version(LANDING) == "321"
    assert parse_site_version("<b>v1.0.2b</b> ... <i>v1.0.2b</i>") == "102b"


@pytest.mark.parametrize(
    "html",
    [
        "<html>no marker here</html>",
        "<span>V3.2.1</span>",
        "<span>v3.2.1</span><span>v3.2.2</span>",
        "<span>v...</span>",
    ],
)
def test_parse_site_version_failures(html):
    with pytest.raises(UpstreamProtocolError):
        parse_site_version(html)


def test_get_token():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/inc/gt.php"
        assert request.url.params["gt"] == "1"
        return httpx.Response(
            200,
            json={"token": "abc123"},
            headers={"Set-Cookie": "sdx=s3ss10n; Path=/; HttpOnly"},
        )

    client = _client(handler)

    async def go():
        try:
            return await client.get_token()
        finally:
            await client.aclose()

    token = _run(go)
    assert token == SessionToken(token="abc123", cookie_name="sdx", cookie_value="s3ss10n")
    assert token.cookie_header == "sdx=s3ss10n"


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, json={"token": "abc"}),
        httpx.Response(200, content=b"<html>", headers={"Set-Cookie": "sdx=1"}),
        httpx.Response(200, json={"nope": 1}, headers={"Set-Cookie": "sdx=1"}),
        httpx.Response(503, json={"token": "abc"}, headers={"Set-Cookie": "sdx=1"}),
    ],
)
def test_get_token_protocol_errors(response):
    client = _client(lambda request: response)

    async def go():
        try:
            await client.get_token()
        finally:
            await client.aclose()

    with pytest.raises(UpstreamProtocolError):
        _run(go)


def test_transport_failure_is_unavailable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)

    async def go():
        try:
            await client.get_token()
        finally:
            await client.aclose()

    with pytest.raises(UpstreamUnavailable):
        _run(go)


def test_timeout_is_unavailable():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    client = _client(handler)

    async def go():
        try:
            await client.download(5)
        finally:
            await client.aclose()

    with pytest.raises(UpstreamUnavailable):
        _run(go)


def test_search_builds_versioned_form():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET" and request.url.path == "/":
            return httpx.Response(200, text=LANDING)
        assert request.method == "POST"
        assert request.url.path == "/inc/ajax.php"
        seen["cookie"] = request.headers["cookie"]
        seen["content_type"] = request.headers["content-type"]
        seen["user_agent"] = request.headers["user-agent"]
        seen["accept_language"] = request.headers["accept-language"]
        seen["form"] = parse_qs(request.content.decode(), keep_blank_values=True)
        return httpx.Response(200, json=ROWS)

    settings = Settings(_env_file=None)
    client = SubdivxClient.from_settings(settings, transport=httpx.MockTransport(handler))
    token = SessionToken("tok", "sdx", "s3ss10n")

    async def go():
        try:
            return await client.search(token, "Dark S01E01")
        finally:
            await client.aclose()

    result = _run(go)

    assert seen["form"] == {
        "tabla": ["resultados"],
        "filtros": [""],
        "buscar321": ["Dark S01E01"],
        "token": ["tok"],
    }
    assert seen["cookie"] == "sdx=s3ss10n"
    assert seen["content_type"].startswith("application/x-www-form-urlencoded")
    assert "Chrome" in seen["user_agent"]
    assert seen["accept_language"] == "es-AR,es;q=0.9,en;q=0.8"

    assert result.total_records == 42
    assert [c.id for c in result.candidates] == [101, 102]
    assert result.candidates[1] == SearchCandidate(
        id=102,
        title="Dark S01E01",
        description="bluray x264",
        description_tokens=("dark", "s01e01", "bluray", "x264"),
    )


def _search_with(post_response, landing=LANDING):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, text=landing)
        return post_response

    client = _client(handler)

    async def go():
        try:
            return await client.search(SessionToken("t", "c", "v"), "x")
        finally:
            await client.aclose()

    return _run(go)


def test_search_fails_when_marker_missing():
    with pytest.raises(UpstreamProtocolError):
        _search_with(httpx.Response(200, json=ROWS), landing="<html>redesigned</html>")


@pytest.mark.parametrize(
    "response,message",
    [
        (httpx.Response(500, json=ROWS), "search returned HTTP 500"),
        (httpx.Response(200, content=b"<html>error</html>"), "malformed search response"),
        (httpx.Response(200, json={"aaData": []}), "malformed search response"),
        (httpx.Response(200, json={"iTotalRecords": 1, "aaData": [{"id": "abc"}]}), "malformed search response"),
        (httpx.Response(200, json={"iTotalRecords": 1, "aaData": [{"id": 0}]}), "malformed search response"),
    ],
)
def test_search_protocol_errors(response, message):
    with pytest.raises(UpstreamProtocolError, match=message):
        _search_with(response)


def test_search_redirect_to_login_is_rejected_by_status():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(302, headers={"Location": "/login"})
        if request.url.path == "/login":
            return httpx.Response(403, text="<html>login</html>")
        return httpx.Response(200, text=LANDING)

    client = _client(handler)

    async def go():
        try:
            await client.search(SessionToken("t", "c", "v"), "x")
        finally:
            await client.aclose()

    with pytest.raises(UpstreamProtocolError, match="search returned HTTP 403"):
        _run(go)


def test_search_empty_result():
    result = _search_with(httpx.Response(200, json={"iTotalRecords": 0, "aaData": []}))
    assert result.total_records == 0
    assert result.candidates == ()


def test_download_returns_body():
    archive = b"PK\x03\x04" + b"\x00" * 200

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/descargar.php"
        assert request.url.params["id"] == "777"
        return httpx.Response(200, content=archive)

    client = _client(handler)

    async def go():
        try:
            return await client.download(777)
        finally:
            await client.aclose()

    assert _run(go) == archive


def test_download_follows_redirect():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/descargar.php":
            return httpx.Response(302, headers={"Location": "/sub9/777.zip"})
        return httpx.Response(200, content=b"PK\x03\x04data")

    client = _client(handler)

    async def go():
        try:
            return await client.download(777)
        finally:
            await client.aclose()

    assert _run(go) == b"PK\x03\x04data"


def test_download_over_cap_is_rejected():
    client = _client(lambda request: httpx.Response(200, content=b"x" * 1025), max_archive_bytes=1024)

    async def go():
        try:
            await client.download(1)
        finally:
            await client.aclose()

    with pytest.raises(UpstreamProtocolError):
        _run(go)


def test_download_exactly_at_cap_is_allowed():
    client = _client(lambda request: httpx.Response(200, content=b"x" * 1024), max_archive_bytes=1024)

    async def go():
        try:
            return await client.download(1)
        finally:
            await client.aclose()

    assert len(_run(go)) == 1024


def test_download_bad_status():
    client = _client(lambda request: httpx.Response(404, text="not found"))

    async def go():
        try:
            await client.download(1)
        finally:
            await client.aclose()

    with pytest.raises(UpstreamProtocolError):
        _run(go)

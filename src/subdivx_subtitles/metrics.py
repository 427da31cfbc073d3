from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

REQ_LATENCY = Histogram("subdivx_request_seconds", "Request latency seconds", ["route"])
CACHE_GETS = Counter("subdivx_cache_gets_total", "Memoized cache lookups", ["key_prefix", "result"])
SEARCH_COUNT = Counter("subdivx_searches_total", "Subtitle searches", ["media_type"])
DOWNLOAD_COUNT = Counter("subdivx_downloads_total", "Subtitle downloads", ["encoding"])
CACHE_ENTRIES = Gauge("subdivx_cache_entries", "Live cache entries, refreshed on scrape", ["key_prefix"])


def render() -> bytes:
    return generate_latest()


__all__ = [
    "CONTENT_TYPE_LATEST",
    "CACHE_ENTRIES",
    "CACHE_GETS",
    "DOWNLOAD_COUNT",
    "REQ_LATENCY",
    "SEARCH_COUNT",
    "render",
]

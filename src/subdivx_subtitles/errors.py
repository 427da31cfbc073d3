from __future__ import annotations


class SubdivxError(RuntimeError):
    """Base class for every failure raised by the acquisition pipeline."""


class UpstreamError(SubdivxError):
    pass


class UpstreamUnavailable(UpstreamError):
    """Transport-level failure talking to the upstream site (network, timeout)."""


class UpstreamProtocolError(UpstreamError):
    """The upstream answered, but not in the shape we scrape for.

    Raised on unexpected status codes, malformed JSON, a missing session
    cookie or a missing site version marker. Usually means the site changed.
    """


class ArchiveError(SubdivxError):
    pass


class MalformedArchive(ArchiveError):
    pass


class UnsupportedArchiveFormat(ArchiveError):
    pass


class NoSubtitleInArchive(ArchiveError):
    pass


class CacheStoreError(SubdivxError):
    """Serialization or storage I/O failure in the persistent cache."""


__all__ = [
    "SubdivxError",
    "UpstreamError",
    "UpstreamUnavailable",
    "UpstreamProtocolError",
    "ArchiveError",
    "MalformedArchive",
    "UnsupportedArchiveFormat",
    "NoSubtitleInArchive",
    "CacheStoreError",
]

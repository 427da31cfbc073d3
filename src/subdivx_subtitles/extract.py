"""Pull the subtitle file out of a downloaded archive.

The container format is decided once from the leading magic bytes. Each
format has a strategy that yields the archive entries in their stored order,
and the first entry with a subtitle extension wins. Callers must cap the
download before handing the bytes over (see ``Settings.max_archive_bytes``,
200 KiB by default): subtitles are small text files and the cap keeps a
hostile or broken response from exhausting memory.
"""

from __future__ import annotations

import enum
import gzip
import io
import logging
import struct
import zipfile
import zlib
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, NamedTuple, Optional

import rarfile

from .encoding import DetectedEncoding
from .errors import MalformedArchive, NoSubtitleInArchive, UnsupportedArchiveFormat

log = logging.getLogger("subdivx_subtitles.extract")

SUBTITLE_EXTENSIONS = (".srt", ".sub", ".ssa")

# Upper bound for a single decompressed entry.
MAX_ENTRY_BYTES = 10 * 1024 * 1024

MIN_ARCHIVE_BYTES = 4


class ArchiveFormat(enum.Enum):
    ZIP = "zip"
    RAR = "rar"
    RAR5 = "rar5"
    GZIP = "gzip"


# Longest signatures first so RAR 5 is not mistaken for RAR 1.5-4.0.
SIGNATURES = (
    (b"Rar!\x1a\x07\x01\x00", ArchiveFormat.RAR5),
    (b"Rar!\x1a\x07\x00", ArchiveFormat.RAR),
    (b"PK\x03\x04", ArchiveFormat.ZIP),
    (b"\x1f\x8b", ArchiveFormat.GZIP),
)


@dataclass(frozen=True)
class ExtractedFile:
    name: str
    data: bytes
    detected_encoding: DetectedEncoding = DetectedEncoding.UNKNOWN


class ArchiveEntry(NamedTuple):
    name: str
    read: Callable[[], bytes]


def is_subtitle(name: str) -> bool:
    return name.lower().endswith(SUBTITLE_EXTENSIONS)


def sniff_format(data: bytes) -> Optional[ArchiveFormat]:
    """Classify ``data`` by its leading bytes, ``None`` when unknown."""
    for signature, fmt in SIGNATURES:
        if data.startswith(signature):
            return fmt
    return None


def _zip_entries(data: bytes) -> Iterator[ArchiveEntry]:
    try:
        archive = zipfile.ZipFile(io.BytesIO(data))
    except (zipfile.BadZipFile, zipfile.LargeZipFile, ValueError) as exc:
        raise MalformedArchive(f"invalid ZIP: {exc}") from exc

    with archive:
        for info in archive.infolist():
            if info.is_dir():
                continue

            def _read(info: zipfile.ZipInfo = info) -> bytes:
                if info.file_size > MAX_ENTRY_BYTES:
                    raise MalformedArchive(f"ZIP entry {info.filename} is {info.file_size} bytes")
                try:
                    return archive.read(info)
                except (zipfile.BadZipFile, zlib.error, NotImplementedError, RuntimeError, EOFError) as exc:
                    raise MalformedArchive(f"failed to read {info.filename} from ZIP: {exc}") from exc

            yield ArchiveEntry(info.filename, _read)


def _rar_entries(data: bytes) -> Iterator[ArchiveEntry]:
    try:
        # strict: a broken header is an error instead of an early end of archive
        archive = rarfile.RarFile(io.BytesIO(data), errors="strict")
    except rarfile.Error as exc:
        raise MalformedArchive(f"invalid RAR: {exc}") from exc

    with archive:
        for info in archive.infolist():
            if info.is_dir():
                continue

            def _read(info: rarfile.RarInfo = info) -> bytes:
                if info.file_size and info.file_size > MAX_ENTRY_BYTES:
                    raise MalformedArchive(f"RAR entry {info.filename} is {info.file_size} bytes")
                try:
                    return archive.read(info)
                except rarfile.RarCannotExec as exc:
                    raise MalformedArchive(
                        "RAR extraction failed. Install 'unrar', 'unar', 'bsdtar' or '7z' on the host."
                    ) from exc
                except rarfile.Error as exc:
                    raise MalformedArchive(f"failed to read {info.filename} from RAR: {exc}") from exc

            yield ArchiveEntry(info.filename, _read)


# gzip header flags (RFC 1952)
_FHCRC = 0x02
_FEXTRA = 0x04
_FNAME = 0x08


def gzip_member_name(data: bytes) -> Optional[str]:
    """Return the original file name stored in a gzip header, if any."""
    if len(data) < 10:
        raise MalformedArchive("GZIP header truncated")
    flags = data[3]
    offset = 10
    if flags & _FEXTRA:
        if len(data) < offset + 2:
            raise MalformedArchive("GZIP extra field truncated")
        (extra_len,) = struct.unpack("<H", data[offset:offset + 2])
        offset += 2 + extra_len
    if not flags & _FNAME:
        return None
    end = data.find(b"\x00", offset)
    if end < 0:
        raise MalformedArchive("GZIP file name not terminated")
    # RFC 1952 mandates ISO-8859-1 for the stored name
    return data[offset:end].decode("latin-1")


def _gzip_entries(data: bytes) -> Iterator[ArchiveEntry]:
    name = gzip_member_name(data)
    if name is None:
        log.info("GZIP member carries no file name")
        return

    def _read() -> bytes:
        try:
            with gzip.GzipFile(fileobj=io.BytesIO(data)) as stream:
                payload = stream.read(MAX_ENTRY_BYTES + 1)
        except (OSError, EOFError, zlib.error) as exc:
            raise MalformedArchive(f"invalid GZIP: {exc}") from exc
        if len(payload) > MAX_ENTRY_BYTES:
            raise MalformedArchive(f"GZIP member exceeds {MAX_ENTRY_BYTES} bytes")
        return payload

    yield ArchiveEntry(name, _read)


STRATEGIES: Dict[ArchiveFormat, Callable[[bytes], Iterator[ArchiveEntry]]] = {
    ArchiveFormat.ZIP: _zip_entries,
    ArchiveFormat.RAR: _rar_entries,
    ArchiveFormat.RAR5: _rar_entries,
    ArchiveFormat.GZIP: _gzip_entries,
}


def extract_subtitle(data: bytes) -> ExtractedFile:
    """Return the first subtitle entry of the archive in ``data``.

    Raises ``MalformedArchive`` for short or corrupt input,
    ``UnsupportedArchiveFormat`` when no signature matches and
    ``NoSubtitleInArchive`` when no entry has a subtitle extension.
    """
    if len(data) < MIN_ARCHIVE_BYTES:
        raise MalformedArchive(f"archive too short ({len(data)} bytes)")

    fmt = sniff_format(data)
    if fmt is None:
        raise UnsupportedArchiveFormat(f"unknown archive signature {data[:8]!r}")

    seen = []
    for entry in STRATEGIES[fmt](data):
        if is_subtitle(entry.name):
            payload = entry.read()
            log.debug("extract_subtitle: picked %s from %s archive (%d bytes)", entry.name, fmt.value, len(payload))
            return ExtractedFile(name=entry.name, data=payload)
        seen.append(entry.name)

    raise NoSubtitleInArchive(f"no {'/'.join(SUBTITLE_EXTENSIONS)} file in {fmt.value} archive (entries: {seen})")


__all__ = [
    "ArchiveFormat",
    "ExtractedFile",
    "SUBTITLE_EXTENSIONS",
    "extract_subtitle",
    "gzip_member_name",
    "is_subtitle",
    "sniff_format",
]

"""Detect a subtitle's text encoding and transcode it to UTF-8.

Only the Latin encodings the upstream actually serves are transcoded. When
detection is inconclusive the bytes pass through untouched so already-valid
text is never corrupted. ``normalize`` never raises.
"""

from __future__ import annotations

import enum
import logging
from typing import Optional

from charset_normalizer import from_bytes

log = logging.getLogger("subdivx_subtitles.encoding")


class DetectedEncoding(str, enum.Enum):
    UTF8 = "utf-8"
    WINDOWS_1252 = "windows-1252"
    ISO_8859_1 = "iso-8859-1"
    UNKNOWN = "unknown"


# charset_normalizer names -> ours
_CANDIDATES = {
    "cp1252": DetectedEncoding.WINDOWS_1252,
    "latin_1": DetectedEncoding.ISO_8859_1,
}

_CODECS = {
    DetectedEncoding.WINDOWS_1252: "cp1252",
    DetectedEncoding.ISO_8859_1: "latin-1",
}


def _prefers_cp1252(data: bytes) -> bool:
    # 0x80-0x9F are control codes in ISO-8859-1 and never show up in real text,
    # whereas Windows-1252 maps most of them to quotes, dashes and the euro sign.
    if not any(0x80 <= b <= 0x9F for b in data):
        return False
    try:
        data.decode("cp1252")
    except UnicodeDecodeError:
        return False
    return True


def detect_encoding(data: bytes) -> DetectedEncoding:
    if not data:
        return DetectedEncoding.UTF8
    try:
        data.decode("utf-8")
    except UnicodeDecodeError:
        pass
    else:
        return DetectedEncoding.UTF8

    try:
        match = from_bytes(data, cp_isolation=list(_CANDIDATES)).best()
    except Exception as exc:  # noqa: BLE001
        log.warning("charset detection failed: %s", exc)
        return DetectedEncoding.UNKNOWN
    if match is None:
        # too short for charset_normalizer; Windows-1252 punctuation still gives it away
        if _prefers_cp1252(data):
            return DetectedEncoding.WINDOWS_1252
        return DetectedEncoding.UNKNOWN

    detected = _CANDIDATES.get(match.encoding, DetectedEncoding.UNKNOWN)
    if detected is DetectedEncoding.ISO_8859_1 and _prefers_cp1252(data):
        detected = DetectedEncoding.WINDOWS_1252
    return detected


def normalize(data: bytes, detected: Optional[DetectedEncoding] = None) -> bytes:
    """Return ``data`` as UTF-8, or unchanged when it already is or can't be told."""
    if detected is None:
        detected = detect_encoding(data)
    codec = _CODECS.get(detected)
    if codec is None:
        return data
    try:
        return data.decode(codec).encode("utf-8")
    except UnicodeDecodeError:
        # cp1252 leaves 0x81, 0x8D, 0x8F, 0x90 and 0x9D undefined
        log.info("bytes undefined in %s, passing subtitle through", codec)
        return data


__all__ = ["DetectedEncoding", "detect_encoding", "normalize"]

"""Subdivx subtitles addon for Stremio."""

__version__ = "0.1.0"

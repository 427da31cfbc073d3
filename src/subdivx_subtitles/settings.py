from typing import Optional
from urllib.parse import urlparse

from pydantic import field_validator
from pydantic_settings import BaseSettings

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/107.0.0.0 Safari/537.36"
)


class Settings(BaseSettings):
    addon_host: str = "http://127.0.0.1:3593"
    listen_host: str = "0.0.0.0"
    listen_port: int = 3593

    base_url: str = "https://www.subdivx.com"
    request_timeout: float = 10.0
    download_timeout: float = 20.0
    max_archive_bytes: int = 200 * 1024
    # avoid IP-based language detection on the upstream
    accept_language: str = "es-AR,es;q=0.9,en;q=0.8"
    user_agent: str = DEFAULT_USER_AGENT
    max_connections: int = 100

    cinemeta_url: str = "https://v3-cinemeta.strem.io"

    cache_dir: str = ".cache"
    title_cache_ttl: float = 48 * 60 * 60
    search_cache_ttl: float = 24 * 60 * 60

    log_level: str = "INFO"
    json_logs: bool = False
    log_file: Optional[str] = None

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @field_validator("addon_host")
    @classmethod
    def _strip_addon_host(cls, value: str) -> str:
        parsed = urlparse(value)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"ADDON_HOST must be an absolute URL, got {value!r}")
        return f"{parsed.scheme}://{parsed.netloc}"

    @field_validator("base_url", "cinemeta_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

import uvicorn

from subdivx_subtitles.app import create_app
from subdivx_subtitles.logs import setup_logging
from subdivx_subtitles.settings import Settings


def main() -> None:
    settings = Settings()
    setup_logging(settings.log_level, json_logs=settings.json_logs, log_file=settings.log_file)
    uvicorn.run(
        create_app(settings),
        host=settings.listen_host,
        port=settings.listen_port,
        log_config=None,
        proxy_headers=True,
    )


if __name__ == "__main__":
    main()

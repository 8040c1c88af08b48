import logging

from .config import get_settings


def main() -> None:
    settings = get_settings()
    logger = logging.getLogger("study_calendar")
    logger.info("Starting calendar API on %s:%s", settings.api_host, settings.api_port)

    import uvicorn

    uvicorn.run(
        "study_calendar.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level="info",
        timeout_graceful_shutdown=30,
    )


if __name__ == "__main__":
    main()

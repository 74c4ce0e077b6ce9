import uvicorn

from tallypoint.config import load_settings
from tallypoint.trace_context import configure_logging


def main():
    settings = load_settings()
    configure_logging(settings.log_level)

    uvicorn.run(
        "tallypoint.collector_app:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()

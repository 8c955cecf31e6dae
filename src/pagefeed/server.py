"""Process entry point: ``python -m pagefeed.server`` or ``pagefeed``."""

from __future__ import annotations

import sys

import structlog
import uvicorn
from pydantic import ValidationError

from pagefeed.app import create_app
from pagefeed.config import Settings
from pagefeed.logging_config import setup_logging

log = structlog.get_logger()


def main() -> None:
    try:
        settings = Settings()
    except ValidationError as exc:
        print(f"Invalid configuration:\n{exc}", file=sys.stderr)
        sys.exit(2)

    setup_logging(settings.logging)
    log.info("server_starting", host=settings.server.host, port=settings.server.port)
    uvicorn.run(
        create_app(settings),
        host=settings.server.host,
        port=settings.server.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()

"""Entry point for the image updater webhook service."""
import asyncio
import sys

from image_updater.config import load_settings
from image_updater.errors import ConfigError, SyncError
from image_updater.logging import get_logger, setup_logging
from image_updater.server import run_server

log = get_logger(__name__)


def main() -> int:
    """Load configuration, perform the initial clone and start serving."""
    try:
        settings = load_settings()
    except ConfigError as e:
        log.error("configuration_error", error=str(e))
        return 1

    setup_logging(settings)

    try:
        asyncio.run(run_server(settings))
    except SyncError as e:
        log.error("initial_sync_failed", error=str(e))
        return 1
    except KeyboardInterrupt:
        log.info("shutting_down")
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""Entry point for running the sessionpulse daemon."""

import logging
import sys

import uvicorn

from sessionpulse import config

logger = logging.getLogger(__name__)


def main() -> None:
    """Run the sessionpulse daemon under uvicorn."""
    try:
        uvicorn.run(
            "sessionpulse.main:app",
            host=config.HOST,
            port=config.PORT,
            log_level=config.LOG_LEVEL.lower(),
        )
    except KeyboardInterrupt:
        logger.info("Received interrupt, shutting down")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Failed to start daemon: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

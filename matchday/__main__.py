import asyncio
import sys

from matchday.errors import ConfigurationError
from matchday.main import logger, run_headless


def main() -> int:
    try:
        asyncio.run(run_headless())
    except ConfigurationError as e:
        logger.critical(f"Fatal configuration error: {e}")
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())

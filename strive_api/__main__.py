"""Run the service: ``python -m strive_api``."""
import sys

import uvicorn

from strive_api.main import load_settings, logger
from strive_api.services.errors import ConfigurationError


def main() -> None:
    try:
        settings = load_settings()
    except ConfigurationError as e:
        logger.error("strive_api.startup.aborted", error=str(e))
        sys.exit(1)

    uvicorn.run(
        "strive_api.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level="info",
    )


if __name__ == "__main__":
    main()

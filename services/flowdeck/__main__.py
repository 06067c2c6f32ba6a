"""Run the flowdeck server: python -m flowdeck"""

import uvicorn

from flowdeck.config import settings
from flowdeck.logging_config import configure_logging, get_logger

logger = get_logger(__name__)


def main() -> None:
    configure_logging(json_logs=settings.json_logs, log_level=settings.log_level)
    logger.info("Starting flowdeck", host=settings.host, port=settings.port)
    uvicorn.run(
        "flowdeck.api.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_config=None,
    )


if __name__ == "__main__":
    main()

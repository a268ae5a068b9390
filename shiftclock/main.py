"""Entry point for the shiftclock API server."""

import uvicorn

from shiftclock.database import init_database
from shiftclock.utils.config import get_settings
from shiftclock.utils.logger import set_log_level, setup_logger

logger = setup_logger(__name__)


def main() -> None:
    """Create the database if needed and serve the API with uvicorn."""
    config = get_settings().load_config()
    api_cfg = config.get("api", {})
    level = config.get("logging", {}).get("level", "INFO")
    set_log_level(level)

    init_database(config["database"]["path"])
    host, port = api_cfg.get("host", "0.0.0.0"), api_cfg.get("port", 8000)
    logger.info("Serving shiftclock on %s:%d", host, port)

    uvicorn.run(
        "shiftclock.api.app:app",
        host=host,
        port=port,
        reload=api_cfg.get("reload", False),
        log_level=level.lower(),
    )


if __name__ == "__main__":
    main()

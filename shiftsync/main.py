from __future__ import annotations

import logging
import os

import uvicorn

from shiftsync.config_manager import ConfigManager


LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def main() -> None:
    host = os.getenv("SHIFTSYNC_HOST", "0.0.0.0")  # nosec B104
    port = int(os.getenv("SHIFTSYNC_PORT", "8080"))
    config = ConfigManager(os.getenv("SHIFTSYNC_CONFIG_PATH", "config.yaml")).load()
    configure_logging(config.logging.level)
    uvicorn.run(
        "shiftsync.web_admin:create_app",
        factory=True,
        host=host,
        port=port,
        reload=False,
        log_level=config.logging.level.lower(),
    )


if __name__ == "__main__":
    main()

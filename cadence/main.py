from __future__ import annotations

import logging
import os

import uvicorn

from cadence.config_manager import ConfigManager


def configure_logging(config_path: str) -> None:
    level = ConfigManager(config_path).load().logging.level
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main() -> None:
    configure_logging(os.getenv("CADENCE_CONFIG_PATH", "config.yaml"))
    host = os.getenv("CADENCE_HOST", "0.0.0.0")
    port = int(os.getenv("CADENCE_PORT", "8080"))
    uvicorn.run("cadence.web_api:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()

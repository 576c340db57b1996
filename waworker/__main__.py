"""Executable entrypoint for the WhatsApp worker service."""

from __future__ import annotations

import logging
import sys

import uvicorn

from .config import worker_config


LOGGER = logging.getLogger("waworker")


def _init_logging(level_name: str) -> None:
    level = getattr(logging, level_name, logging.INFO)
    fmt = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
    logging.basicConfig(level=level, format=fmt)
    for logger_name in ("waworker", "uvicorn", "uvicorn.access"):
        logging.getLogger(logger_name).setLevel(level)


def main() -> None:
    cfg = worker_config()
    _init_logging(cfg.log_level)
    missing = cfg.missing_settings()
    if missing:
        LOGGER.error("stage=startup_aborted missing=%s", ",".join(missing))
        sys.exit(1)
    LOGGER.info("stage=startup port=%s bridge_url=%s", cfg.port, cfg.bridge_url)
    uvicorn.run(
        "waworker.api:create_app",
        host="0.0.0.0",
        port=cfg.port,
        factory=True,
        workers=1,
        log_config=None,
    )


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    main()

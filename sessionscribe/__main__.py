from __future__ import annotations

import logging

import uvicorn

from sessionscribe.api.main import app
from sessionscribe.internal_core.config import load_config


def main() -> None:
    cfg = load_config()
    logging.basicConfig(
        level=cfg.SCRIBE_LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    uvicorn.run(app, host=cfg.SCRIBE_HOST, port=cfg.SCRIBE_PORT, log_level=cfg.SCRIBE_LOG_LEVEL.lower())


if __name__ == "__main__":
    main()

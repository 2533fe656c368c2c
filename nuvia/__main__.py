"""
nuvia.__main__ — Entry point for ``python -m nuvia``
=====================================================

Wiring:
1. Load .env (secrets).
2. Load config.yaml (infrastructure settings).
3. Create the SQLAlchemy engine, ensure tables exist, seed defaults.
4. Serve the FastAPI app with uvicorn (blocking).

Run with::

    python -m nuvia
"""

from __future__ import annotations

import logging
import os
import sys

import uvicorn
from dotenv import load_dotenv

from nuvia.config import load_config
from nuvia.database.engine import create_db_engine, init_db

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("nuvia")


def main() -> None:
    """Bootstrap the database and run the API server."""

    # 1. Environment variables (secrets).
    load_dotenv()

    # 2. Infrastructure configuration.
    try:
        cfg = load_config()
    except (FileNotFoundError, KeyError) as exc:
        logger.critical("Configuration error: %s", exc)
        sys.exit(1)
    logger.info(
        "Config loaded: %s (%d chains, %d contracts)",
        cfg.app_name, len(cfg.chains), len(cfg.contracts),
    )

    # 3. Database.
    try:
        engine = create_db_engine()
    except RuntimeError as exc:
        logger.critical("%s", exc)
        sys.exit(1)
    init_db(engine)
    engine.dispose()

    # 4. Serve.
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    logger.info("Starting Nuvia API on %s:%d", host, port)
    uvicorn.run("nuvia.api.main:app", host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

from geoquiz.db import check_db_connection, seed_sample_locations_if_empty
from geoquiz.logging_utils import configure_logging

logger = logging.getLogger("geoquiz.migrate")


def run_migrations() -> None:
    root = Path(__file__).resolve().parent
    alembic_cfg = Config(str(root / "alembic.ini"))
    command.upgrade(alembic_cfg, "head")


if __name__ == "__main__":
    configure_logging()
    run_migrations()
    check_db_connection()
    seeded = seed_sample_locations_if_empty()
    logger.info("Migrations complete", extra={"event": "migrate", "reason": f"seeded_locations={seeded}"})

"""
agora.__main__ — Maintenance entry point for ``python -m agora``
================================================================

Wiring:
1. Load .env (DATABASE_URL).
2. Load config.yaml (infrastructure settings).
3. Create the SQLAlchemy engine and ensure tables exist.
4. Build and warm the ConfigCache (tuning values from DB).
5. Run the requested job.

Commands::

    python -m agora init-db      # create tables + seed default settings
    python -m agora reconcile    # fix drifted counters and point totals
"""

from __future__ import annotations

import argparse
import logging
import sys

from dotenv import load_dotenv

from agora.config import load_config
from agora.database.engine import create_db_engine, init_db
from agora.engine.cache import ConfigCache
from agora.services.reconciliation_service import reconcile_counters

logger = logging.getLogger("agora")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="agora")
    parser.add_argument("command", choices=("init-db", "reconcile"))
    parser.add_argument("--config", default="config.yaml")
    args = parser.parse_args(argv)

    # 1. Environment variables (secrets).
    load_dotenv()

    # 2. Soft configuration.
    cfg = load_config(args.config)
    logging.basicConfig(
        level=getattr(logging, cfg.log_level, logging.INFO),
        format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
        datefmt="%H:%M:%S",
    )
    logger.info("Config loaded — Community: %s", cfg.community_name)

    # 3. Database.
    engine = create_db_engine(pool_size=cfg.pool_size, max_overflow=cfg.max_overflow)
    init_db(engine)
    if args.command == "init-db":
        return 0

    # 4. Tuning values.
    cache = ConfigCache(engine)
    cache.load_all()

    # 5. Job.
    report = reconcile_counters(engine, cache)
    logger.info("Reconciliation: %d checked, %d corrected", report["checked"], report["corrected"])
    return 0


if __name__ == "__main__":
    sys.exit(main())

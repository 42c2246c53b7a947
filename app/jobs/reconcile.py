"""
Cron entry point for the reconciliation sweep.

    python -m app.jobs.reconcile

Runs the same sweep as POST /transactions/cleanup against DATABASE_URL and
exits non-zero when any transaction failed to move.
"""
import asyncio
import logging
import sys

import app.models  # noqa: F401
from app.core.db import SessionLocal, engine
from app.services.reconciliation import ReconciliationSweeper

logger = logging.getLogger("app.jobs.reconcile")


async def main() -> int:
    try:
        report = await ReconciliationSweeper(SessionLocal).run()
    finally:
        await engine.dispose()
    logger.info("Sweep report: %s", report.to_dict())
    return 1 if report.failed else 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    sys.exit(asyncio.run(main()))

"""Scheduled jobs. Triggered daily by an external cron dispatcher."""

import time
import logging
from datetime import datetime
from typing import Dict

from credit_ledger import CreditLedger

logger = logging.getLogger(__name__)


def run_credit_reset(ledger: CreditLedger, as_of: datetime = None) -> Dict:
    started = time.monotonic()
    logger.info("Starting credit reset job")

    user_ids = ledger.list_users_due_for_reset(as_of)
    if not user_ids:
        logger.info("No users need credit reset at this time")
        result = {"success": 0, "failed": 0, "errors": []}
    else:
        logger.info(f"Found {len(user_ids)} users needing credit reset")
        result = ledger.batch_reset(user_ids, as_of=as_of)

    execution_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        f"Credit reset completed: {result['success']} successful, "
        f"{result['failed']} failed in {execution_ms}ms"
    )
    for error in result["errors"]:
        logger.error(f"Credit reset error: {error}")

    return {
        "usersProcessed": len(user_ids),
        "successful": result["success"],
        "failed": result["failed"],
        "executionTimeMs": execution_ms,
        "errors": result["errors"],
    }


if __name__ == "__main__":
    from config import PlanAllowances, Settings
    from database import SessionLocal, create_tables

    logging.basicConfig(level=Settings.LOG_LEVEL)
    create_tables()
    summary = run_credit_reset(CreditLedger(SessionLocal, PlanAllowances()))
    logger.info(f"Summary: {summary}")

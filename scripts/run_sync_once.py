"""
Single-pass deal sync for scheduled jobs.
Runs one full ActiveCampaign -> deals_cache sync and exits 0 on success, 1 on failure.

Usage: python scripts/run_sync_once.py [--window-days N] [--dry-run]
"""

import argparse
import asyncio
import sys

import structlog

from hudlab.utils.logger import configure_logging
from hudlab.workers.deal_sync_worker import SyncAlreadyRunningError, run_deal_sync

configure_logging()
logger = structlog.get_logger()


async def main(window_days: int | None, dry_run: bool) -> None:
    try:
        logger.info("Scheduled deal sync: starting", window_days=window_days, dry_run=dry_run)
        result = await run_deal_sync(
            window_days=window_days,
            all_deals=window_days is None,
            dry_run=dry_run,
        )
        logger.info(
            "Scheduled deal sync: done",
            deals_fetched=result["deals_fetched"],
            deals_upserted=result["deals_upserted"],
            duration_seconds=result["sync_duration_seconds"],
        )
    except SyncAlreadyRunningError:
        logger.warning("Another deal sync is running, nothing to do")
        sys.exit(1)
    except Exception as e:
        logger.error("Scheduled deal sync failed", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run one deal sync")
    parser.add_argument("--window-days", type=int, default=None, help="Only sync deals closing in the last N days")
    parser.add_argument("--dry-run", action="store_true", help="Fetch and transform without writing")
    args = parser.parse_args()
    asyncio.run(main(args.window_days, args.dry_run))

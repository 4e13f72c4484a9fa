"""
Entry point for running one deal sync as a module.
Usage: python -m hudlab.workers
"""
import asyncio

from hudlab.utils.logger import configure_logging
from hudlab.workers.deal_sync_worker import run_deal_sync

if __name__ == "__main__":
    configure_logging()
    asyncio.run(run_deal_sync(all_deals=True))

#!/usr/bin/env python3
"""
Cron job script to revert expired discounts.
Add to crontab: */15 * * * * cd /path/to/app && /path/to/venv/bin/python scripts/process_reverts.py

Runs as a standalone script, not through the web server.
"""

import asyncio
import logging
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from bulk_manager.config import settings
from bulk_manager.db import SQLiteDatabase, HistoryStore
from bulk_manager.processor import BatchOrchestrator, BulkService
from bulk_manager.shopify import ShopifyClient

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)


async def main():
    logger.info("Processing scheduled discount reverts...")

    db = SQLiteDatabase(settings.database_path)
    await db.initialize()

    client = ShopifyClient(
        settings.shopify_domain,
        settings.shopify_access_token,
        api_version=settings.shopify_api_version,
    )

    service = BulkService(
        client,
        db,
        HistoryStore(db, max_entries=settings.history_max_entries),
        BatchOrchestrator(
            group_size=settings.batch_group_size,
            window_delay_ms=settings.batch_window_delay_ms,
        ),
    )

    try:
        outcomes = await service.process_scheduled_reverts()

        failed = [(revert, result) for revert, result in outcomes if not result.success]
        logger.info(f"Reverts completed: {len(outcomes) - len(failed)} successful, {len(failed)} failed")

        if failed:
            for revert, result in failed:
                logger.error(f"  {revert.batch_id}: {result.message}")
            sys.exit(1)

    finally:
        await client.close()
        await db.close()


if __name__ == "__main__":
    asyncio.run(main())

"""
Script to run one worker batch in-process.

Intended for an external scheduler (cron, Cloud Scheduler, ...) that drains
pending WhatsApp messages without going through the HTTP trigger. Safe to run
concurrently with the service: messages are claimed atomically.

Usage:
    python scripts/process_pending.py [batch_size] [max_attempts]
"""

import asyncio
import sys
import os

# Add src directory to path to import modules
script_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.dirname(script_dir)
src_dir = os.path.join(project_root, 'src')
sys.path.insert(0, src_dir)
sys.path.insert(0, project_root)

from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils
from database.listing_db import ListingDB
from services.extraction_service import ExtractionService
from services.worker_service import WorkerService


async def process_pending(batch_size=None, max_attempts=None):
    """
    Claim and process one batch of pending messages.
    """
    # Initialize utilities
    log_util = LogUtil()
    environment_utils = EnvironmentUtils(log_util=log_util)

    # Initialize database
    listing_db = ListingDB(log_util=log_util, environment_utils=environment_utils)

    worker_service = WorkerService(
        log_util=log_util,
        environment_utils=environment_utils,
        listing_db=listing_db,
        extraction_service=ExtractionService(log_util=log_util, environment_utils=environment_utils)
    )

    try:
        result = await worker_service.process_pending_batch(
            batch_size=batch_size,
            max_attempts=max_attempts
        )

        print("\n" + "="*60)
        print("BATCH SUMMARY")
        print("="*60)
        for field, value in result.model_dump().items():
            print(f"  {field}: {value}")
        print("="*60)

        return result
    except Exception as e:
        log_util.error(
            service_name="ProcessPending",
            message=f"Fatal error: {str(e)}"
        )
        raise
    finally:
        # Close database connection
        listing_db.close()


if __name__ == "__main__":
    arg_batch_size = int(sys.argv[1]) if len(sys.argv) > 1 else None
    arg_max_attempts = int(sys.argv[2]) if len(sys.argv) > 2 else None

    try:
        asyncio.run(process_pending(arg_batch_size, arg_max_attempts))
        print("\n[SUCCESS] Batch completed successfully!")
    except KeyboardInterrupt:
        print("\n[WARNING] Script interrupted by user")
        sys.exit(1)
    except Exception as e:
        print(f"\n[ERROR] Script failed with error: {str(e)}")
        sys.exit(1)

"""
Script to requeue WhatsApp messages the worker will no longer claim.

Failed messages exhausted their attempt budget and are never claimed again
automatically; neither are stale claims already at the attempt cap (a worker
crashed on its last attempt). This script resets both to 'pending' with
attempts = 0 so the worker picks them up on its next run. Run it only after
the cause of the failures (model outage, bad API key, ...) has been fixed.
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
from utils.time_utils import utc_now
from database.listing_db import ListingDB


async def requeue_failed_messages():
    # Initialize utilities
    log_util = LogUtil()
    environment_utils = EnvironmentUtils(log_util=log_util)

    # Initialize database
    listing_db = ListingDB(log_util=log_util, environment_utils=environment_utils)

    try:
        requeued = await listing_db.requeue_failed_messages(
            now=utc_now(),
            max_attempts=int(environment_utils.get_env_variable("WORKER_MAX_ATTEMPTS")),
            claim_timeout_seconds=int(environment_utils.get_env_variable("WORKER_CLAIM_TIMEOUT_SECONDS"))
        )
        pending = await listing_db.count_pending_messages()

        log_util.info(
            service_name="RequeueFailedMessages",
            message=f"Requeued {requeued} failed message(s), {pending} now pending"
        )

        print("\n" + "="*60)
        print("REQUEUE SUMMARY")
        print("="*60)
        print(f"  Messages requeued: {requeued}")
        print(f"  Messages pending: {pending}")
        print("="*60)

        return requeued
    except Exception as e:
        log_util.error(
            service_name="RequeueFailedMessages",
            message=f"Fatal error: {str(e)}"
        )
        raise
    finally:
        # Close database connection
        listing_db.close()


if __name__ == "__main__":
    print("="*60)
    print("Requeue Failed WhatsApp Messages")
    print("="*60)

    try:
        asyncio.run(requeue_failed_messages())
        print("\n[SUCCESS] Script completed successfully!")
    except KeyboardInterrupt:
        print("\n[WARNING] Script interrupted by user")
        sys.exit(1)
    except Exception as e:
        print(f"\n[ERROR] Script failed with error: {str(e)}")
        sys.exit(1)

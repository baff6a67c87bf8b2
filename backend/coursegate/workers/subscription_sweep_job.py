"""
Subscription sweep worker.

Run once as a cron job:
    python -m coursegate.workers.subscription_sweep_job

Or keep running and sweep every SWEEP_INTERVAL_SECONDS:
    python -m coursegate.workers.subscription_sweep_job --loop
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional

from sqlalchemy.orm import Session

from coursegate.config import get_settings
from coursegate.database.session import create_session_factory
from coursegate.entitlements.cache import EntitlementCache
from coursegate.entitlements.store import EntitlementStore
from coursegate.integrations.razorpay.client import RazorpayClient
from coursegate.jobs.subscription_sweeps import SubscriptionSweepJob

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _get_database_session() -> Session:
    """Create database session for the sweep run."""
    return create_session_factory()()


def _build_gateway() -> Optional[RazorpayClient]:
    settings = get_settings()
    if not settings.razorpay_key_id or not settings.razorpay_key_secret:
        logger.warning("Razorpay credentials not configured, sweeps run without gateway calls")
        return None
    return RazorpayClient()


async def run_sweeps_async() -> dict:
    """Run every sweep once with a fresh session and gateway client."""
    session = _get_database_session()
    gateway = _build_gateway()
    try:
        store = EntitlementStore(session, cache=EntitlementCache.from_settings())
        job = SubscriptionSweepJob(session, gateway=gateway, entitlement_store=store)
        return await job.run()
    finally:
        session.close()
        if gateway is not None:
            await gateway.close()


async def run_forever(interval_seconds: int) -> None:
    while True:
        try:
            result = await run_sweeps_async()
            logger.info("Sweep cycle finished", extra=result)
        except Exception as e:
            logger.error("Sweep cycle failed", extra={"error": str(e)}, exc_info=True)
        await asyncio.sleep(interval_seconds)


def main(argv=None):
    """Entry point for running sweeps from the command line."""
    parser = argparse.ArgumentParser(description="Run scheduled subscription sweeps")
    parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep running, sweeping every SWEEP_INTERVAL_SECONDS",
    )
    args = parser.parse_args(argv)

    if args.loop:
        interval = get_settings().sweep_interval_seconds
        logger.info("Subscription sweep worker starting", extra={"interval_seconds": interval})
        try:
            asyncio.run(run_forever(interval))
        except KeyboardInterrupt:
            logger.info("Subscription sweep worker stopped")
        sys.exit(0)

    try:
        result = asyncio.run(run_sweeps_async())
        logger.info("Subscription sweeps finished", extra=result)
        sys.exit(0)
    except Exception as e:
        logger.error("Subscription sweeps failed", extra={"error": str(e)})
        sys.exit(1)


if __name__ == "__main__":
    main()

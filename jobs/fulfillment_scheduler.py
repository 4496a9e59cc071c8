"""
Fulfillment Background Job Scheduler

Four jobs drive the payout pipeline:
1. Allocator - promotes eligible orders to READY_TO_SEND
2. Settlement Sender - sends allocated orders when auto-send is on
3. Treasury Reconciliation - custody vs ledger balance check
4. Low Inventory Monitor - alerts on thin BTC inventory
"""

import logging
from datetime import datetime
from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from jobs.fulfillment_allocation_job import run_fulfillment_allocation
from jobs.low_inventory_monitor import monitor_low_inventory
from jobs.reconciliation_job import run_treasury_reconciliation
from jobs.settlement_sender_job import run_settlement_sender

logger = logging.getLogger(__name__)


class FulfillmentScheduler:
    """APScheduler wrapper for the fulfillment jobs"""

    def __init__(self):
        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,  # Single instance enforcement
            'misfire_grace_time': 120
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        """Register the fulfillment jobs, staggered to avoid contention"""
        now = datetime.now()

        self.scheduler.add_job(
            run_fulfillment_allocation,
            trigger=IntervalTrigger(seconds=Config.ALLOCATOR_INTERVAL_SECONDS, start_date=now.replace(second=5, microsecond=0)),
            id="fulfillment_allocator",
            name="📦 Fulfillment Allocator - Inventory Matching",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
            replace_existing=True
        )
        logger.info(f"✅ Fulfillment Allocator scheduled every {Config.ALLOCATOR_INTERVAL_SECONDS} seconds")

        self.scheduler.add_job(
            run_settlement_sender,
            trigger=IntervalTrigger(seconds=Config.SENDER_INTERVAL_SECONDS, start_date=now.replace(second=35, microsecond=0)),
            id="settlement_sender",
            name="📤 Settlement Sender - Custody Payouts",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
            replace_existing=True
        )
        logger.info(f"✅ Settlement Sender scheduled every {Config.SENDER_INTERVAL_SECONDS} seconds")

        self.scheduler.add_job(
            run_treasury_reconciliation,
            trigger=IntervalTrigger(minutes=Config.RECONCILIATION_INTERVAL_MINUTES, start_date=now.replace(second=20, microsecond=0)),
            id="treasury_reconciliation",
            name="📊 Treasury Reconciliation - Custody vs Ledger",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
            replace_existing=True
        )
        logger.info(f"✅ Treasury Reconciliation scheduled every {Config.RECONCILIATION_INTERVAL_MINUTES} minutes")

        self.scheduler.add_job(
            monitor_low_inventory,
            trigger=IntervalTrigger(minutes=Config.LOW_INVENTORY_CHECK_INTERVAL_MINUTES, start_date=now.replace(second=50, microsecond=0)),
            id="low_inventory_monitor",
            name="🔍 Low Inventory Monitor - BTC Threshold Alerts",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=120,
            replace_existing=True
        )
        logger.info(f"✅ Low Inventory Monitor scheduled every {Config.LOW_INVENTORY_CHECK_INTERVAL_MINUTES} minutes")

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        jobs = self.scheduler.get_jobs()
        logger.info(f"📋 Active jobs: {[f'{job.name} ({job.id})' for job in jobs]}")

    def stop(self):
        """Stop the scheduler without waiting for running jobs"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("📴 Fulfillment job scheduler stopped")


_global_scheduler: Optional[FulfillmentScheduler] = None


def get_fulfillment_scheduler() -> FulfillmentScheduler:
    """Get the global fulfillment scheduler instance"""
    global _global_scheduler
    if _global_scheduler is None:
        _global_scheduler = FulfillmentScheduler()
    return _global_scheduler

"""
Escrow Maintenance Scheduler

Periodic hygiene jobs:
1. Address purge - drop escrow addresses that can no longer be reused
2. Obligation expiry - expire obligations that were never paid
3. Session purge - drop persisted flow sessions older than the recovery window
"""

import logging
from datetime import datetime
from typing import Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from sqlalchemy.orm import sessionmaker

from config import Config
from services.address_ledger import AddressLedger
from services.obligation_service import ObligationService
from services.session_store import purge_expired_durable_sessions

logger = logging.getLogger(__name__)


async def run_address_purge(ledger: AddressLedger) -> int:
    try:
        return ledger.purge_expired()
    except Exception as e:
        logger.error(f"❌ ADDRESS_PURGE_FAILED: {e}", exc_info=True)
        raise


async def run_obligation_expiry(obligations: ObligationService) -> int:
    try:
        return obligations.expire_stale()
    except Exception as e:
        logger.error(f"❌ OBLIGATION_EXPIRY_FAILED: {e}", exc_info=True)
        raise


async def run_session_purge(session_factory: Optional[sessionmaker] = None) -> int:
    try:
        return purge_expired_durable_sessions(session_factory=session_factory)
    except Exception as e:
        logger.error(f"❌ SESSION_PURGE_FAILED: {e}", exc_info=True)
        raise


class EscrowMaintenanceScheduler:
    """Runs the maintenance jobs on an AsyncIOScheduler"""

    def __init__(self, session_factory: Optional[sessionmaker] = None, interval_minutes: Optional[int] = None):
        self.session_factory = session_factory
        self.interval_minutes = interval_minutes or Config.PURGE_INTERVAL_MINUTES
        self.ledger = AddressLedger(session_factory)
        self.obligations = ObligationService(session_factory)

        self.scheduler = AsyncIOScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': AsyncIOExecutor()},
            job_defaults={
                'coalesce': True,  # Prevent job pileup
                'max_instances': 1,
                'misfire_grace_time': 120,
            },
            timezone='UTC',
        )

    def setup_jobs(self) -> Dict[str, str]:
        start = datetime.now().replace(second=0, microsecond=0)
        jobs = {
            "escrow_address_purge": (run_address_purge, [self.ledger], "🧹 Escrow address purge"),
            "obligation_expiry": (run_obligation_expiry, [self.obligations], "⌛ Pending obligation expiry"),
            "flow_session_purge": (run_session_purge, [self.session_factory], "🗑️ Flow session purge"),
        }
        for job_id, (func, args, name) in jobs.items():
            self.scheduler.add_job(
                func,
                trigger=IntervalTrigger(minutes=self.interval_minutes, start_date=start),
                args=args,
                id=job_id,
                name=name,
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
        logger.info(f"✅ Escrow maintenance jobs scheduled every {self.interval_minutes} minutes")
        return {job_id: name for job_id, (_, _, name) in jobs.items()}

    def start(self) -> None:
        self.setup_jobs()
        self.scheduler.start()
        logger.info("🚀 Escrow maintenance scheduler started")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("🛑 Escrow maintenance scheduler stopped")

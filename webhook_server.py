"""
FastAPI Webhook Server for the escrow service
Receives custody provider notifications, serves escrow status and runs maintenance jobs
"""
from fastapi import FastAPI
from contextlib import asynccontextmanager
import logging
import os

from config import Config
from database import SessionLocal, create_tables
from handlers import custody_webhook
from jobs.escrow_maintenance import EscrowMaintenanceScheduler
from services.address_ledger import AddressLedger
from services.escrow_status_notifier import EscrowStatusNotifier
from services.exchange_rate_service import ExchangeRateService
from services.payment_reconciler import PaymentReconciler

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def build_services(session_factory=None):
    """Wire the reconciler and notifier against one session factory"""
    session_factory = session_factory or SessionLocal
    notifier = EscrowStatusNotifier(session_factory)
    reconciler = PaymentReconciler(
        session_factory=session_factory,
        ledger=AddressLedger(session_factory),
        notifier=notifier,
    )
    return reconciler, notifier


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: create tables, bind webhook services, start maintenance jobs
    Shutdown: stop the scheduler
    """
    logger.info(f"🔧 Worker {os.getpid()} starting...")
    create_tables()
    reconciler, notifier = build_services()
    custody_webhook.configure(reconciler, notifier, ExchangeRateService())

    maintenance = EscrowMaintenanceScheduler(SessionLocal)
    maintenance.start()
    logger.info(f"✅ Worker {os.getpid()} initialized successfully")

    yield

    maintenance.shutdown()
    logger.info(f"🔄 Worker {os.getpid()} shutting down...")


app = FastAPI(
    title="Escrow Webhook Server",
    description="Custody provider notifications and escrow status",
    lifespan=lifespan
)

app.include_router(custody_webhook.router)


@app.get("/health")
async def health_check():
    return {"status": "healthy", "environment": Config.ENVIRONMENT}

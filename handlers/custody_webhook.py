"""
Custody Provider Webhook Handler

1. Verify signature (when a webhook secret is configured)
2. Parse the transfer notification into per-address events
3. Reconcile each event against pending obligations
4. Answer status queries for the escrow funding of a trade

Redelivery is safe: a repeated notification reconciles as ``duplicate``.
Unexpected failures return 500 so the provider retries.
"""

import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Request, Header

from config import Config
from services.escrow_status_notifier import EscrowStatusNotifier
from services.exchange_rate_service import ExchangeRateService
from services.payment_reconciler import PaymentReconciler, InvalidNotificationError
from services.webhook_security_service import validate_webhook_signature

logger = logging.getLogger(__name__)

# Create FastAPI router
router = APIRouter()

_services: Dict[str, Any] = {}


def configure(
    reconciler: PaymentReconciler,
    notifier: EscrowStatusNotifier,
    rate_service: Optional[ExchangeRateService] = None,
    webhook_secret: Optional[str] = None,
) -> None:
    """Bind the services the routes use"""
    _services["reconciler"] = reconciler
    _services["notifier"] = notifier
    _services["rate_service"] = rate_service or ExchangeRateService()
    _services["webhook_secret"] = Config.CUSTODY_WEBHOOK_SECRET if webhook_secret is None else webhook_secret


def _require(name: str):
    service = _services.get(name)
    if service is None:
        logger.error(f"❌ WEBHOOK_NOT_CONFIGURED: {name} missing")
        raise HTTPException(status_code=503, detail="Service not ready")
    return service


def _verify_webhook_signature(body: bytes, signature: Optional[str]) -> None:
    secret = _services.get("webhook_secret")
    if not secret:
        if Config.is_production():
            logger.critical("🚨 PRODUCTION_SECURITY: CUSTODY_WEBHOOK_SECRET not configured")
        return
    if not validate_webhook_signature(body, signature, secret):
        logger.warning("🚨 CUSTODY_WEBHOOK_SECURITY: signature verification FAILED")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")


@router.post("/custody/webhook")
async def custody_webhook(
    request: Request,
    x_signature: Optional[str] = Header(None, alias="X-Signature"),
):
    body = await request.body()
    _verify_webhook_signature(body, x_signature)

    try:
        payload = json.loads(body or b"null")
    except ValueError as e:
        logger.error(f"❌ CUSTODY_WEBHOOK_JSON: Invalid JSON format: {e}")
        raise HTTPException(status_code=400, detail="Invalid JSON format")

    reconciler: PaymentReconciler = _require("reconciler")
    try:
        results = reconciler.handle_notification(payload)
    except InvalidNotificationError as e:
        logger.error(f"❌ CUSTODY_WEBHOOK_INVALID: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"❌ CUSTODY_WEBHOOK: Unexpected error: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")

    logger.info(f"📥 CUSTODY_WEBHOOK: processed {len(results)} transfer events")
    return {"status": "success", "results": [r.to_dict() for r in results]}


@router.get("/escrow/{trade_id}/status")
async def escrow_status(trade_id: str):
    notifier: EscrowStatusNotifier = _require("notifier")
    status = notifier.get_escrow_status(trade_id)
    if status["status"] == "not_found":
        raise HTTPException(status_code=404, detail="Trade not found")
    return status


@router.get("/rates/usd-ngn")
async def usd_ngn_rate():
    rate_service: ExchangeRateService = _require("rate_service")
    rate = await rate_service.get_usd_to_ngn()
    return {"pair": "USD/NGN", "rate": str(rate)}

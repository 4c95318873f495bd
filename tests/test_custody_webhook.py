"""Custody webhook router: signature checks, reconciliation and status endpoint"""

import json
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import BTC_ADDRESS
from handlers import custody_webhook
from services.exchange_rate_service import ExchangeRateService
from services.webhook_security_service import compute_signature, validate_webhook_signature

SECRET = "whsec-test"

TRANSFER = {
    "type": "transfer",
    "data": {"address": BTC_ADDRESS, "value": 990000, "coin": "btc", "state": "confirmed", "txHash": "tx-abc"},
}


@pytest.fixture
def rate_service():
    service = MagicMock(spec=ExchangeRateService)
    service.get_usd_to_ngn = AsyncMock(return_value=Decimal("1600.5"))
    return service


@pytest.fixture
def client(reconciler, notifier, rate_service):
    custody_webhook.configure(reconciler, notifier, rate_service, webhook_secret="")
    app = FastAPI()
    app.include_router(custody_webhook.router)
    return TestClient(app)


@pytest.fixture
def signed_client(reconciler, notifier, rate_service):
    custody_webhook.configure(reconciler, notifier, rate_service, webhook_secret=SECRET)
    app = FastAPI()
    app.include_router(custody_webhook.router)
    return TestClient(app)


class TestCustodyWebhook:

    def test_confirmed_transfer_completes_then_duplicates(self, client, funded_trade):
        first = client.post("/custody/webhook", json=TRANSFER)
        second = client.post("/custody/webhook", json=TRANSFER)

        assert first.status_code == 200
        assert first.json()["results"][0]["status"] == "completed"
        assert second.json()["results"][0]["status"] == "duplicate"

    def test_unconfirmed_transfer_ignored(self, client, funded_trade):
        payload = {"type": "transfer", "data": dict(TRANSFER["data"], state="unconfirmed")}
        response = client.post("/custody/webhook", json=payload)
        assert response.json()["results"][0]["status"] == "ignored"

    def test_invalid_json(self, client):
        response = client.post("/custody/webhook", content=b"{oops", headers={"Content-Type": "application/json"})
        assert response.status_code == 400

    def test_invalid_notification(self, client):
        response = client.post("/custody/webhook", json={"type": "transfer"})
        assert response.status_code == 400

    def test_unexpected_error_returns_500(self, client, reconciler, monkeypatch):
        monkeypatch.setattr(reconciler, "handle_notification", MagicMock(side_effect=RuntimeError("db down")))
        response = client.post("/custody/webhook", json=TRANSFER)
        assert response.status_code == 500


class TestWebhookSignature:

    def test_missing_signature_rejected(self, signed_client, funded_trade):
        assert signed_client.post("/custody/webhook", json=TRANSFER).status_code == 401

    def test_valid_signature_accepted(self, signed_client, funded_trade):
        body = json.dumps(TRANSFER).encode()
        response = signed_client.post(
            "/custody/webhook",
            content=body,
            headers={"Content-Type": "application/json", "X-Signature": f"sha256={compute_signature(body, SECRET)}"},
        )
        assert response.status_code == 200
        assert response.json()["results"][0]["status"] == "completed"

    def test_signature_helper(self):
        signature = compute_signature("payload", SECRET)
        assert validate_webhook_signature("payload", signature, SECRET) is True
        assert validate_webhook_signature("payload!", signature, SECRET) is False
        assert validate_webhook_signature("payload", None, SECRET) is False


class TestStatusEndpoints:

    def test_unknown_trade_404(self, client):
        assert client.get("/escrow/missing/status").status_code == 404

    def test_status_after_funding(self, client, funded_trade):
        assert client.get("/escrow/T1/status").json()["status"] == "pending"

        client.post("/custody/webhook", json=TRANSFER)

        body = client.get("/escrow/T1/status").json()
        assert body["status"] == "confirmed"
        assert body["tx_hash"] == "tx-abc"
        assert body["escrow_status"] == "crypto_received"

    def test_rate_endpoint(self, client, rate_service):
        assert client.get("/rates/usd-ngn").json() == {"pair": "USD/NGN", "rate": "1600.5"}
        rate_service.get_usd_to_ngn.assert_awaited_once()

"""
Payment reconciliation scenarios
Tolerance matching, idempotency, credit purchases and escrow funding
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select, func

from conftest import BTC_ADDRESS, ETH_ADDRESS, NOW
from models import (
    PendingObligation, ObligationStatus, ProcessedTransferEvent, ReconciliationDiscrepancy,
    CreditAccount, CreditTransaction, EscrowAddressStatus, EscrowStatus
)
from services.payment_reconciler import (
    TransferEvent, ReconciliationStatus, PaymentReconciler, InvalidNotificationError,
    parse_transfer_notification, normalize_amount, within_tolerance
)


def btc_event(sats, tx_hash="tx-abc", address=BTC_ADDRESS, state="confirmed"):
    return TransferEvent(
        asset="BTC",
        address=address,
        amount=Decimal(sats),
        tx_hash=tx_hash,
        confirmations=3,
        state=state,
        amount_in_base_units=True,
    )


def obligation_row(session_factory, obligation_id):
    with session_factory() as session:
        return session.get(PendingObligation, obligation_id)


class TestToleranceMath:

    def test_normalize_base_units(self):
        assert normalize_amount("BTC", 990000, True) == Decimal("0.0099")
        assert normalize_amount("USDT", 150000000, True) == Decimal("150")
        assert normalize_amount("ETH", "0.5", False) == Decimal("0.5")

    def test_one_percent_boundary_is_accepted(self):
        assert within_tolerance(Decimal("0.01"), Decimal("0.0099")) is True
        assert within_tolerance(Decimal("0.01"), Decimal("0.0101")) is True

    def test_beyond_one_percent_rejected(self):
        assert within_tolerance(Decimal("0.01"), Decimal("0.00989999")) is False
        assert within_tolerance(Decimal("0.01"), Decimal("0.0085")) is False


class TestTradeEscrowReconciliation:

    def test_in_tolerance_deposit_completes_then_duplicates(self, reconciler, funded_trade, session_factory, trade_status):
        result = reconciler.handle_transfer_event(btc_event(990000), now=NOW)

        assert result.status == ReconciliationStatus.COMPLETED
        assert result.received_amount == Decimal("0.0099")
        row = obligation_row(session_factory, funded_trade["obligation_id"])
        assert row.status == ObligationStatus.COMPLETED.value
        assert row.tx_hash == "tx-abc"
        assert row.confirmed_at == NOW
        assert trade_status.get_trade("T1")["escrow_status"] == EscrowStatus.CRYPTO_RECEIVED.value

        again = reconciler.handle_transfer_event(btc_event(990000), now=NOW)
        assert again.status == ReconciliationStatus.DUPLICATE
        assert trade_status.get_trade("T1")["escrow_status"] == EscrowStatus.CRYPTO_RECEIVED.value

    def test_address_marked_confirmed(self, reconciler, funded_trade, ledger):
        reconciler.handle_transfer_event(btc_event(1000000), now=NOW)

        record = ledger.lookup("T1", "BTC", now=NOW)
        assert record.status == EscrowAddressStatus.CONFIRMED.value
        assert record.tx_hash == "tx-abc"
        assert record.confirmations == 3

    def test_out_of_tolerance_is_mismatched(self, reconciler, funded_trade, session_factory):
        result = reconciler.handle_transfer_event(btc_event(850000), now=NOW)

        assert result.status == ReconciliationStatus.MISMATCHED
        assert result.delta == Decimal("-0.0015")
        assert obligation_row(session_factory, funded_trade["obligation_id"]).status == ObligationStatus.PENDING.value
        with session_factory() as session:
            discrepancy = session.execute(select(ReconciliationDiscrepancy)).scalar_one()
            assert discrepancy.obligation_id == funded_trade["obligation_id"]
            assert discrepancy.resolved is False

    def test_mismatch_then_correct_transfer_completes(self, reconciler, funded_trade, session_factory):
        reconciler.handle_transfer_event(btc_event(850000, tx_hash="tx-short"), now=NOW)
        assert reconciler.handle_transfer_event(btc_event(850000, tx_hash="tx-short")).status == ReconciliationStatus.DUPLICATE

        result = reconciler.handle_transfer_event(btc_event(1000000, tx_hash="tx-full"), now=NOW)

        assert result.status == ReconciliationStatus.COMPLETED
        assert obligation_row(session_factory, funded_trade["obligation_id"]).status == ObligationStatus.COMPLETED.value

    def test_unknown_address_is_unmatched(self, reconciler, funded_trade, session_factory):
        result = reconciler.handle_transfer_event(btc_event(990000, address="bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq"))

        assert result.status == ReconciliationStatus.UNMATCHED
        with session_factory() as session:
            assert session.execute(select(func.count(ProcessedTransferEvent.id))).scalar() == 0

    def test_unconfirmed_event_is_ignored(self, reconciler, funded_trade, session_factory, ledger):
        result = reconciler.handle_transfer_event(btc_event(990000, state="unconfirmed"))

        assert result.status == ReconciliationStatus.IGNORED
        assert obligation_row(session_factory, funded_trade["obligation_id"]).status == ObligationStatus.PENDING.value
        assert ledger.lookup("T1", "BTC").status == EscrowAddressStatus.FUNDED.value

    def test_completion_publishes_status(self, session_factory, ledger, trade_status, funded_trade):
        notifier = MagicMock()
        reconciler = PaymentReconciler(session_factory, ledger=ledger, notifier=notifier, trade_status=trade_status)

        reconciler.handle_transfer_event(btc_event(990000))
        reconciler.handle_transfer_event(btc_event(990000))

        notifier.publish.assert_called_once_with("T1")

    def test_unconfirmed_event_publishes_status(self, session_factory, ledger, trade_status, funded_trade):
        notifier = MagicMock()
        reconciler = PaymentReconciler(session_factory, ledger=ledger, notifier=notifier, trade_status=trade_status)

        result = reconciler.handle_transfer_event(btc_event(990000, state="unconfirmed"))
        reconciler.handle_transfer_event(btc_event(990000, state="unconfirmed"))

        assert result.trade_id == "T1"
        notifier.publish.assert_called_once_with("T1")

    def test_completed_obligation_never_reopened_by_later_event(self, reconciler, funded_trade, session_factory):
        reconciler.handle_transfer_event(btc_event(990000, tx_hash="tx-1"))
        result = reconciler.handle_transfer_event(btc_event(990000, tx_hash="tx-2"))

        assert result.status == ReconciliationStatus.UNMATCHED
        assert obligation_row(session_factory, funded_trade["obligation_id"]).tx_hash == "tx-1"


class TestCreditPurchaseReconciliation:

    def test_credits_added_once(self, reconciler, obligations, session_factory):
        obligation_id = obligations.open_credit_purchase(
            user_id=7, asset="ETH", credits=500, crypto_amount=Decimal("0.0025"), payment_address=ETH_ADDRESS
        )
        event = TransferEvent(
            asset="ETH", address=ETH_ADDRESS, amount=Decimal("2500000000000000"),
            tx_hash="0xfeed", confirmations=12, amount_in_base_units=True,
        )

        assert reconciler.handle_transfer_event(event).status == ReconciliationStatus.COMPLETED
        assert reconciler.handle_transfer_event(event).status == ReconciliationStatus.DUPLICATE

        with session_factory() as session:
            assert session.get(CreditAccount, 7).balance == 500
            ledger_rows = session.execute(select(CreditTransaction)).scalars().all()
            assert len(ledger_rows) == 1
            assert ledger_rows[0].obligation_id == obligation_id

    def test_credits_accumulate_across_purchases(self, reconciler, obligations, session_factory):
        for i, address in enumerate((ETH_ADDRESS, "0x" + "a" * 40)):
            obligations.open_credit_purchase(7, "ETH", 100, Decimal("0.001"), address)
            reconciler.handle_transfer_event(
                TransferEvent("ETH", address, Decimal("0.001"), f"0xtx{i}", confirmations=12)
            )

        with session_factory() as session:
            assert session.get(CreditAccount, 7).balance == 200


class TestNotificationParsing:

    def test_data_shape(self):
        events = parse_transfer_notification({
            "type": "transfer",
            "data": {
                "address": BTC_ADDRESS, "value": 990000, "coin": "btc",
                "state": "confirmed", "confirmations": 2, "txHash": "tx-abc",
            },
        })

        assert len(events) == 1
        event = events[0]
        assert event.asset == "BTC"
        assert event.is_confirmed
        assert event.normalized_amount() == Decimal("0.0099")
        assert event.idempotency_key == ("tx-abc", BTC_ADDRESS)

    def test_multi_output_shape(self):
        events = parse_transfer_notification({
            "type": "transfer",
            "coin": "tbtc",
            "transfer": {
                "txid": "tx-multi",
                "state": "confirmed",
                "outputs": [
                    {"address": BTC_ADDRESS, "value": 1000000},
                    {"address": "bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq", "value": 5000},
                ],
            },
        })

        assert [e.address for e in events] == [BTC_ADDRESS, "bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq"]
        assert all(e.asset == "BTC" and e.tx_hash == "tx-multi" for e in events)

    def test_non_transfer_ignored(self):
        assert parse_transfer_notification({"type": "block", "data": {}}) == []

    def test_missing_tx_hash_rejected(self):
        with pytest.raises(InvalidNotificationError):
            parse_transfer_notification({"type": "transfer", "data": {"address": BTC_ADDRESS, "value": 1}})

    def test_handle_notification_end_to_end(self, reconciler, funded_trade):
        results = reconciler.handle_notification({
            "type": "transfer",
            "data": {"address": BTC_ADDRESS, "value": 990000, "coin": "btc", "state": "confirmed", "txHash": "tx-abc"},
        })
        assert [r.status for r in results] == [ReconciliationStatus.COMPLETED]

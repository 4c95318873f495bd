"""Recovery prompt gating, resume routing and dismissal"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from conftest import NOW
from models import SessionType
from services.session_recovery import (
    SessionRecoveryCoordinator, ResumeIntentDispatcher, RestoreOutcome, RESUME_ROUTES,
    UNABLE_TO_RESUME, is_leave_guarded
)
from services.session_store import (
    SessionStore, FlowSession, CreditPurchasePayload, CryptoBuyPayload, CryptoSellPayload, EscrowPayload
)

USER = 42


@pytest.fixture
def store_factory(session_factory, primary_tier):
    return lambda user_id: SessionStore(user_id, session_factory=session_factory, primary=primary_tier)


@pytest.fixture
def coordinator(session_factory, store_factory):
    return SessionRecoveryCoordinator(
        session_factory=session_factory,
        store_factory=store_factory,
        recovery_routes=["/home"],
    )


@pytest.fixture
def sessions():
    return {
        SessionType.CREDIT_PURCHASE: FlowSession(
            "cp-1", SessionType.CREDIT_PURCHASE, 2, CreditPurchasePayload(credits=500, asset="BTC")
        ),
        SessionType.CRYPTO_BUY: FlowSession(
            "buy-1", SessionType.CRYPTO_BUY, 1, CryptoBuyPayload(selected_coin="BTC", coin_data={"price": "65000"})
        ),
        SessionType.CRYPTO_SELL: FlowSession(
            "sell-1", SessionType.CRYPTO_SELL, 3, CryptoSellPayload(selected_coin="USDT", amount="150")
        ),
        SessionType.ESCROW: FlowSession(
            "esc-1", SessionType.ESCROW, 2,
            EscrowPayload(transaction_id="T1", trade_amount="0.01", mode="buy", delivery_type="pickup", service_fee="0.5"),
        ),
    }


def save_all(store_factory, sessions, now=NOW):
    store = store_factory(USER)
    for session in sessions.values():
        store.save(session, now=now)


class TestRecoveryPrompt:

    def test_prompt_only_on_allowed_route(self, coordinator, store_factory, sessions):
        save_all(store_factory, sessions)
        assert coordinator.maybe_present_recovery("/escrow-flow", USER, now=NOW) is None

    def test_prompt_collects_all_flow_types(self, coordinator, store_factory, sessions):
        save_all(store_factory, sessions)

        offered = coordinator.maybe_present_recovery("/home", USER, now=NOW)

        assert {s.type for s in offered} == set(SessionType)

    def test_prompt_at_most_once_per_day(self, coordinator, store_factory, sessions):
        save_all(store_factory, sessions)

        assert coordinator.maybe_present_recovery("/home", USER, now=NOW) is not None
        assert coordinator.maybe_present_recovery("/home", USER, now=NOW + timedelta(hours=2)) is None

        next_day = NOW.replace(hour=0, minute=5) + timedelta(days=1)
        assert coordinator.maybe_present_recovery("/home", USER, now=next_day) is not None

    def test_no_sessions_no_prompt_and_no_marker(self, coordinator, store_factory, sessions):
        assert coordinator.maybe_present_recovery("/home", USER, now=NOW) is None

        save_all(store_factory, sessions, now=NOW + timedelta(minutes=1))
        assert coordinator.maybe_present_recovery("/home", USER, now=NOW + timedelta(minutes=2)) is not None

    def test_expired_sessions_not_offered(self, coordinator, store_factory, sessions):
        save_all(store_factory, sessions, now=NOW - timedelta(hours=25))
        assert coordinator.maybe_present_recovery("/home", USER, now=NOW) is None


class TestRestore:

    def test_every_type_has_a_route(self):
        assert set(RESUME_ROUTES) == set(SessionType)

    @pytest.mark.parametrize("session_type,route", [
        (SessionType.CREDIT_PURCHASE, "/credits-purchase"),
        (SessionType.CRYPTO_BUY, "/buy-crypto-flow"),
        (SessionType.CRYPTO_SELL, "/sell-crypto-flow"),
        (SessionType.ESCROW, "/escrow-flow"),
    ])
    def test_resume_route(self, coordinator, sessions, session_type, route):
        result = coordinator.restore(sessions[session_type])

        assert result.outcome == RestoreOutcome.RESUMED
        assert result.intent.route == route
        assert result.intent.session is sessions[session_type]

    def test_escrow_rehydration_payload(self, coordinator, sessions):
        state = coordinator.restore(sessions[SessionType.ESCROW]).intent.state
        assert state == {
            "tradeId": "T1",
            "amount": "0.01",
            "mode": "buy",
            "deliveryType": "pickup",
            "deliveryAddress": None,
            "serviceFee": "0.5",
        }

    def test_credit_purchase_emits_restore_event(self, coordinator, sessions):
        intent = coordinator.restore(sessions[SessionType.CREDIT_PURCHASE]).intent
        assert intent.event == "restorePaymentSession"

    def test_unmapped_type_reports_unable_to_resume(self, session_factory, store_factory, sessions):
        coordinator = SessionRecoveryCoordinator(
            session_factory=session_factory,
            store_factory=store_factory,
            route_map={SessionType.CREDIT_PURCHASE: RESUME_ROUTES[SessionType.CREDIT_PURCHASE]},
        )

        result = coordinator.restore(sessions[SessionType.ESCROW])

        assert result.outcome == RestoreOutcome.UNSUPPORTED
        assert result.intent is None
        assert result.message == UNABLE_TO_RESUME

    def test_intent_dispatched_to_registered_consumer(self, coordinator, sessions):
        handler = MagicMock()
        coordinator.dispatcher.register(SessionType.CRYPTO_BUY, handler)

        result = coordinator.restore(sessions[SessionType.CRYPTO_BUY])

        assert result.delivered is True
        handler.assert_called_once_with(result.intent)

    def test_undelivered_without_consumer(self, coordinator, sessions):
        assert coordinator.restore(sessions[SessionType.CRYPTO_SELL]).delivered is False


class TestDispatcher:

    def test_one_consumer_per_type(self):
        dispatcher = ResumeIntentDispatcher()
        dispatcher.register(SessionType.ESCROW, MagicMock())
        with pytest.raises(ValueError):
            dispatcher.register(SessionType.ESCROW, MagicMock())

    def test_unregister_frees_slot(self):
        dispatcher = ResumeIntentDispatcher()
        unregister = dispatcher.register(SessionType.ESCROW, MagicMock())
        unregister()
        dispatcher.register(SessionType.ESCROW, MagicMock())


class TestDismiss:

    def test_dismiss_removes_only_that_session(self, coordinator, store_factory, sessions):
        save_all(store_factory, sessions)

        coordinator.dismiss("buy-1", USER)

        store = store_factory(USER)
        assert store.get(SessionType.CRYPTO_BUY, now=NOW) == []
        assert [s.id for s in store.get(SessionType.ESCROW, now=NOW)] == ["esc-1"]
        store.end_scope()
        assert store.get(SessionType.CRYPTO_BUY, now=NOW) == []


class TestLeaveGuard:

    def test_credit_purchase_mid_flow_guarded(self, sessions):
        assert is_leave_guarded(sessions[SessionType.CREDIT_PURCHASE]) is True

    def test_first_and_final_steps_not_guarded(self):
        first = FlowSession("cp", SessionType.CREDIT_PURCHASE, 1, CreditPurchasePayload(credits=10, asset="BTC"))
        final = FlowSession("cp", SessionType.CREDIT_PURCHASE, 3, CreditPurchasePayload(credits=10, asset="BTC"))
        assert is_leave_guarded(first) is False
        assert is_leave_guarded(final) is False

    def test_other_flows_not_guarded(self, sessions):
        assert is_leave_guarded(sessions[SessionType.ESCROW]) is False

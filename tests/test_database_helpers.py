"""Session helpers and transient error handling"""

from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from database import managed_session, handle_database_error, create_tables
from models import Trade, CreditAccount
from utils.atomic_transactions import atomic_transaction, run_atomic


def operational_error(message):
    return OperationalError("SELECT 1", {}, Exception(message))


class TestHandleDatabaseError:

    def test_transient_errors_are_retryable(self):
        assert handle_database_error(operational_error("database is locked")) is True
        assert handle_database_error(operational_error("SSL connection has been closed unexpectedly")) is True

    def test_other_errors_are_not(self):
        assert handle_database_error(operational_error("no such table: trades")) is False
        assert handle_database_error(ValueError("database is locked")) is False


class TestManagedSession:

    def test_commits_on_success(self, session_factory):
        with managed_session(session_factory) as session:
            session.add(CreditAccount(user_id=1, balance=10))

        with session_factory() as session:
            assert session.get(CreditAccount, 1).balance == 10

    def test_rolls_back_on_error(self, session_factory):
        with pytest.raises(RuntimeError):
            with managed_session(session_factory) as session:
                session.add(CreditAccount(user_id=2, balance=10))
                session.flush()
                raise RuntimeError("boom")

        with session_factory() as session:
            assert session.get(CreditAccount, 2) is None

    def test_create_tables_is_idempotent(self, db_engine):
        assert create_tables(db_engine) is True
        assert create_tables(db_engine) is True


class TestAtomicTransactions:

    def test_nested_blocks_commit_once(self, session_factory):
        session = session_factory()
        with atomic_transaction(session) as outer:
            outer.add(CreditAccount(user_id=3, balance=1))
            with atomic_transaction(outer) as inner:
                inner.add(CreditAccount(user_id=4, balance=1))
        session.close()

        with session_factory() as check:
            ids = check.execute(select(CreditAccount.user_id)).scalars().all()
            assert sorted(ids) == [3, 4]

    def test_transient_error_retried(self, session_factory):
        calls = []

        def operation(session):
            calls.append(1)
            if len(calls) == 1:
                raise operational_error("database is locked")
            return "ok"

        with patch("utils.atomic_transactions.time.sleep") as sleep:
            assert run_atomic(operation, session_factory) == "ok"
        assert len(calls) == 2
        sleep.assert_called_once_with(1.0)

    def test_retries_are_bounded(self, session_factory):
        def operation(session):
            raise operational_error("database is locked")

        with patch("utils.atomic_transactions.time.sleep"):
            with pytest.raises(OperationalError):
                run_atomic(operation, session_factory, max_retries=2)

    def test_business_errors_not_retried(self, session_factory):
        calls = []

        def operation(session):
            calls.append(1)
            session.add(Trade(id="X", buyer_id=1, asset="BTC", crypto_amount=1))
            raise ValueError("rule violated")

        with pytest.raises(ValueError):
            run_atomic(operation, session_factory)
        assert len(calls) == 1
        with session_factory() as session:
            assert session.get(Trade, "X") is None

"""
Tests for connection sync orchestration, sync jobs and the periodic scheduler.

Run with: pytest backend/tests/test_sync.py -v
"""

from datetime import date, datetime, timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from app.core.scheduler import BankSyncScheduler
from app.modules.banking.errors import AggregatorError, AuthenticationFailure, ItemNotFound, TransientNetworkFailure
from app.modules.banking.lifecycle import ConnectionStatus
from app.modules.banking.models import BankConnection, BankTransaction
from app.modules.banking.sync import (
    AutoCategorizeTransactionsJob,
    ConvertBankTransactionsJob,
    SyncBankConnectionJob,
    connections_due_for_sync,
    sync_connection,
)
from app.modules.ledger.models import Transaction
from tests.conftest import FakeBridgeClient, bridge_transaction, make_connection


@pytest.fixture
def client():
    return FakeBridgeClient(
        accounts={"item-1": [{"id": "acc-1", "name": "Compte courant", "type": "checking", "balance": 10}]},
        transactions={"acc-1": [
            bridge_transaction("tx-1", -12.5, "LIDL"),
            bridge_transaction("tx-2", 900, "VIREMENT ACME"),
        ]},
    )


class TestSyncConnection:

    def test_full_sync(self, db, connection, client):
        result = sync_connection(db, connection, client, auto_convert=False)

        assert result.imported.created == 2
        assert len(result.accounts) == 1
        assert result.conversion is None
        assert [c[0] for c in client.calls] == ["get_item", "get_accounts", "get_transactions"]
        assert connection.status == ConnectionStatus.ACTIVE
        assert connection.last_successful_sync_at is not None

    def test_inline_conversion(self, db, connection, client, categories):
        result = sync_connection(db, connection, client, auto_convert=True)

        assert result.conversion.converted == 2
        assert db.query(Transaction).count() == 2

    def test_success_clears_errors(self, db, user, client):
        connection = make_connection(db, user, status=ConnectionStatus.ERROR, error_count=6, last_error="x")

        sync_connection(db, connection, client)

        assert connection.status == ConnectionStatus.ACTIVE
        assert connection.error_count == 0
        assert connection.last_error is None

    def test_item_not_found_expires_and_skips_import(self, db, connection, client):
        client.items["item-1"] = ItemNotFound("item-1")

        with pytest.raises(ItemNotFound):
            sync_connection(db, connection, client)

        assert connection.status == ConnectionStatus.EXPIRED
        assert ("get_accounts", "item-1") not in client.calls
        assert db.query(BankTransaction).count() == 0

    def test_unhealthy_item_counts_as_failure(self, db, connection, client):
        client.items["item-1"] = {"id": "item-1", "status_code": 1010, "status_code_info": "bank unavailable"}

        with pytest.raises(AggregatorError):
            sync_connection(db, connection, client)

        assert connection.error_count == 1
        assert "bank unavailable" in connection.last_error
        assert connection.status == ConnectionStatus.ACTIVE

    def test_repeated_failures_escalate(self, db, connection, client):
        client.items["item-1"] = TransientNetworkFailure("timeout")

        for _ in range(5):
            with pytest.raises(TransientNetworkFailure):
                sync_connection(db, connection, client)

        assert connection.status == ConnectionStatus.ERROR
        assert connection.error_count == 5

    @pytest.mark.parametrize("error", [
        TransientNetworkFailure("timeout"),
        AuthenticationFailure("token refused"),
    ])
    def test_transaction_fetch_failure_counts_as_error(self, db, user, client, error):
        connection = make_connection(db, user, error_count=4)
        client.transactions["acc-1"] = error

        with pytest.raises(type(error)):
            sync_connection(db, connection, client)

        assert connection.status == ConnectionStatus.ERROR
        assert connection.error_count == 5
        assert connection.last_successful_sync_at is None


class TestSyncJob:

    def test_job_syncs_connection(self, db, connection, client, session_factory):
        connection_id = connection.id
        db.commit()

        result = SyncBankConnectionJob(connection_id, session_factory=session_factory, client=client).run()

        assert result.imported.created == 2
        assert db.get(BankConnection, connection_id).last_successful_sync_at is not None

    @pytest.mark.parametrize("status", [ConnectionStatus.DISCONNECTED, ConnectionStatus.DISABLED])
    def test_job_skips_unsyncable(self, db, user, client, session_factory, status):
        connection_id = make_connection(db, user, status=status).id
        db.commit()

        assert SyncBankConnectionJob(connection_id, session_factory=session_factory, client=client).run() is None
        assert client.calls == []

    def test_job_skips_missing_connection(self, session_factory, client):
        assert SyncBankConnectionJob(999, session_factory=session_factory, client=client).run() is None

    def test_retry_policy(self):
        job = SyncBankConnectionJob(1)
        assert job.should_retry(TransientNetworkFailure("timeout"))
        assert not job.should_retry(ItemNotFound("item-1"))

    def test_item_not_found_runs_once(self, db, connection, client, session_factory, queue):
        connection_id = connection.id
        db.commit()
        client.items["item-1"] = ItemNotFound("item-1")

        queue.enqueue(SyncBankConnectionJob(connection_id, session_factory=session_factory, client=client))

        assert client.calls == [("get_item", "item-1")]
        assert db.get(BankConnection, connection_id).status == ConnectionStatus.EXPIRED

    def test_transient_failure_retried(self, db, connection, client, session_factory, queue):
        connection_id = connection.id
        db.commit()
        client.items["item-1"] = TransientNetworkFailure("timeout")

        queue.enqueue(SyncBankConnectionJob(connection_id, session_factory=session_factory, client=client))

        assert client.calls.count(("get_item", "item-1")) == 3
        assert db.get(BankConnection, connection_id).error_count == 3

    def test_convert_job(self, db, connection, client, categories, session_factory):
        sync_connection(db, connection, client, auto_convert=False)
        user_id = connection.user_id
        db.commit()

        summary = ConvertBankTransactionsJob(user_id=user_id, session_factory=session_factory).run()

        assert summary.converted == 2
        assert db.query(Transaction).count() == 2

    def test_auto_categorize_job(self, db, user, categories, session_factory):
        db.add_all([
            Transaction(user_id=user.id, type="expense", amount=Decimal("18.00"), description="UBER TRIP",
                        transaction_date=date(2026, 3, 1)),
            Transaction(user_id=user.id, type="expense", amount=Decimal("250.00"), description="ATELIER DUPONT",
                        transaction_date=date(2026, 3, 2)),
        ])
        user_id = user.id
        transport_id = categories["Transport"].id
        db.commit()

        stats = AutoCategorizeTransactionsJob(user_id=user_id, session_factory=session_factory).run()

        assert stats == {"processed": 2, "categorized": 1, "failed": 0}
        db.expire_all()
        uber = db.query(Transaction).filter_by(description="UBER TRIP").one()
        assert (uber.category_id, uber.status) == (transport_id, "completed")


class TestScheduling:

    def test_due_connections(self, db, user):
        now = datetime(2026, 3, 1, 12, 0)
        due = make_connection(db, user, item_id="due", last_sync_at=now - timedelta(hours=7))
        make_connection(db, user, item_id="fresh", last_sync_at=now - timedelta(hours=1))
        make_connection(db, user, item_id="never")
        make_connection(db, user, item_id="broken", status=ConnectionStatus.ERROR)
        make_connection(db, user, item_id="manual", auto_sync_enabled=False)

        items = sorted(c.provider_connection_id for c in connections_due_for_sync(db, now))

        assert items == ["due", "never"]

    def test_scheduler_enqueues_due_syncs(self, db, user, session_factory):
        make_connection(db, user, item_id="never")
        db.commit()
        scheduler = BankSyncScheduler.__new__(BankSyncScheduler)
        scheduler.session_factory = session_factory
        scheduler.job_queue = MagicMock()

        assert scheduler.enqueue_due_syncs() == 1
        job = scheduler.job_queue.enqueue.call_args.args[0]
        assert isinstance(job, SyncBankConnectionJob)

"""
Tests for the transaction importer: dedup per user, relinking, partial failures.

Run with: pytest backend/tests/test_importer.py -v
"""

from datetime import date
from decimal import Decimal

import pytest

from app.modules.banking.errors import AggregatorError, AuthenticationFailure, TransientNetworkFailure
from app.modules.banking.importer import ImportOutcome, TransactionImporter
from app.modules.banking.models import BankTransaction, ProcessingStatus
from tests.conftest import FakeBridgeClient, bridge_transaction, make_account, make_connection


PAYLOADS = [
    bridge_transaction(1001, -42.10, "CARREFOUR CITY PARIS"),
    bridge_transaction(1002, -18.00, "UBER TRIP", category="transport"),
    bridge_transaction(1003, 2500.00, "SALAIRE ACME"),
]


class TestImportConnection:

    def test_imports_new_records(self, db, connection, account, categories):
        client = FakeBridgeClient(transactions={"acc-1": PAYLOADS})

        summary = TransactionImporter(db, client).import_connection(connection, "uuid-camille")

        assert summary.created == 3
        assert summary.accounts == 1
        assert len(summary.created_ids) == 3
        records = {r.external_id: r for r in db.query(BankTransaction).all()}
        assert set(records) == {"1001", "1002", "1003"}

        carrefour = records["1001"]
        assert carrefour.amount == Decimal("-42.10")
        assert carrefour.bank_connection_id == connection.id
        assert carrefour.bank_account_id == account.id
        assert carrefour.processing_status == ProcessingStatus.IMPORTED
        assert carrefour.suggested_category_id == categories["Alimentation"].id
        assert carrefour.raw_data["id"] == 1001
        assert records["1002"].suggested_category_id == categories["Transport"].id
        assert records["1002"].merchant_category == "transport"
        assert records["1003"].suggested_category_id is None

    def test_reimport_is_idempotent(self, db, connection, account):
        client = FakeBridgeClient(transactions={"acc-1": PAYLOADS})
        importer = TransactionImporter(db, client)

        importer.import_connection(connection, "uuid-camille")
        summary = importer.import_connection(connection, "uuid-camille")

        assert summary.created == 0
        assert summary.skipped == 3
        assert db.query(BankTransaction).count() == 3

    def test_since_window_passed_to_client(self, db, connection, account):
        client = FakeBridgeClient()
        calls = []
        client.get_transactions = lambda uuid, acc, since, limit=None: calls.append((acc, since)) or []

        TransactionImporter(db, client).import_connection(connection, "uuid-camille", since=date(2026, 1, 1))

        assert calls == [("acc-1", date(2026, 1, 1))]

    def test_rejected_account_does_not_block_others(self, db, connection, account):
        second = make_account(db, connection, external_id="acc-2")
        client = FakeBridgeClient(transactions={
            "acc-1": AggregatorError("Bridge API error 400", status_code=400),
            "acc-2": PAYLOADS[:1],
        })

        summary = TransactionImporter(db, client).import_connection(connection, "uuid-camille")

        assert summary.created == 1
        assert len(summary.errors) == 1
        assert db.query(BankTransaction).one().bank_account_id == second.id

    @pytest.mark.parametrize("error", [
        TransientNetworkFailure("timeout"),
        AuthenticationFailure("token refused"),
    ])
    def test_network_and_auth_failures_propagate(self, db, connection, account, error):
        client = FakeBridgeClient(transactions={"acc-1": error})

        with pytest.raises(type(error)):
            TransactionImporter(db, client).import_connection(connection, "uuid-camille")

    def test_bad_record_does_not_block_batch(self, db, connection, account):
        payloads = [
            bridge_transaction(2001, -5.00, "LIDL"),
            bridge_transaction(2002, None, "BROKEN"),
            {"amount": -3, "description": "NO ID"},
            bridge_transaction(2003, -7.00, "RATP"),
        ]
        client = FakeBridgeClient(transactions={"acc-1": payloads})

        summary = TransactionImporter(db, client).import_connection(connection, "uuid-camille")

        assert summary.created == 2
        assert summary.failed == 2
        assert {r.external_id for r in db.query(BankTransaction).all()} == {"2001", "2003"}


class TestDedupAcrossConnections:

    def test_same_transaction_on_new_connection_is_relinked(self, db, user, connection, account):
        client = FakeBridgeClient(transactions={"acc-1": PAYLOADS[:1], "acc-9": PAYLOADS[:1]})
        TransactionImporter(db, client).import_connection(connection, "uuid-camille")

        replacement = make_connection(db, user, item_id="item-2")
        new_account = make_account(db, replacement, external_id="acc-9")
        summary = TransactionImporter(db, client).import_connection(replacement, "uuid-camille")

        assert summary.relinked == 1
        record = db.query(BankTransaction).one()
        assert record.bank_connection_id == replacement.id
        assert record.bank_account_id == new_account.id

    def test_dedup_is_per_user(self, db, user, connection, account):
        from app.shared.models import User

        other = User(email="dominique@example.com", bridge_user_uuid="uuid-dominique")
        db.add(other)
        db.commit()
        other_connection = make_connection(db, other, item_id="item-1")
        make_account(db, other_connection, external_id="acc-1")

        client = FakeBridgeClient(transactions={"acc-1": PAYLOADS[:1]})
        TransactionImporter(db, client).import_connection(connection, "uuid-camille")
        summary = TransactionImporter(db, client).import_connection(other_connection, "uuid-dominique")

        assert summary.created == 1
        assert db.query(BankTransaction).count() == 2

    def test_import_record_outcomes(self, db, connection, account):
        importer = TransactionImporter(db, FakeBridgeClient())
        payload = bridge_transaction(3001, -12, "FNAC")

        first, record = importer.import_record(connection, account, payload)
        second, same = importer.import_record(connection, account, payload)

        assert first == ImportOutcome.CREATED
        assert second == ImportOutcome.SKIPPED
        assert same.id == record.id

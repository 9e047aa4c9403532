"""
Tests for Bridge webhook verification and processing.

Run with: pytest backend/tests/test_webhooks.py -v
"""

import hashlib
import hmac

import pytest

from app.modules.banking.lifecycle import ConnectionStatus
from app.modules.banking.models import BankConnection, BankTransaction
from app.modules.banking.webhooks import WebhookProcessor, verify_signature
from app.shared.models import User
from tests.conftest import FakeBridgeClient, bridge_transaction, make_connection


SECRET = "s3cret"
BODY = b'{"type":"item.refreshed","content":{"item_id":"item-1"}}'


def _sign(body=BODY, secret=SECRET):
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class TestSignature:

    def test_v1_prefixed_uppercase(self):
        assert verify_signature(BODY, f"v1={_sign().upper()}", secret=SECRET, allow_unsigned=False)

    def test_bare_lowercase_digest(self):
        assert verify_signature(BODY, _sign(), secret=SECRET, allow_unsigned=False)

    def test_wrong_digest(self):
        assert not verify_signature(BODY, f"v1={_sign(secret='other')}", secret=SECRET, allow_unsigned=False)

    def test_tampered_body(self):
        assert not verify_signature(BODY + b" ", f"v1={_sign()}", secret=SECRET, allow_unsigned=False)

    @pytest.mark.parametrize("allow_unsigned", [True, False])
    def test_missing_signature(self, allow_unsigned):
        assert verify_signature(BODY, None, secret=SECRET, allow_unsigned=allow_unsigned) is allow_unsigned

    @pytest.mark.parametrize("allow_unsigned", [True, False])
    def test_missing_secret(self, allow_unsigned):
        assert verify_signature(BODY, _sign(), secret="", allow_unsigned=allow_unsigned) is allow_unsigned


@pytest.fixture
def client():
    return FakeBridgeClient(
        items={"item-1": {"id": "item-1", "status_code": 0, "bank": {"id": 408, "name": "Credit Exemple", "logo_url": "https://logo.test/408.png"}}},
        accounts={"item-1": [{"id": "acc-1", "name": "Compte courant", "type": "checking", "balance": 100}]},
        transactions={"acc-1": [bridge_transaction("tx-1", -12.5, "LIDL")]},
    )


@pytest.fixture
def processor(db, client, queue, session_factory):
    return WebhookProcessor(db, client=client, queue=queue, session_factory=session_factory)


def _connection(db, item_id="item-1"):
    db.expire_all()
    return db.query(BankConnection).filter_by(provider_connection_id=item_id).one()


class TestItemCreated:

    def test_creates_and_syncs(self, db, user, processor, client):
        result = processor.process({"type": "item.created", "content": {"item_id": "item-1", "user_uuid": "uuid-camille"}})

        assert result.action == "connection_created"
        connection = _connection(db)
        assert result.connection_id == connection.id
        assert connection.status == ConnectionStatus.ACTIVE
        assert connection.last_successful_sync_at is not None
        assert db.query(BankTransaction).count() == 1
        assert ("get_item", "item-1") in client.calls

    def test_redelivery_is_idempotent(self, db, user, processor):
        payload = {"type": "item.created", "content": {"item_id": "item-1", "user_uuid": "uuid-camille"}}

        processor.process(payload)
        result = processor.process(payload)

        assert result.action == "connection_exists"
        assert db.query(BankConnection).count() == 1
        assert db.query(BankTransaction).count() == 1

    def test_unknown_user(self, db, user, processor):
        result = processor.process({"type": "item.created", "content": {"item_id": "item-1", "user_uuid": "nobody"}})
        assert result.action == "unknown_user"
        assert db.query(BankConnection).count() == 0

    def test_incomplete_payload(self, db, processor):
        result = processor.process({"type": "item.created", "content": {"item_id": "item-1"}})
        assert result.action == "ignored"


class TestItemRefreshed:

    def test_ok_refresh_finalizes_and_syncs(self, db, user, processor):
        make_connection(db, user, status=ConnectionStatus.PENDING, bank_name=None)

        result = processor.process({"type": "item.refreshed", "content": {"item_id": "item-1", "status_code": 0}})

        assert result.action == "sync_enqueued"
        connection = _connection(db)
        assert connection.status == ConnectionStatus.ACTIVE
        assert connection.bank_name == "Credit Exemple"
        assert connection.bank_logo_url == "https://logo.test/408.png"
        assert connection.provider_metadata["bank_id"] == 408
        assert db.query(BankTransaction).count() == 1

    def test_failed_refresh_records_error(self, db, user, processor, client):
        make_connection(db, user, error_count=2)

        result = processor.process({
            "type": "item.refreshed",
            "content": {"item_id": "item-1", "status_code": 402, "status_code_info": "wrong credentials"},
        })

        assert result.action == "error_recorded"
        connection = _connection(db)
        assert connection.status == ConnectionStatus.ERROR
        assert connection.error_count == 2
        assert connection.last_error == "wrong credentials"
        assert client.calls == []

    def test_finalize_failure_still_syncs(self, db, user, processor, client, monkeypatch):
        make_connection(db, user)

        def broken(connection):
            raise RuntimeError("bank lookup failed")

        monkeypatch.setattr(processor, "finalize", broken)

        result = processor.process({"type": "item.refreshed", "content": {"item_id": "item-1"}})

        assert result.action == "sync_enqueued"
        assert db.query(BankTransaction).count() == 1

    def test_unknown_item(self, db, processor):
        result = processor.process({"type": "item.refreshed", "content": {"item_id": "nope"}})
        assert result.action == "ignored"


class TestOtherEvents:

    def test_updated_activates_pending(self, db, user, processor):
        make_connection(db, user, status=ConnectionStatus.PENDING)

        result = processor.process({"type": "item.updated", "content": {"item_id": "item-1"}})

        assert result.action == "connection_updated"
        assert _connection(db).status == ConnectionStatus.ACTIVE

    def test_updated_leaves_error_alone(self, db, user, processor):
        make_connection(db, user, status=ConnectionStatus.ERROR, error_count=5)

        processor.process({"type": "item.updated", "content": {"item_id": "item-1"}})

        assert _connection(db).status == ConnectionStatus.ERROR

    def test_deleted_disconnects(self, db, user, processor):
        make_connection(db, user)
        payload = {"type": "item.deleted", "content": {"item_id": "item-1"}}

        processor.process(payload)
        result = processor.process(payload)

        assert result.action == "connection_disconnected"
        connection = _connection(db)
        assert connection.status == ConnectionStatus.DISCONNECTED
        assert connection.is_deleted
        assert connection.auto_sync_enabled is False

    def test_item_error_is_logged_only(self, db, user, processor):
        make_connection(db, user)

        result = processor.process({"type": "item.error", "content": {"item_id": "item-1", "error": "bank down"}})

        assert result.action == "logged"
        assert _connection(db).status == ConnectionStatus.ACTIVE

    def test_unknown_type(self, db, processor):
        assert processor.process({"type": "account.updated", "content": {}}).action == "ignored"

    def test_user_uuid_scopes_lookup(self, db, user, processor):
        other = User(email="dominique@example.com", bridge_user_uuid="uuid-dominique")
        db.add(other)
        db.commit()
        mine = make_connection(db, user)
        theirs = make_connection(db, other)
        mine_id, theirs_id = mine.id, theirs.id

        result = processor.process({"type": "item.deleted", "content": {"item_id": "item-1", "user_uuid": "uuid-camille"}})

        assert result.connection_id == mine_id
        db.expire_all()
        assert db.get(BankConnection, theirs_id).status == ConnectionStatus.ACTIVE

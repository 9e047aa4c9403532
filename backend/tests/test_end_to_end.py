"""
End-to-end flow: a pending connection receives an item.refreshed webhook,
is synced, and its imported records are converted into ledger transactions.

Run with: pytest backend/tests/test_end_to_end.py -v
"""

from decimal import Decimal

from app.modules.banking.conversion import ConversionPipeline
from app.modules.banking.lifecycle import ConnectionStatus
from app.modules.banking.models import BankConnection, BankTransaction, ProcessingStatus
from app.modules.banking.sync import ProcessWebhookJob
from app.modules.ledger.models import Transaction, TransactionStatus, TransactionType
from tests.conftest import FakeBridgeClient, bridge_transaction, make_connection


def test_webhook_to_ledger(db, user, categories, session_factory, queue):
    connection_id = make_connection(db, user, status=ConnectionStatus.PENDING, bank_name=None).id
    user_id = user.id
    db.commit()

    client = FakeBridgeClient(
        items={"item-1": {"id": "item-1", "status_code": 0, "bank": {"id": 6, "name": "Banque Populaire"}}},
        accounts={"item-1": [{"id": "acc-1", "name": "Compte courant", "type": "checking", "balance": 1830.4}]},
        transactions={"acc-1": [
            bridge_transaction("tx-1", -42.10, "CARREFOUR CITY PARIS"),
            bridge_transaction("tx-2", -18.00, "UBER TRIP"),
            bridge_transaction("tx-3", 2500.00, "SALAIRE ACME"),
        ]},
    )

    # Webhook intake
    queue.enqueue(ProcessWebhookJob(
        {"type": "item.refreshed", "content": {"item_id": "item-1", "status_code": 0}},
        session_factory=session_factory,
        client=client,
        queue=queue,
    ))

    connection = db.get(BankConnection, connection_id)
    assert connection.status == ConnectionStatus.ACTIVE
    assert connection.bank_name == "Banque Populaire"
    assert connection.error_count == 0

    records = db.query(BankTransaction).order_by(BankTransaction.external_id).all()
    assert [r.external_id for r in records] == ["tx-1", "tx-2", "tx-3"]
    assert sum(1 for r in records if r.suggested_category_id is not None) == 2
    db.commit()

    # Conversion
    summary = ConversionPipeline(db).run(user_id=user_id)

    assert summary.converted == 3
    assert summary.categorized == 2
    transactions = {t.external_transaction_id: t for t in db.query(Transaction).all()}
    assert transactions["tx-1"].type == TransactionType.EXPENSE
    assert transactions["tx-1"].amount == Decimal("42.10")
    assert transactions["tx-1"].category_id == categories["Alimentation"].id
    assert transactions["tx-2"].category_id == categories["Transport"].id
    assert transactions["tx-3"].type == TransactionType.INCOME
    assert transactions["tx-3"].status == TransactionStatus.PENDING

    statuses = {r.processing_status for r in db.query(BankTransaction).all()}
    assert statuses == {ProcessingStatus.CONVERTED}

    # A second refresh of the same item changes nothing
    db.commit()
    queue.enqueue(ProcessWebhookJob(
        {"type": "item.refreshed", "content": {"item_id": "item-1", "status_code": 0}},
        session_factory=session_factory,
        client=client,
        queue=queue,
    ))
    assert db.query(BankTransaction).count() == 3
    assert db.query(Transaction).count() == 3

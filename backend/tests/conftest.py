"""
Shared fixtures: an in-memory SQLite database, a fake Bridge client and a
synchronous job queue.

Run with: pytest backend/tests -v
"""

from datetime import date, timedelta
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.cache import clear_cache
from app.core.database import Base, build_engine
from app.core.jobs import ImmediateJobQueue, set_job_queue
from app.modules.banking.lifecycle import ConnectionStatus
from app.modules.banking.models import BankAccount, BankConnection
from app.modules.ledger.models import Category, TransactionType
from app.shared.models import User


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
def engine():
    test_engine = build_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(test_engine)
    yield test_engine
    Base.metadata.drop_all(test_engine)
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def reset_process_state():
    """Tokens, learned patterns and the job queue are process-wide."""
    clear_cache()
    yield
    clear_cache()
    set_job_queue(None)


@pytest.fixture
def queue():
    immediate = ImmediateJobQueue()
    set_job_queue(immediate)
    return immediate


# =============================================================================
# ROWS
# =============================================================================

@pytest.fixture
def user(db):
    row = User(email="camille@example.com", name="Camille", bridge_user_uuid="uuid-camille")
    db.add(row)
    db.commit()
    return row


@pytest.fixture
def categories(db):
    """Global categories the heuristics map onto."""
    rows = {
        "Alimentation": Category(name="Alimentation", type=TransactionType.EXPENSE),
        "Transport": Category(name="Transport", type=TransactionType.EXPENSE),
        "Shopping": Category(name="Shopping", type=TransactionType.EXPENSE),
        "Abonnements": Category(name="Abonnements", type=TransactionType.EXPENSE),
        "Salaire": Category(name="Salaire", type=TransactionType.INCOME),
    }
    db.add_all(rows.values())
    db.commit()
    return rows


def make_connection(db, user, item_id="item-1", status=ConnectionStatus.ACTIVE, **kwargs) -> BankConnection:
    connection = BankConnection(
        user_id=user.id,
        provider="bridge",
        provider_connection_id=item_id,
        bank_name=kwargs.pop("bank_name", "Banque Test"),
        status=status,
        **kwargs,
    )
    db.add(connection)
    db.commit()
    return connection


def make_account(db, connection, external_id="acc-1") -> BankAccount:
    account = BankAccount(bank_connection_id=connection.id, external_id=external_id, name="Compte courant")
    db.add(account)
    db.commit()
    return account


@pytest.fixture
def connection(db, user):
    return make_connection(db, user)


@pytest.fixture
def account(db, connection):
    return make_account(db, connection)


# =============================================================================
# FAKE AGGREGATOR
# =============================================================================

def bridge_transaction(tx_id, amount, description, days_ago=1, **extra) -> Dict[str, Any]:
    payload = {
        "id": tx_id,
        "amount": amount,
        "clean_description": description,
        "description": description,
        "bank_description": description,
        "date": (date.today() - timedelta(days=days_ago)).isoformat(),
        "currency_code": "EUR",
    }
    payload.update(extra)
    return payload


class FakeBridgeClient:
    """
    In-memory stand-in for BridgeClient.

    Values in ``items`` and ``transactions`` may be exceptions, raised when
    the matching call is made.
    """

    def __init__(
        self,
        items: Optional[Dict[str, Any]] = None,
        accounts: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        transactions: Optional[Dict[str, Any]] = None,
    ):
        self.items = items or {}
        self.accounts = accounts or {}
        self.transactions = transactions or {}
        self.calls: List[tuple] = []

    def get_item(self, user_uuid, item_id):
        self.calls.append(("get_item", item_id))
        item = self.items.get(item_id, {"id": item_id, "status_code": 0, "bank": {"id": 1, "name": "Banque Test"}})
        if isinstance(item, Exception):
            raise item
        return item

    def get_accounts(self, user_uuid, item_id):
        self.calls.append(("get_accounts", item_id))
        accounts = self.accounts.get(item_id, [])
        if isinstance(accounts, Exception):
            raise accounts
        return accounts

    def get_transactions(self, user_uuid, account_id, since, limit=None):
        self.calls.append(("get_transactions", account_id))
        transactions = self.transactions.get(account_id, [])
        if isinstance(transactions, Exception):
            raise transactions
        return transactions


@pytest.fixture
def fake_client():
    return FakeBridgeClient()

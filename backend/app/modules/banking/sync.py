"""
Connection sync orchestration and the background jobs of the banking module.

One sync of one connection:
    item status check -> account sync -> transaction import
    -> optional inline conversion -> mark success

Network and authentication failures are recorded on the connection
(mark_sync_error) and re-raised so the job queue retries the job. An item
the aggregator no longer knows expires the connection and is not retried.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import SessionLocal
from app.core.jobs import Job
from app.modules.banking import lifecycle
from app.modules.banking.account_sync import AccountSynchronizer
from app.modules.banking.client import get_bridge_client, is_item_status_ok
from app.modules.banking.conversion import ConversionPipeline, ConversionSummary
from app.modules.banking.errors import AggregatorError, ConnectionNotSyncable, ItemNotFound
from app.modules.banking.importer import ImportSummary, TransactionImporter
from app.modules.banking.lifecycle import ConnectionStatus
from app.modules.banking.models import BankAccount, BankConnection, BankTransaction
from app.modules.ledger.categorization import TransactionCategorizationService

logger = logging.getLogger(__name__)

UNSYNCABLE_STATUSES = {ConnectionStatus.DISCONNECTED, ConnectionStatus.DISABLED}


@dataclass
class SyncResult:
    connection_id: int
    accounts: List[BankAccount]
    imported: ImportSummary
    conversion: Optional[ConversionSummary] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "accounts": len(self.accounts),
            "imported": self.imported.as_dict(),
            "conversion": self.conversion.as_dict() if self.conversion else None,
        }


def connections_due_for_sync(db: Session, now: Optional[datetime] = None) -> List[BankConnection]:
    """Active, auto-synced connections whose sync interval has elapsed."""
    now = now or datetime.utcnow()
    candidates = (
        db.query(BankConnection)
        .filter(
            BankConnection.auto_sync_enabled.is_(True),
            BankConnection.status == ConnectionStatus.ACTIVE,
            BankConnection.deleted_at.is_(None),
        )
        .all()
    )
    return [connection for connection in candidates if lifecycle.needs_sync(connection, now)]


def check_item(client, connection: BankConnection, user_uuid: str) -> Dict[str, Any]:
    """
    Fetch the item and make sure the aggregator considers it healthy.

    Raises:
        ItemNotFound: the item is gone
        AggregatorError: the item exists but reports a failure status
    """
    item = client.get_item(user_uuid, connection.provider_connection_id)
    if not is_item_status_ok(item):
        raise AggregatorError(
            f"Item {connection.provider_connection_id} status: "
            f"{item.get('status_code')} - {item.get('status_code_info') or 'Unknown'}"
        )
    return item


def sync_connection(
    db: Session,
    connection: BankConnection,
    client=None,
    auto_convert: Optional[bool] = None,
) -> SyncResult:
    """
    Run one full sync of a connection and record the outcome on it.

    Raises:
        ItemNotFound: after the connection was marked expired
        BankingError: any other failure, after mark_sync_error
    """
    client = client or get_bridge_client()
    auto_convert = settings.BANKING_AUTO_CONVERT if auto_convert is None else auto_convert

    logger.info(f"Sync started for connection {connection.id} (item {connection.provider_connection_id})")
    try:
        if not connection.provider_connection_id:
            raise ConnectionNotSyncable(f"Connection {connection.id} has no aggregator item id")
        user_uuid = connection.user.bridge_user_uuid if connection.user else None

        check_item(client, connection, user_uuid)
        accounts = AccountSynchronizer(db, client).sync(connection, user_uuid)
        imported = TransactionImporter(db, client).import_connection(connection, user_uuid)

        conversion = None
        if auto_convert and imported.created_ids:
            records = db.query(BankTransaction).filter(BankTransaction.id.in_(imported.created_ids)).all()
            conversion = ConversionPipeline(db).run(records=records)

        lifecycle.mark_sync_success(connection)
        db.commit()
    except ItemNotFound as e:
        db.rollback()
        lifecycle.mark_expired(connection, str(e))
        db.commit()
        logger.warning(f"Connection {connection.id} expired: {e}")
        raise
    except Exception as e:
        db.rollback()
        lifecycle.mark_sync_error(connection, str(e))
        db.commit()
        logger.error(f"Sync failed for connection {connection.id}: {e}")
        raise

    logger.info(
        f"Sync finished for connection {connection.id}: {len(accounts)} account(s), "
        f"{imported.created} new transaction(s)"
    )
    return SyncResult(connection.id, accounts, imported, conversion)


class SyncBankConnectionJob(Job):
    """Sync one bank connection."""

    name = "sync_bank_connection"
    attempts = 3
    timeout = 120

    def __init__(self, connection_id: int, session_factory: Callable[[], Session] = SessionLocal, client=None):
        super().__init__()
        self.connection_id = connection_id
        self.session_factory = session_factory
        self.client = client

    def handle(self) -> Optional[SyncResult]:
        db = self.session_factory()
        try:
            connection = db.get(BankConnection, self.connection_id)
            if connection is None or connection.is_deleted:
                logger.info(f"Connection {self.connection_id} no longer exists, nothing to sync")
                return None
            if ConnectionStatus(connection.status) in UNSYNCABLE_STATUSES:
                logger.info(f"Connection {self.connection_id} is {connection.status.value}, not syncing")
                return None
            return sync_connection(db, connection, self.client)
        finally:
            db.close()

    def should_retry(self, exc: BaseException) -> bool:
        return not isinstance(exc, (ItemNotFound, ConnectionNotSyncable))

    def failed(self, exc: BaseException) -> None:
        logger.error(f"Sync of connection {self.connection_id} failed permanently: {exc}")

    def describe(self) -> str:
        return f"{self.name}(connection={self.connection_id})"


class ProcessWebhookJob(Job):
    """Apply one aggregator webhook event."""

    name = "process_bank_webhook"
    attempts = 3
    timeout = 300

    def __init__(self, payload: Dict[str, Any], session_factory: Callable[[], Session] = SessionLocal, client=None, queue=None):
        super().__init__()
        self.payload = payload
        self.session_factory = session_factory
        self.client = client
        self.queue = queue

    def handle(self):
        from app.modules.banking.webhooks import WebhookProcessor

        db = self.session_factory()
        try:
            processor = WebhookProcessor(
                db,
                client=self.client,
                queue=self.queue,
                session_factory=self.session_factory,
            )
            return processor.process(self.payload)
        finally:
            db.close()

    def failed(self, exc: BaseException) -> None:
        logger.error(f"Webhook {self.payload.get('type')} failed permanently: {exc}")

    def describe(self) -> str:
        return f"{self.name}({self.payload.get('type')})"


class ConvertBankTransactionsJob(Job):
    """Convert a user's pending raw records into ledger transactions."""

    name = "convert_bank_transactions"
    attempts = 2
    timeout = 600

    def __init__(self, user_id: Optional[int] = None, limit: Optional[int] = None, session_factory: Callable[[], Session] = SessionLocal):
        super().__init__()
        self.user_id = user_id
        self.limit = limit
        self.session_factory = session_factory

    def handle(self) -> ConversionSummary:
        db = self.session_factory()
        try:
            return ConversionPipeline(db).run(user_id=self.user_id, limit=self.limit)
        finally:
            db.close()

    def failed(self, exc: BaseException) -> None:
        logger.error(f"Conversion for user {self.user_id} failed permanently: {exc}")

    def describe(self) -> str:
        return f"{self.name}(user={self.user_id}, limit={self.limit})"


class AutoCategorizeTransactionsJob(Job):
    """Categorize a user's ledger transactions that still have no category."""

    name = "auto_categorize_transactions"
    attempts = 2
    timeout = 600

    def __init__(
        self,
        user_id: int,
        batch_size: int = 100,
        limit: Optional[int] = None,
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        super().__init__()
        self.user_id = user_id
        self.batch_size = batch_size
        self.limit = limit
        self.session_factory = session_factory

    def handle(self) -> Dict[str, int]:
        db = self.session_factory()
        try:
            return TransactionCategorizationService(db).categorize_uncategorized(
                self.user_id, batch_size=self.batch_size, limit=self.limit
            )
        finally:
            db.close()

    def failed(self, exc: BaseException) -> None:
        logger.error(f"Auto-categorization for user {self.user_id} failed permanently: {exc}")

    def describe(self) -> str:
        return f"{self.name}(user={self.user_id}, batch={self.batch_size})"

"""
Transaction import: fetch recent transactions for every account of a
connection and store them as raw bank_transactions, deduplicated per user.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import insert_or_get
from app.modules.banking.categorization import CategorizationEngine
from app.modules.banking.errors import AggregatorError, CategorizationFailure
from app.modules.banking.models import BankAccount, BankConnection, BankTransaction, ProcessingStatus

logger = logging.getLogger(__name__)


class ImportOutcome(str, enum.Enum):
    CREATED = "created"
    RELINKED = "relinked"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ImportSummary:
    created: int = 0
    relinked: int = 0
    skipped: int = 0
    failed: int = 0
    accounts: int = 0
    created_ids: List[int] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.created + self.relinked + self.skipped + self.failed

    def add(self, outcome: ImportOutcome, record: Optional[BankTransaction] = None) -> None:
        setattr(self, outcome.value, getattr(self, outcome.value) + 1)
        if outcome == ImportOutcome.CREATED and record is not None:
            self.created_ids.append(record.id)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "accounts": self.accounts,
            "total": self.total,
            "created": self.created,
            "relinked": self.relinked,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": list(self.errors),
        }


def _parse_date(value: Any) -> Optional[date]:
    if not value:
        return None
    if isinstance(value, date):
        return value
    return datetime.strptime(str(value)[:10], "%Y-%m-%d").date()


def _parse_amount(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


class TransactionImporter:
    """Imports aggregator transactions as raw records."""

    def __init__(self, db: Session, client, engine: Optional[CategorizationEngine] = None):
        self.db = db
        self.client = client
        self.engine = engine or CategorizationEngine(db)

    def import_connection(
        self,
        connection: BankConnection,
        user_uuid: str,
        accounts: Optional[Iterable[BankAccount]] = None,
        since: Optional[date] = None,
    ) -> ImportSummary:
        """
        Import the transactions of every account of the connection.

        An account the aggregator rejects, or a record that fails to store, is
        logged and skipped; the rest proceeds. Network, authentication and
        item-not-found failures abort the import and propagate to the caller.
        """
        since = since or (date.today() - timedelta(days=settings.BANKING_SYNC_HISTORY_DAYS))
        accounts = list(accounts if accounts is not None else connection.accounts)
        summary = ImportSummary()

        for account in accounts:
            summary.accounts += 1
            try:
                payloads = self.client.get_transactions(
                    user_uuid, account.external_id, since, settings.BANKING_SYNC_PAGE_SIZE
                )
            except AggregatorError as e:
                logger.warning(f"Could not fetch transactions for account {account.external_id}: {e}")
                summary.errors.append(f"account {account.external_id}: {e}")
                continue

            logger.info(f"Fetched {len(payloads)} transaction(s) for account {account.external_id}")
            for data in payloads:
                outcome, record = self.import_record(connection, account, data)
                summary.add(outcome, record)
            self.db.commit()

        logger.info(
            f"Import for connection {connection.id}: {summary.created} created, "
            f"{summary.relinked} relinked, {summary.skipped} skipped, {summary.failed} failed"
        )
        return summary

    def import_record(
        self,
        connection: BankConnection,
        account: Optional[BankAccount],
        data: Dict[str, Any],
    ) -> Tuple[ImportOutcome, Optional[BankTransaction]]:
        """Store one aggregator transaction. Runs in its own savepoint."""
        external_id = str(data.get("id") or "")
        if not external_id:
            logger.warning(f"Skipping transaction without id on connection {connection.id}")
            return ImportOutcome.FAILED, None

        try:
            with self.db.begin_nested():
                record, created = insert_or_get(
                    self.db,
                    BankTransaction,
                    {"user_id": connection.user_id, "external_id": external_id},
                    lambda: self._new_record_values(connection, account, data),
                )
                if created:
                    return ImportOutcome.CREATED, record

                if record.bank_connection_id != connection.id:
                    logger.info(
                        f"Transaction {external_id} moved from connection "
                        f"{record.bank_connection_id} to {connection.id}"
                    )
                    record.bank_connection_id = connection.id
                    if account is not None:
                        record.bank_account_id = account.id
                    self.db.flush()
                    return ImportOutcome.RELINKED, record

                return ImportOutcome.SKIPPED, record
        except Exception as e:
            logger.error(f"Failed to import transaction {external_id}: {e}", exc_info=True)
            return ImportOutcome.FAILED, None

    def _new_record_values(
        self,
        connection: BankConnection,
        account: Optional[BankAccount],
        data: Dict[str, Any],
    ) -> Dict[str, Any]:
        amount = _parse_amount(data.get("amount"))
        if amount is None:
            raise ValueError(f"Transaction {data.get('id')} has no valid amount")

        suggested_category_id = None
        confidence = None
        try:
            suggestion = self.engine.suggest(data, connection.user_id)
            suggested_category_id = suggestion.category_id
            confidence = suggestion.confidence
        except CategorizationFailure as e:
            logger.warning(str(e))

        return {
            "bank_connection_id": connection.id,
            "bank_account_id": account.id if account is not None else None,
            "amount": amount,
            "description": data.get("clean_description") or data.get("description") or "Transaction",
            "merchant_name": data.get("bank_description"),
            "merchant_category": data.get("category"),
            "transaction_date": _parse_date(data.get("date")) or date.today(),
            "value_date": _parse_date(data.get("value_date")),
            "account_balance_after": _parse_amount(data.get("account_balance_after")),
            "raw_data": data,
            "processing_status": ProcessingStatus.IMPORTED,
            "suggested_category_id": suggested_category_id,
            "confidence_score": confidence,
            "imported_at": datetime.utcnow(),
        }

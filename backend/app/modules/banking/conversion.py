"""
Conversion pipeline: promote raw bank_transactions into ledger transactions.

Each record is converted in its own savepoint, so one bad record never rolls
back the others. The unique (user_id, external_transaction_id) constraint on
the ledger side makes a conversion race harmless: the loser sees a
uniqueness violation and reports the record as skipped.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.modules.banking.errors import PersistenceConflict
from app.modules.banking.models import BankTransaction, ProcessingStatus
from app.modules.ledger.categorization import TransactionCategorizationService
from app.modules.ledger.models import Transaction, TransactionStatus, TransactionType

logger = logging.getLogger(__name__)

SOURCE = "bridge"


class ConversionOutcome(str, enum.Enum):
    CONVERTED = "converted"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ConversionResult:
    bank_transaction_id: int
    outcome: ConversionOutcome
    transaction_id: Optional[int] = None
    type: Optional[str] = None
    category_id: Optional[int] = None
    error: Optional[str] = None

    @property
    def categorized(self) -> bool:
        return self.outcome == ConversionOutcome.CONVERTED and self.category_id is not None


@dataclass
class ConversionSummary:
    total: int = 0
    converted: int = 0
    categorized: int = 0
    failed: int = 0
    skipped: int = 0
    dry_run: bool = False
    outcomes: List[ConversionResult] = field(default_factory=list)

    def add(self, result: ConversionResult) -> None:
        self.total += 1
        self.outcomes.append(result)
        if result.outcome == ConversionOutcome.CONVERTED:
            self.converted += 1
            if result.category_id is not None:
                self.categorized += 1
        elif result.outcome == ConversionOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1

    @property
    def conversion_rate(self) -> float:
        return round(self.converted / self.total * 100, 2) if self.total else 0.0

    @property
    def categorization_rate(self) -> float:
        return round(self.categorized / self.converted * 100, 2) if self.converted else 0.0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "converted": self.converted,
            "categorized": self.categorized,
            "failed": self.failed,
            "skipped": self.skipped,
            "dry_run": self.dry_run,
        }


def transaction_type_for(amount: Decimal) -> str:
    """Negative amounts are expenses, everything else (zero included) is income."""
    return TransactionType.EXPENSE if amount < 0 else TransactionType.INCOME


class ConversionPipeline:
    """Converts raw bank records into ledger transactions."""

    def __init__(self, db: Session, categorizer: Optional[TransactionCategorizationService] = None):
        self.db = db
        self.categorizer = categorizer or TransactionCategorizationService(db)

    def pending(self, user_id: Optional[int] = None, limit: Optional[int] = None) -> List[BankTransaction]:
        """Raw records still waiting for conversion, newest first."""
        query = self.db.query(BankTransaction).filter(
            BankTransaction.processing_status.in_(ProcessingStatus.CONVERTIBLE),
            BankTransaction.converted_transaction_id.is_(None),
        )
        if user_id is not None:
            query = query.filter(BankTransaction.user_id == user_id)
        query = query.order_by(BankTransaction.transaction_date.desc(), BankTransaction.id.desc())
        if limit:
            query = query.limit(limit)
        return query.all()

    def run(
        self,
        user_id: Optional[int] = None,
        limit: Optional[int] = None,
        dry_run: bool = False,
        records: Optional[List[BankTransaction]] = None,
    ) -> ConversionSummary:
        """
        Convert pending raw records.

        Args:
            user_id: only this user's records
            limit: at most this many records
            dry_run: decide everything, persist nothing
            records: explicit records instead of the pending query

        Returns:
            ConversionSummary with one outcome per record
        """
        summary = ConversionSummary(dry_run=dry_run)
        if records is None:
            records = self.pending(user_id=user_id, limit=limit)
        chunk_size = max(1, settings.BANKING_CONVERSION_CHUNK_SIZE)

        for index, record in enumerate(records, start=1):
            summary.add(self.convert_one(record, dry_run=dry_run))
            if not dry_run and index % chunk_size == 0:
                self.db.commit()

        if not dry_run:
            self.db.commit()

        logger.info(
            f"Conversion{' (dry run)' if dry_run else ''}: {summary.total} total, {summary.converted} converted, "
            f"{summary.categorized} categorized, {summary.skipped} skipped, {summary.failed} failed"
        )
        return summary

    def convert_one(self, record: BankTransaction, dry_run: bool = False) -> ConversionResult:
        """Convert a single raw record. The caller commits."""
        if dry_run:
            return self._simulate(record)

        record_id = record.id
        try:
            with self.db.begin_nested():
                self.db.refresh(record)
                if record.is_converted or record.processing_status not in ProcessingStatus.CONVERTIBLE:
                    return ConversionResult(record_id, ConversionOutcome.SKIPPED, record.converted_transaction_id)

                transaction = self._build_transaction(record)
                self.db.add(transaction)
                try:
                    self.db.flush()
                except IntegrityError as e:
                    raise PersistenceConflict(
                        f"Transaction {record.external_id} already converted for user {record.user_id}"
                    ) from e

                category = self.categorizer.categorize(transaction)
                now = datetime.utcnow()
                if category is not None:
                    transaction.category_id = category.id
                    transaction.status = TransactionStatus.COMPLETED
                    transaction.auto_categorized = True
                    record.categorized_at = now

                record.converted_transaction_id = transaction.id
                record.advance_to(ProcessingStatus.CONVERTED)
                self.db.flush()

                return ConversionResult(
                    record_id,
                    ConversionOutcome.CONVERTED,
                    transaction_id=transaction.id,
                    type=transaction.type,
                    category_id=transaction.category_id,
                )
        except PersistenceConflict as e:
            logger.info(f"Skipping bank transaction {record_id}: {e}")
            return ConversionResult(record_id, ConversionOutcome.SKIPPED, error=str(e))
        except Exception as e:
            logger.error(f"Failed to convert bank transaction {record_id}: {e}", exc_info=True)
            return ConversionResult(record_id, ConversionOutcome.FAILED, error=str(e))

    def _simulate(self, record: BankTransaction) -> ConversionResult:
        if record.is_converted or record.processing_status not in ProcessingStatus.CONVERTIBLE:
            return ConversionResult(record.id, ConversionOutcome.SKIPPED, record.converted_transaction_id)
        try:
            transaction = self._build_transaction(record)
            category = self.categorizer.categorize(transaction)
        except Exception as e:
            logger.error(f"Dry-run conversion of bank transaction {record.id} failed: {e}", exc_info=True)
            return ConversionResult(record.id, ConversionOutcome.FAILED, error=str(e))
        return ConversionResult(
            record.id,
            ConversionOutcome.CONVERTED,
            type=transaction.type,
            category_id=category.id if category is not None else None,
        )

    def _build_transaction(self, record: BankTransaction) -> Transaction:
        amount = Decimal(str(record.amount))
        raw = record.raw_data or {}
        return Transaction(
            user_id=record.user_id,
            bank_connection_id=record.bank_connection_id,
            external_transaction_id=record.external_id,
            type=transaction_type_for(amount),
            amount=abs(amount),
            description=record.description or "Imported transaction",
            transaction_date=record.transaction_date,
            status=TransactionStatus.PENDING,
            source=SOURCE,
            is_from_bridge=True,
            auto_imported=True,
            auto_categorized=False,
            transaction_metadata={
                "merchant_name": record.merchant_name,
                "merchant_category": record.merchant_category,
                "original_description": raw.get("description") or record.description,
            },
        )

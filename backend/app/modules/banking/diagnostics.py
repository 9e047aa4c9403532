"""
Diagnostics over the banking tables: connection health, raw record
processing states, conversion backlog, and a forced reimport.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.modules.banking.errors import BankingError
from app.modules.banking.lifecycle import ConnectionStatus
from app.modules.banking.models import BankConnection, BankTransaction, ProcessingStatus
from app.modules.banking.sync import sync_connection
from app.modules.ledger.models import Transaction

logger = logging.getLogger(__name__)

PENDING_CONVERSION_EXCLUDED = (ProcessingStatus.CONVERTED, ProcessingStatus.IGNORED, ProcessingStatus.DUPLICATE)


def connection_report(db: Session, user_id: Optional[int] = None) -> List[Dict[str, Any]]:
    """One row per connection, soft-deleted ones included."""
    query = db.query(BankConnection)
    if user_id is not None:
        query = query.filter(BankConnection.user_id == user_id)

    counts = dict(
        db.query(BankTransaction.bank_connection_id, func.count(BankTransaction.id))
        .group_by(BankTransaction.bank_connection_id)
        .all()
    )

    rows = []
    for connection in query.order_by(BankConnection.id).all():
        rows.append({
            "id": connection.id,
            "user_id": connection.user_id,
            "bank": connection.bank_name or "N/A",
            "status": ConnectionStatus(connection.status).value,
            "item_id": connection.provider_connection_id,
            "error_count": connection.error_count,
            "last_error": connection.last_error,
            "last_sync_at": connection.last_sync_at,
            "deleted": connection.deleted_at is not None,
            "transactions": counts.get(connection.id, 0),
        })
    return rows


def processing_status_counts(db: Session, user_id: Optional[int] = None) -> Dict[str, int]:
    query = db.query(BankTransaction.processing_status, func.count(BankTransaction.id))
    if user_id is not None:
        query = query.filter(BankTransaction.user_id == user_id)
    return dict(query.group_by(BankTransaction.processing_status).all())


def pending_conversion_count(db: Session, user_id: Optional[int] = None) -> int:
    query = db.query(BankTransaction).filter(BankTransaction.processing_status.notin_(PENDING_CONVERSION_EXCLUDED))
    if user_id is not None:
        query = query.filter(BankTransaction.user_id == user_id)
    return query.count()


def ledger_summary(db: Session, user_id: Optional[int] = None) -> Dict[str, Any]:
    """Ledger transaction totals, split by origin and by type."""
    query = db.query(Transaction)
    if user_id is not None:
        query = query.filter(Transaction.user_id == user_id)

    total = query.count()
    from_bank = query.filter(Transaction.external_transaction_id.isnot(None)).count()

    by_type_query = db.query(Transaction.type, func.count(Transaction.id), func.sum(Transaction.amount))
    if user_id is not None:
        by_type_query = by_type_query.filter(Transaction.user_id == user_id)
    by_type = {
        type_: {"count": count, "total": float(amount or 0)}
        for type_, count, amount in by_type_query.group_by(Transaction.type).all()
    }

    return {"total": total, "from_bank": from_bank, "manual": total - from_bank, "by_type": by_type}


def diagnose(db: Session, user_id: Optional[int] = None) -> Dict[str, Any]:
    """Full diagnostic snapshot."""
    by_status = processing_status_counts(db, user_id)
    return {
        "connections": connection_report(db, user_id),
        "bank_transactions": {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "pending_conversion": pending_conversion_count(db, user_id),
        },
        "ledger": ledger_summary(db, user_id),
    }


def reimport(
    db: Session,
    user_id: Optional[int] = None,
    client=None,
    dry_run: bool = False,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """
    Re-run the sync of active connections.

    Unconverted raw records are dropped first so they are re-imported and
    re-categorized; converted records are kept, the dedup key makes the
    aggregator's copies relink to them.
    """
    query = db.query(BankConnection).filter(
        BankConnection.status == ConnectionStatus.ACTIVE,
        BankConnection.deleted_at.is_(None),
    )
    if user_id is not None:
        query = query.filter(BankConnection.user_id == user_id)
    query = query.order_by(BankConnection.id)
    if limit:
        query = query.limit(limit)

    results = []
    for connection in query.all():
        stale = db.query(BankTransaction).filter(
            BankTransaction.bank_connection_id == connection.id,
            BankTransaction.processing_status.in_(ProcessingStatus.CONVERTIBLE),
            BankTransaction.converted_transaction_id.is_(None),
        )
        row = {"connection_id": connection.id, "bank": connection.bank_name, "deleted": stale.count()}

        if dry_run:
            row["status"] = "dry_run"
            results.append(row)
            continue

        stale.delete(synchronize_session=False)
        db.commit()
        try:
            result = sync_connection(db, connection, client)
            row.update({"status": "synced", "imported": result.imported.as_dict()})
        except BankingError as e:
            logger.warning(f"Reimport of connection {connection.id} failed: {e}")
            row.update({"status": "failed", "error": str(e)})
        results.append(row)

    return results

"""
Administrative CLI for the banking module.

Usage:
    bankfeed-admin diagnose [--user ID]
    bankfeed-admin reimport [--user ID] [--limit N] [--dry-run]
    bankfeed-admin convert [--user ID] [--limit N] [--dry-run]
    bankfeed-admin categorize [--user ID] [--limit N] [--dry-run]
    bankfeed-admin autocategorize [--user ID] [--limit N]
    bankfeed-admin sync [--user ID] [--limit N] [--all]
"""

import argparse
import logging
import sys
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from app.core.database import SessionLocal
from app.core.jobs import ImmediateJobQueue, set_job_queue
from app.modules.banking import diagnostics
from app.modules.banking.categorization import recategorize_uncategorized
from app.modules.banking.conversion import ConversionPipeline
from app.modules.banking.lifecycle import ConnectionStatus
from app.modules.banking.models import BankConnection
from app.modules.banking.sync import SyncBankConnectionJob, connections_due_for_sync
from app.modules.ledger.categorization import TransactionCategorizationService
from app.modules.ledger.models import Transaction

logger = logging.getLogger(__name__)

RULE = "=" * 60


def _banner(title: str) -> None:
    print(RULE)
    print(title)
    print(RULE)


def _fmt_date(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "never"


def cmd_diagnose(db: Session, args) -> int:
    report = diagnostics.diagnose(db, args.user)

    _banner("BANK CONNECTIONS")
    if not report["connections"]:
        print("  No connections found")
    for row in report["connections"]:
        deleted = " (deleted)" if row["deleted"] else ""
        print(
            f"  #{row['id']} user={row['user_id']} {row['bank']} [{row['status']}{deleted}] "
            f"item={row['item_id']} errors={row['error_count']} "
            f"last sync={_fmt_date(row['last_sync_at'])} transactions={row['transactions']}"
        )
        if row["last_error"]:
            print(f"      last error: {row['last_error']}")

    raw = report["bank_transactions"]
    print()
    _banner("RAW BANK TRANSACTIONS")
    print(f"  Total: {raw['total']}")
    for status, count in sorted(raw["by_status"].items()):
        print(f"  {status}: {count}")
    if raw["pending_conversion"]:
        print(f"  WARNING: {raw['pending_conversion']} transaction(s) waiting for conversion")

    ledger = report["ledger"]
    print()
    _banner("LEDGER TRANSACTIONS")
    print(f"  Total: {ledger['total']}")
    print(f"  From bank: {ledger['from_bank']}")
    print(f"  Manual: {ledger['manual']}")
    for type_, values in sorted(ledger["by_type"].items()):
        print(f"  {type_}: {values['count']} (total {values['total']:,.2f})")
    return 0


def cmd_reimport(db: Session, args) -> int:
    _banner("REIMPORT" + (" (DRY RUN)" if args.dry_run else ""))
    results = diagnostics.reimport(db, user_id=args.user, dry_run=args.dry_run, limit=args.limit)
    if not results:
        print("  No active connections")
    failed = 0
    for row in results:
        line = f"  #{row['connection_id']} {row['bank'] or 'N/A'}: {row['status']}, {row['deleted']} unconverted record(s) dropped"
        if row["status"] == "synced":
            imported = row["imported"]
            line += f", {imported['created']} imported, {imported['relinked']} relinked, {imported['failed']} failed"
        elif row["status"] == "failed":
            failed += 1
            line += f" ({row['error']})"
        print(line)
    return 1 if failed else 0


def cmd_convert(db: Session, args) -> int:
    summary = ConversionPipeline(db).run(user_id=args.user, limit=args.limit, dry_run=args.dry_run)

    _banner("CONVERSION RESULTS" + (" (DRY RUN)" if args.dry_run else ""))
    print(f"  Total analysed: {summary.total}")
    print(f"  Converted:      {summary.converted}")
    print(f"  Categorized:    {summary.categorized}")
    print(f"  Failed:         {summary.failed}")
    print(f"  Skipped:        {summary.skipped}")
    if summary.total:
        print(f"\n  Conversion rate:     {summary.conversion_rate}%")
        print(f"  Categorization rate: {summary.categorization_rate}%")
    if args.dry_run:
        print("\n  DRY RUN - No changes made")
    return 1 if summary.failed else 0


def cmd_categorize(db: Session, args) -> int:
    stats = recategorize_uncategorized(db, user_id=args.user, limit=args.limit, dry_run=args.dry_run)
    _banner("RECATEGORIZATION" + (" (DRY RUN)" if args.dry_run else ""))
    print(f"  Uncategorized records: {stats['total']}")
    print(f"  Categorized:           {stats['categorized']}")
    print(f"  Failed:                {stats['failed']}")
    return 0


def cmd_autocategorize(db: Session, args) -> int:
    if args.user is not None:
        user_ids = [args.user]
    else:
        rows = (
            db.query(Transaction.user_id)
            .filter(Transaction.category_id.is_(None))
            .distinct()
            .order_by(Transaction.user_id)
            .all()
        )
        user_ids = [row[0] for row in rows]

    service = TransactionCategorizationService(db)
    totals = {"processed": 0, "categorized": 0, "failed": 0}
    for user_id in user_ids:
        stats = service.categorize_uncategorized(user_id, limit=args.limit)
        for key in totals:
            totals[key] += stats[key]

    _banner(f"LEDGER AUTO-CATEGORIZATION ({len(user_ids)} user(s))")
    print(f"  Uncategorized transactions: {totals['processed']}")
    print(f"  Categorized:                {totals['categorized']}")
    print(f"  Failed:                     {totals['failed']}")
    return 1 if totals["failed"] else 0


def cmd_sync(db: Session, args) -> int:
    if args.all:
        query = db.query(BankConnection).filter(
            BankConnection.status.in_([ConnectionStatus.ACTIVE, ConnectionStatus.PENDING, ConnectionStatus.ERROR]),
            BankConnection.deleted_at.is_(None),
        )
        if args.user is not None:
            query = query.filter(BankConnection.user_id == args.user)
        connections = query.order_by(BankConnection.id).all()
    else:
        connections = [
            c for c in connections_due_for_sync(db)
            if args.user is None or c.user_id == args.user
        ]
    if args.limit:
        connections = connections[:args.limit]
    connection_ids = [c.id for c in connections]
    db.close()

    _banner(f"SYNCING {len(connection_ids)} CONNECTION(S)")
    queue = ImmediateJobQueue()
    set_job_queue(queue)
    for connection_id in connection_ids:
        queue.enqueue(SyncBankConnectionJob(connection_id, session_factory=args.session_factory))
        print(f"  #{connection_id} processed")
    return 0


COMMANDS = {
    "diagnose": cmd_diagnose,
    "reimport": cmd_reimport,
    "convert": cmd_convert,
    "categorize": cmd_categorize,
    "autocategorize": cmd_autocategorize,
    "sync": cmd_sync,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bankfeed-admin", description="Bank import administration")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    for name, help_text in [
        ("diagnose", "Show connection health and import/conversion state"),
        ("reimport", "Drop unconverted raw records and re-sync active connections"),
        ("convert", "Convert raw bank records into ledger transactions"),
        ("categorize", "Re-run import heuristics on uncategorized raw records"),
        ("autocategorize", "Categorize uncategorized ledger transactions"),
        ("sync", "Sync connections now (due ones by default)"),
    ]:
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--user", type=int, default=None, help="Only this user id")
        sub.add_argument("--limit", type=int, default=None, help="Process at most N items")
        if name in ("reimport", "convert", "categorize"):
            sub.add_argument("--dry-run", action="store_true", help="Simulate without saving")
        if name == "sync":
            sub.add_argument("--all", action="store_true", help="Sync every syncable connection, not only due ones")
    return parser


def main(argv: Optional[List[str]] = None, session_factory: Callable[[], Session] = SessionLocal) -> int:
    args = build_parser().parse_args(argv)
    args.session_factory = session_factory
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    db = session_factory()
    try:
        return COMMANDS[args.command](db, args)
    except Exception as e:
        logger.error(f"{args.command} failed: {e}", exc_info=True)
        print(f"ERROR: {e}")
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())

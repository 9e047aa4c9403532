"""
Account synchronization: mirror the aggregator's accounts of one item into
bank_accounts rows.
"""

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.core.database import insert_or_get
from app.modules.banking.models import BankAccount, BankConnection

logger = logging.getLogger(__name__)

ACCOUNT_TYPE_MAP = {
    "checking": "checking",
    "current": "checking",
    "savings": "savings",
    "livret": "savings",
    "credit_card": "credit",
    "card": "credit",
    "investment": "investment",
    "securities": "investment",
    "loan": "loan",
    "mortgage": "loan",
}


def map_account_type(bridge_type: Optional[str]) -> str:
    """Map a Bridge account type onto our account types. Unknown types become checking."""
    return ACCOUNT_TYPE_MAP.get((bridge_type or "").lower(), "checking")


def mask_iban(iban: Optional[str]) -> Optional[str]:
    """
    Keep only the country code and the last 4 characters.

    Example:
        "FR7630006000011234567890189" -> "FR****0189"
    """
    if not iban:
        return None
    compact = iban.replace(" ", "").upper()
    if len(compact) <= 6:
        return compact
    return f"{compact[:2]}****{compact[-4:]}"


def _to_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value if value is not None else 0))
    except InvalidOperation:
        return Decimal("0")


class AccountSynchronizer:
    """Upserts the accounts of a connection from the aggregator."""

    def __init__(self, db: Session, client):
        self.db = db
        self.client = client

    def sync(self, connection: BankConnection, user_uuid: str) -> List[BankAccount]:
        """
        Fetch and upsert all accounts of the connection's item.

        Never deletes accounts. Failures are logged and an empty list is returned,
        so a broken accounts endpoint does not block the transaction import.
        """
        try:
            resources = self.client.get_accounts(user_uuid, connection.provider_connection_id)
            logger.info(f"Fetched {len(resources)} account(s) for item {connection.provider_connection_id}")

            synced = [self._upsert(connection, data) for data in resources if data.get("id") is not None]
            self.db.commit()
            return synced
        except Exception as e:
            self.db.rollback()
            logger.error(f"Account sync failed for connection {connection.id}: {e}", exc_info=True)
            return []

    def _upsert(self, connection: BankConnection, data: Dict[str, Any]) -> BankAccount:
        account, created = insert_or_get(
            self.db,
            BankAccount,
            {"bank_connection_id": connection.id, "external_id": str(data["id"])},
            {"name": data.get("name") or "Account"},
        )
        account.name = data.get("name") or account.name or "Account"
        account.type = map_account_type(data.get("type"))
        account.balance = _to_decimal(data.get("balance"))
        account.currency = data.get("currency_code") or "EUR"
        account.iban = mask_iban(data.get("iban"))
        account.is_active = (data.get("status") or "active") == "active"
        account.last_balance_update = datetime.utcnow()
        account.provider_metadata = data

        logger.debug(f"{'Created' if created else 'Updated'} account {account.external_id} ({account.type})")
        return account

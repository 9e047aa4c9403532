"""
Banking error taxonomy.

Every failure raised by the banking module derives from BankingError so that
callers (jobs, CLI, routes) can tell expected integration failures apart
from programming errors.
"""

from typing import Optional


class BankingError(Exception):
    """Base class for banking integration errors."""


class AuthenticationFailure(BankingError):
    """The aggregator refused to issue or accept a user token."""


class ItemNotFound(BankingError):
    """The aggregator no longer knows the item. The connection is expired."""

    def __init__(self, item_id: str, message: Optional[str] = None):
        self.item_id = item_id
        super().__init__(message or f"Item {item_id} not found at aggregator")


class TransientNetworkFailure(BankingError):
    """Timeout, connection error or 5xx response, after inline retries."""


class AggregatorError(BankingError):
    """Non-success response from the aggregator that is not retryable."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class PersistenceConflict(BankingError):
    """A uniqueness violation that could not be resolved by fetching the existing row."""


class CategorizationFailure(BankingError):
    """Categorization of a single record failed; the record proceeds uncategorized."""


class ConnectionNotSyncable(BankingError):
    """The connection cannot be synced (no item id, no user uuid, terminal state)."""

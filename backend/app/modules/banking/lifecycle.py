"""
Connection lifecycle state machine.

The rules live in one pure function, ``transition(state, event)``, so they
can be tested without a database. The helpers below apply a transition to a
BankConnection row and maintain its timestamps.

    pending --Activated--> active
    any non-terminal --SyncSucceeded--> active (disabled stays disabled)
    any non-terminal --SyncFailed--> same status, error_count + 1;
                                     error once error_count reaches the threshold
    any non-terminal --ItemNotFound--> expired
    any non-terminal --WebhookFailure--> error (error_count untouched)
    any non-terminal --Disabled--> disabled
    any non-terminal --Disconnected--> disconnected (terminal)
"""

import enum
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional, Union

from app.core.config import settings

logger = logging.getLogger(__name__)


class ConnectionStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    ERROR = "error"
    EXPIRED = "expired"
    DISABLED = "disabled"
    DISCONNECTED = "disconnected"


TERMINAL_STATUSES = {ConnectionStatus.DISCONNECTED}


@dataclass(frozen=True)
class ConnectionState:
    status: ConnectionStatus
    error_count: int = 0
    last_error: Optional[str] = None


# Events

@dataclass(frozen=True)
class SyncSucceeded:
    pass


@dataclass(frozen=True)
class SyncFailed:
    message: str


@dataclass(frozen=True)
class ItemNotFound:
    message: str = "Item not found at aggregator"


@dataclass(frozen=True)
class WebhookFailure:
    message: str


@dataclass(frozen=True)
class Activated:
    pass


@dataclass(frozen=True)
class Disconnected:
    pass


@dataclass(frozen=True)
class Disabled:
    pass


ConnectionEvent = Union[SyncSucceeded, SyncFailed, ItemNotFound, WebhookFailure, Activated, Disconnected, Disabled]


def transition(state: ConnectionState, event: ConnectionEvent, threshold: Optional[int] = None) -> ConnectionState:
    """Return the state that follows ``event``. Events on a terminal state are no-ops."""
    if threshold is None:
        threshold = settings.BANKING_ERROR_ESCALATION_THRESHOLD

    if state.status in TERMINAL_STATUSES:
        return state

    if isinstance(event, SyncSucceeded):
        status = ConnectionStatus.DISABLED if state.status == ConnectionStatus.DISABLED else ConnectionStatus.ACTIVE
        return ConnectionState(status=status, error_count=0, last_error=None)

    if isinstance(event, SyncFailed):
        count = state.error_count + 1
        status = ConnectionStatus.ERROR if count >= threshold else state.status
        return ConnectionState(status=status, error_count=count, last_error=event.message)

    if isinstance(event, ItemNotFound):
        return replace(state, status=ConnectionStatus.EXPIRED, last_error=event.message)

    if isinstance(event, WebhookFailure):
        return replace(state, status=ConnectionStatus.ERROR, last_error=event.message)

    if isinstance(event, Activated):
        if state.status == ConnectionStatus.PENDING:
            return replace(state, status=ConnectionStatus.ACTIVE)
        return state

    if isinstance(event, Disabled):
        return replace(state, status=ConnectionStatus.DISABLED)

    if isinstance(event, Disconnected):
        return replace(state, status=ConnectionStatus.DISCONNECTED)

    raise TypeError(f"Unknown connection event: {event!r}")


# Helpers applying transitions to BankConnection rows

def state_of(connection) -> ConnectionState:
    return ConnectionState(
        status=ConnectionStatus(connection.status),
        error_count=connection.error_count or 0,
        last_error=connection.last_error,
    )


def apply_event(connection, event: ConnectionEvent, now: Optional[datetime] = None) -> ConnectionState:
    """Apply ``event`` to ``connection`` in place. The caller commits."""
    now = now or datetime.utcnow()
    before = state_of(connection)
    after = transition(before, event)
    if after == before and not isinstance(event, SyncSucceeded):
        return after

    connection.status = after.status
    connection.error_count = after.error_count
    connection.last_error = after.last_error

    if isinstance(event, SyncSucceeded) and before.status not in TERMINAL_STATUSES:
        connection.last_sync_at = now
        connection.last_successful_sync_at = now
    elif isinstance(event, (SyncFailed, ItemNotFound, WebhookFailure)):
        connection.last_error_at = now
    elif isinstance(event, Disconnected):
        connection.is_active = False
        connection.auto_sync_enabled = False
        if connection.deleted_at is None:
            connection.deleted_at = now

    if after.status != before.status:
        logger.info(
            f"Connection {connection.id} {before.status.value} -> {after.status.value} "
            f"({type(event).__name__})"
        )
    return after


def mark_sync_success(connection, now: Optional[datetime] = None) -> ConnectionState:
    return apply_event(connection, SyncSucceeded(), now)


def mark_sync_error(connection, message: str, now: Optional[datetime] = None) -> ConnectionState:
    state = apply_event(connection, SyncFailed(message), now)
    logger.warning(f"Sync error on connection {connection.id} ({state.error_count}): {message}")
    return state


def mark_expired(connection, message: str = "Item not found at aggregator", now: Optional[datetime] = None) -> ConnectionState:
    return apply_event(connection, ItemNotFound(message), now)


def record_webhook_error(connection, message: str, now: Optional[datetime] = None) -> ConnectionState:
    return apply_event(connection, WebhookFailure(message), now)


def activate(connection, now: Optional[datetime] = None) -> ConnectionState:
    return apply_event(connection, Activated(), now)


def disconnect(connection, now: Optional[datetime] = None) -> ConnectionState:
    return apply_event(connection, Disconnected(), now)


def disable(connection, now: Optional[datetime] = None) -> ConnectionState:
    return apply_event(connection, Disabled(), now)


def needs_sync(connection, now: Optional[datetime] = None) -> bool:
    """Whether the scheduler should sync this connection now."""
    if not connection.auto_sync_enabled:
        return False
    if ConnectionStatus(connection.status) != ConnectionStatus.ACTIVE:
        return False
    if connection.deleted_at is not None:
        return False
    if connection.last_sync_at is None:
        return True

    now = now or datetime.utcnow()
    frequency = connection.sync_frequency_hours or settings.BANKING_DEFAULT_SYNC_FREQUENCY_HOURS
    return now - connection.last_sync_at >= timedelta(hours=frequency)

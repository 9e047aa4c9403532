"""
Banking API routes: Bridge webhook intake and bank connection management.
"""

import json
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.core.auth import get_current_user
from app.core.database import get_db
from app.core.jobs import JobQueue, get_job_queue
from app.modules.banking import lifecycle
from app.modules.banking.conversion import ConversionPipeline
from app.modules.banking.lifecycle import ConnectionStatus
from app.modules.banking.models import BankConnection
from app.modules.banking.sync import (
    AutoCategorizeTransactionsJob,
    ConvertBankTransactionsJob,
    ProcessWebhookJob,
    SyncBankConnectionJob,
)
from app.modules.banking.webhooks import SIGNATURE_HEADER, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter()


# Request/Response Models

class AccountResponse(BaseModel):
    """A bank account under a connection."""
    id: int
    name: str
    type: str
    balance: Optional[float]
    currency: str
    iban: Optional[str]
    is_active: bool


class ConnectionResponse(BaseModel):
    """A bank connection."""
    id: int
    bank_name: Optional[str]
    bank_logo_url: Optional[str]
    status: str
    is_active: bool
    error_count: int
    last_error: Optional[str]
    last_sync_at: Optional[datetime]
    last_successful_sync_at: Optional[datetime]
    auto_sync_enabled: bool
    accounts: List[AccountResponse]


class JobResponse(BaseModel):
    """A job accepted by the background queue."""
    status: str
    job_id: str


class PendingResponse(BaseModel):
    """Raw records waiting for conversion."""
    pending: int


def get_queue() -> JobQueue:
    return get_job_queue()


def _connection_response(connection: BankConnection) -> ConnectionResponse:
    return ConnectionResponse(
        id=connection.id,
        bank_name=connection.bank_name,
        bank_logo_url=connection.bank_logo_url,
        status=ConnectionStatus(connection.status).value,
        is_active=connection.is_active,
        error_count=connection.error_count or 0,
        last_error=connection.last_error,
        last_sync_at=connection.last_sync_at,
        last_successful_sync_at=connection.last_successful_sync_at,
        auto_sync_enabled=connection.auto_sync_enabled,
        accounts=[
            AccountResponse(
                id=a.id,
                name=a.name,
                type=a.type,
                balance=float(a.balance) if a.balance is not None else None,
                currency=a.currency,
                iban=a.iban,
                is_active=a.is_active,
            )
            for a in connection.accounts
        ],
    )


def _get_user_connection(db: Session, connection_id: int, user_id: int) -> BankConnection:
    connection = (
        db.query(BankConnection)
        .filter(
            BankConnection.id == connection_id,
            BankConnection.user_id == user_id,
            BankConnection.deleted_at.is_(None),
        )
        .first()
    )
    if connection is None:
        raise HTTPException(status_code=404, detail="Connection not found")
    return connection


# Routes

@router.post("/webhooks/bridge")
async def bridge_webhook(request: Request, queue: JobQueue = Depends(get_queue)):
    """
    Receive a Bridge webhook.

    The signature is checked, the event is queued and the webhook is
    acknowledged immediately. Malformed payloads are acknowledged as well so
    Bridge stops redelivering them.
    """
    body = await request.body()
    if not verify_signature(body, request.headers.get(SIGNATURE_HEADER)):
        logger.warning("Rejected Bridge webhook with invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        logger.warning("Received malformed Bridge webhook body")
        return {"status": "received"}

    if not isinstance(payload, dict) or not payload.get("type"):
        logger.warning(f"Bridge webhook without type: {payload}")
        return {"status": "received"}

    queue.enqueue(ProcessWebhookJob(payload))
    return {"status": "received"}


@router.get("/connections", response_model=List[ConnectionResponse])
def list_connections(
    db: Session = Depends(get_db),
    current_user: int = Depends(get_current_user),
):
    """List the current user's bank connections."""
    connections = (
        db.query(BankConnection)
        .filter(BankConnection.user_id == current_user, BankConnection.deleted_at.is_(None))
        .order_by(BankConnection.id)
        .all()
    )
    return [_connection_response(c) for c in connections]


@router.post("/connections/{connection_id}/sync", response_model=JobResponse, status_code=202)
def trigger_sync(
    connection_id: int,
    db: Session = Depends(get_db),
    queue: JobQueue = Depends(get_queue),
    current_user: int = Depends(get_current_user),
):
    """Queue a sync of one connection."""
    connection = _get_user_connection(db, connection_id, current_user)
    if ConnectionStatus(connection.status) in (ConnectionStatus.DISCONNECTED, ConnectionStatus.DISABLED):
        raise HTTPException(status_code=409, detail=f"Connection is {ConnectionStatus(connection.status).value}")

    job_id = queue.enqueue(SyncBankConnectionJob(connection_id))
    return JobResponse(status="queued", job_id=job_id)


@router.delete("/connections/{connection_id}")
def disconnect_connection(
    connection_id: int,
    db: Session = Depends(get_db),
    current_user: int = Depends(get_current_user),
):
    """Disconnect a connection. Imported data is kept."""
    connection = _get_user_connection(db, connection_id, current_user)
    lifecycle.disconnect(connection)
    db.commit()
    return {"success": True, "connection_id": connection_id, "status": ConnectionStatus.DISCONNECTED.value}


@router.get("/transactions/pending", response_model=PendingResponse)
def pending_transactions(
    db: Session = Depends(get_db),
    current_user: int = Depends(get_current_user),
):
    """Number of imported records not yet converted."""
    return PendingResponse(pending=len(ConversionPipeline(db).pending(user_id=current_user)))


@router.post("/transactions/convert", response_model=JobResponse, status_code=202)
def convert_transactions(
    limit: Optional[int] = Query(None, ge=1),
    queue: JobQueue = Depends(get_queue),
    current_user: int = Depends(get_current_user),
):
    """Queue the conversion of the current user's pending records."""
    job_id = queue.enqueue(ConvertBankTransactionsJob(user_id=current_user, limit=limit))
    return JobResponse(status="queued", job_id=job_id)


@router.post("/transactions/categorize", response_model=JobResponse, status_code=202)
def categorize_transactions(
    limit: Optional[int] = Query(None, ge=1),
    queue: JobQueue = Depends(get_queue),
    current_user: int = Depends(get_current_user),
):
    """Queue auto-categorization of the current user's uncategorized ledger transactions."""
    job_id = queue.enqueue(AutoCategorizeTransactionsJob(user_id=current_user, limit=limit))
    return JobResponse(status="queued", job_id=job_id)

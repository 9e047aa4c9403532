"""
Bridge webhook handling.

Webhooks are verified and acknowledged by the route, then applied
asynchronously by ProcessWebhookJob through WebhookProcessor. Every handler
is idempotent: Bridge redelivers events and may send them out of order.
"""

import hashlib
import hmac
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import SessionLocal, insert_or_get
from app.core.jobs import JobQueue, get_job_queue
from app.modules.banking import lifecycle
from app.modules.banking.client import get_bridge_client, is_item_status_ok
from app.modules.banking.lifecycle import ConnectionStatus
from app.modules.banking.models import BankConnection
from app.modules.banking.sync import SyncBankConnectionJob
from app.shared.models import User

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "BridgeSignature"
SIGNATURE_PATTERN = re.compile(r"^v1=([a-fA-F0-9]+)$")


def verify_signature(
    body: bytes,
    signature: Optional[str],
    secret: Optional[str] = None,
    allow_unsigned: Optional[bool] = None,
) -> bool:
    """
    Check a Bridge webhook signature (HMAC-SHA256 of the raw body).

    The header looks like ``v1=<HEX>``; a bare hex digest is accepted too.
    Without a configured secret or without a signature, the webhook is only
    accepted outside production.
    """
    secret = secret if secret is not None else settings.BRIDGE_WEBHOOK_SECRET
    if allow_unsigned is None:
        allow_unsigned = not settings.is_production

    if not signature:
        logger.warning("Webhook received without signature")
        return allow_unsigned
    if not secret:
        logger.error("BRIDGE_WEBHOOK_SECRET is not configured")
        return allow_unsigned

    match = SIGNATURE_PATTERN.match(signature.strip())
    provided = match.group(1) if match else signature.strip()
    computed = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(computed.upper(), provided.upper())


@dataclass
class WebhookResult:
    event_type: str
    action: str
    connection_id: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        return {"event_type": self.event_type, "action": self.action, "connection_id": self.connection_id}


class WebhookProcessor:
    """Applies one webhook event to the connection it concerns."""

    def __init__(
        self,
        db: Session,
        client=None,
        queue: Optional[JobQueue] = None,
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.db = db
        self._client = client
        self._queue = queue
        self.session_factory = session_factory
        self.handlers = {
            "item.created": self.handle_item_created,
            "item.updated": self.handle_item_updated,
            "item.refreshed": self.handle_item_refreshed,
            "item.deleted": self.handle_item_deleted,
            "item.error": self.handle_item_error,
        }

    @property
    def client(self):
        if self._client is None:
            self._client = get_bridge_client()
        return self._client

    @property
    def queue(self) -> JobQueue:
        return self._queue or get_job_queue()

    def process(self, payload: Dict[str, Any]) -> WebhookResult:
        event_type = payload.get("type") or "unknown"
        content = payload.get("content") or {}
        logger.info(f"Processing webhook {event_type} for item {content.get('item_id') or content.get('id')}")

        handler = self.handlers.get(event_type, self.handle_unknown)
        try:
            result = handler(event_type, content)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Webhook {event_type} failed: {e}", exc_info=True)
            raise

        logger.info(f"Webhook {event_type} processed: {result.action}")
        return result

    # Lookups

    @staticmethod
    def _item_id(content: Dict[str, Any]) -> Optional[str]:
        item_id = content.get("item_id") or content.get("id")
        return str(item_id) if item_id is not None else None

    def _find_connection(self, content: Dict[str, Any]) -> Optional[BankConnection]:
        item_id = self._item_id(content)
        if not item_id:
            return None
        query = self.db.query(BankConnection).filter(BankConnection.provider_connection_id == item_id)
        user_uuid = content.get("user_uuid")
        if user_uuid:
            query = query.join(User, User.id == BankConnection.user_id).filter(User.bridge_user_uuid == user_uuid)
        return query.order_by(BankConnection.id.desc()).first()

    def _enqueue_sync(self, connection_id: int) -> None:
        # Ids only: rows are expired after commit
        self.queue.enqueue(SyncBankConnectionJob(connection_id, session_factory=self.session_factory, client=self._client))

    # Handlers

    def handle_item_created(self, event_type: str, content: Dict[str, Any]) -> WebhookResult:
        item_id = self._item_id(content)
        user_uuid = content.get("user_uuid")
        if not item_id or not user_uuid:
            logger.warning(f"Incomplete item.created payload: {content}")
            return WebhookResult(event_type, "ignored")

        user = self.db.query(User).filter(User.bridge_user_uuid == user_uuid).first()
        if user is None:
            logger.error(f"No user with Bridge uuid {user_uuid}")
            return WebhookResult(event_type, "unknown_user")

        connection, created = insert_or_get(
            self.db,
            BankConnection,
            {"user_id": user.id, "provider_connection_id": item_id},
            {
                "provider": "bridge",
                "status": ConnectionStatus.PENDING,
                "sync_frequency_hours": settings.BANKING_DEFAULT_SYNC_FREQUENCY_HOURS,
                "provider_metadata": {"created_via": "webhook"},
            },
        )
        connection_id, user_id = connection.id, user.id
        lifecycle.activate(connection)
        self.db.commit()

        self._enqueue_sync(connection_id)
        if created:
            logger.info(f"Connection {connection_id} created from webhook for user {user_id}")
        return WebhookResult(event_type, "connection_created" if created else "connection_exists", connection_id)

    def handle_item_updated(self, event_type: str, content: Dict[str, Any]) -> WebhookResult:
        connection = self._find_connection(content)
        if connection is None:
            return WebhookResult(event_type, "ignored")

        connection_id = connection.id
        lifecycle.activate(connection)
        connection.updated_at = datetime.utcnow()
        self.db.commit()
        return WebhookResult(event_type, "connection_updated", connection_id)

    def handle_item_refreshed(self, event_type: str, content: Dict[str, Any]) -> WebhookResult:
        connection = self._find_connection(content)
        if connection is None:
            logger.warning(f"item.refreshed for unknown item {self._item_id(content)}")
            return WebhookResult(event_type, "ignored")

        connection_id = connection.id
        if not is_item_status_ok(content):
            message = content.get("status_code_info") or "Bridge refresh failed"
            logger.error(
                f"Refresh error on item {connection.provider_connection_id}: "
                f"{content.get('status_code')} - {message}"
            )
            lifecycle.record_webhook_error(connection, str(message))
            self.db.commit()
            return WebhookResult(event_type, "error_recorded", connection_id)

        try:
            self.finalize(connection)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Could not finalize connection {connection_id}: {e}")

        self._enqueue_sync(connection_id)
        return WebhookResult(event_type, "sync_enqueued", connection_id)

    def finalize(self, connection: BankConnection) -> None:
        """Store the bank details of a freshly connected item and activate it."""
        user_uuid = connection.user.bridge_user_uuid if connection.user else None
        item = self.client.get_item(user_uuid, connection.provider_connection_id)
        bank = item.get("bank") or {}

        connection.bank_name = bank.get("name") or connection.bank_name or "Unknown Bank"
        connection.bank_logo_url = bank.get("logo_url") or connection.bank_logo_url
        connection.is_active = True
        connection.provider_metadata = {
            **(connection.provider_metadata or {}),
            "bank_id": bank.get("id"),
            "finalized_at": datetime.utcnow().isoformat(),
        }
        lifecycle.activate(connection)
        logger.info(f"Connection {connection.id} finalized ({connection.bank_name})")
        self.db.commit()

    def handle_item_deleted(self, event_type: str, content: Dict[str, Any]) -> WebhookResult:
        connection = self._find_connection(content)
        if connection is None:
            return WebhookResult(event_type, "ignored")

        connection_id = connection.id
        lifecycle.disconnect(connection)
        self.db.commit()
        return WebhookResult(event_type, "connection_disconnected", connection_id)

    def handle_item_error(self, event_type: str, content: Dict[str, Any]) -> WebhookResult:
        logger.warning(f"Bridge reported an error on item {self._item_id(content)}: {content.get('error')}")
        return WebhookResult(event_type, "logged")

    def handle_unknown(self, event_type: str, content: Dict[str, Any]) -> WebhookResult:
        logger.warning(f"Unhandled webhook type {event_type}")
        return WebhookResult(event_type, "ignored")

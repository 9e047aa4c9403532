"""
Per-user aggregator access tokens.

Tokens are cached in the process-local TTL cache, keyed by the user's Bridge
uuid, until five minutes before they expire.
"""

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from app.core.cache import delete_cached, get_cached, set_cached
from app.modules.banking.errors import AuthenticationFailure, BankingError

if TYPE_CHECKING:
    from app.modules.banking.client import BridgeClient

logger = logging.getLogger(__name__)

EXPIRY_MARGIN_SECONDS = 5 * 60


def _cache_key(user_uuid: str) -> str:
    return f"bridge_token:{user_uuid}"


def _parse_expiry(value) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable token expiry: {value}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class TokenProvider:
    """Obtains and caches user access tokens from the aggregator."""

    def __init__(self, client: "BridgeClient"):
        self.client = client

    def get_token(self, user_uuid: Optional[str]) -> str:
        """
        Return a valid bearer token for the user.

        Raises:
            AuthenticationFailure: missing uuid, or the aggregator refused to issue a token
        """
        if not user_uuid:
            raise AuthenticationFailure("User has no Bridge user uuid")

        cached = get_cached(_cache_key(user_uuid))
        if cached:
            return cached

        try:
            data = self.client.request_token(user_uuid)
        except AuthenticationFailure:
            raise
        except BankingError as e:
            raise AuthenticationFailure(f"Could not obtain Bridge token for user {user_uuid}: {e}") from e

        token = data.get("access_token")
        if not token:
            raise AuthenticationFailure(f"Bridge token response for user {user_uuid} has no access_token")

        expires_at = _parse_expiry(data.get("expires_at"))
        if expires_at is not None:
            ttl = (expires_at - datetime.now(timezone.utc)).total_seconds() - EXPIRY_MARGIN_SECONDS
            set_cached(_cache_key(user_uuid), token, ttl)

        logger.info(f"Obtained Bridge token for user {user_uuid}")
        return token

    def invalidate(self, user_uuid: str) -> None:
        """Drop the cached token so the next call fetches a new one."""
        if delete_cached(_cache_key(user_uuid)):
            logger.debug(f"Invalidated Bridge token for user {user_uuid}")

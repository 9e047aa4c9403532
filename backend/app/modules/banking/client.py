"""
Bridge API (v3) client for account aggregation.

Thin wrapper around a requests.Session. Application-scoped calls carry the
client credentials; user-scoped calls also carry a bearer token obtained
through the TokenProvider. A 401 on a user-scoped call drops the cached token
and retries once with a fresh one.
"""

import logging
import time
from datetime import date
from typing import Any, Dict, List, Optional

import requests

from app.core.config import settings
from app.modules.banking.errors import (
    AggregatorError,
    AuthenticationFailure,
    ItemNotFound,
    TransientNetworkFailure,
)
from app.modules.banking.token_provider import TokenProvider

logger = logging.getLogger(__name__)

TOKEN_PATH = "/v3/aggregation/authorization/token"
ACCOUNTS_PATH = "/v3/aggregation/accounts"
TRANSACTIONS_PATH = "/v3/aggregation/transactions"
ITEM_PATH = "/v3/aggregation/items/{item_id}"

MAX_PAGES = 20


def is_item_status_ok(item: Dict[str, Any]) -> bool:
    """Bridge reports a healthy item with status_code 0 (or none) or status_code_info 'ok'."""
    if item.get("status_code") in (0, "0", None):
        return True
    return str(item.get("status_code_info") or "").lower() == "ok"


class BridgeClient:
    """Client for the Bridge aggregation API."""

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ):
        """Initialize the client from settings. Raises ValueError when credentials are missing."""
        self.client_id = client_id or settings.BRIDGE_CLIENT_ID
        self.client_secret = client_secret or settings.BRIDGE_CLIENT_SECRET
        if not self.client_id or not self.client_secret:
            raise ValueError("Bridge credentials not configured. Set BRIDGE_CLIENT_ID and BRIDGE_CLIENT_SECRET in .env")

        self.base_url = (base_url or settings.BRIDGE_BASE_URL).rstrip("/")
        self.timeout = settings.BRIDGE_HTTP_TIMEOUT
        self.retries = max(1, settings.BRIDGE_HTTP_RETRIES)
        self.backoff = settings.BRIDGE_HTTP_BACKOFF_SECONDS

        self.session = session or requests.Session()
        self.session.headers.update({
            "Bridge-Version": settings.BRIDGE_VERSION,
            "Client-Id": self.client_id,
            "Client-Secret": self.client_secret,
            "Accept": "application/json",
        })
        self.tokens = TokenProvider(self)
        logger.info(f"Bridge client initialized for {self.base_url}")

    # Transport

    def _request(
        self,
        method: str,
        path_or_url: str,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        **kwargs,
    ) -> requests.Response:
        """
        Send one request with bounded retries on transient failures.

        Raises:
            TransientNetworkFailure: timeout, connection error or 5xx after all attempts
            AuthenticationFailure: 401/403
            AggregatorError: any other non-success status (404 included; callers map it)
        """
        url = path_or_url if path_or_url.startswith("http") else f"{self.base_url}{path_or_url}"
        headers = kwargs.pop("headers", {})
        if token:
            headers["Authorization"] = f"Bearer {token}"

        last_error: Optional[Exception] = None
        for attempt in range(1, self.retries + 1):
            try:
                response = self.session.request(
                    method, url, headers=headers, timeout=timeout or self.timeout, **kwargs
                )
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                last_error = e
                logger.warning(f"Bridge {method} {path_or_url} attempt {attempt}/{self.retries} failed: {e}")
            else:
                if response.status_code < 400:
                    return response
                if response.status_code >= 500:
                    last_error = AggregatorError(
                        f"Bridge {method} {path_or_url} returned {response.status_code}",
                        status_code=response.status_code,
                        body=response.text,
                    )
                    logger.warning(f"Bridge {method} {path_or_url} attempt {attempt}/{self.retries}: {response.status_code}")
                elif response.status_code in (401, 403):
                    raise AuthenticationFailure(
                        f"Bridge {method} {path_or_url} rejected credentials ({response.status_code})"
                    )
                else:
                    raise AggregatorError(
                        f"Bridge {method} {path_or_url} returned {response.status_code}",
                        status_code=response.status_code,
                        body=response.text,
                    )

            if attempt < self.retries and self.backoff:
                time.sleep(self.backoff)

        raise TransientNetworkFailure(f"Bridge {method} {path_or_url} failed after {self.retries} attempts: {last_error}")

    def _user_request(self, method: str, path_or_url: str, user_uuid: str, **kwargs) -> requests.Response:
        """User-scoped request. One retry with a fresh token on 401."""
        token = self.tokens.get_token(user_uuid)
        try:
            return self._request(method, path_or_url, token=token, **kwargs)
        except AuthenticationFailure:
            logger.info(f"Bridge token rejected for user {user_uuid}, refreshing once")
            self.tokens.invalidate(user_uuid)
            token = self.tokens.get_token(user_uuid)
            return self._request(method, path_or_url, token=token, **kwargs)

    def _paginate(self, path: str, user_uuid: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        resources: List[Dict[str, Any]] = []
        response = self._user_request("GET", path, user_uuid, params=params)
        pages = 1
        while True:
            data = response.json() or {}
            resources.extend(data.get("resources") or [])
            next_uri = (data.get("pagination") or {}).get("next_uri")
            if not next_uri:
                break
            if pages >= MAX_PAGES:
                logger.warning(
                    f"Stopped paging {path} after {MAX_PAGES} pages ({len(resources)} resources); "
                    f"remaining pages not fetched"
                )
                break
            response = self._user_request("GET", next_uri, user_uuid)
            pages += 1
        return resources

    # Endpoints

    def request_token(self, user_uuid: str) -> Dict[str, Any]:
        """
        Request a user access token.

        Returns:
            Dict with access_token and expires_at (ISO 8601)
        """
        response = self._request("POST", TOKEN_PATH, json={"user_uuid": user_uuid})
        return response.json()

    def get_accounts(self, user_uuid: str, item_id: str) -> List[Dict[str, Any]]:
        """All accounts of an item."""
        return self._paginate(ACCOUNTS_PATH, user_uuid, {"item_id": item_id})

    def get_transactions(
        self,
        user_uuid: str,
        account_id: str,
        since: date,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Transactions of one account dated on or after ``since``."""
        params = {
            "account_id": account_id,
            "since": since.strftime("%Y-%m-%d"),
            "limit": limit or settings.BANKING_SYNC_PAGE_SIZE,
        }
        return self._paginate(TRANSACTIONS_PATH, user_uuid, params)

    def get_item(self, user_uuid: str, item_id: str) -> Dict[str, Any]:
        """
        Fetch an item's details and status.

        Raises:
            ItemNotFound: the aggregator answered 404
        """
        try:
            response = self._user_request(
                "GET",
                ITEM_PATH.format(item_id=item_id),
                user_uuid,
                timeout=settings.BRIDGE_ITEM_STATUS_TIMEOUT,
            )
        except AggregatorError as e:
            if e.status_code == 404:
                raise ItemNotFound(item_id) from e
            raise
        return response.json() or {}


# Singleton instance
_bridge_client: Optional[BridgeClient] = None


def get_bridge_client() -> BridgeClient:
    """Get or create the Bridge client instance."""
    global _bridge_client
    if _bridge_client is None:
        _bridge_client = BridgeClient()
    return _bridge_client


def set_bridge_client(client: Optional[BridgeClient]) -> None:
    """Replace the shared client (tests, CLI)."""
    global _bridge_client
    _bridge_client = client

"""
HTTP client for the remote system-of-record.

One operation per (domain type, action) pair. Every mutation carries the
queue item id as its Idempotency-Key so the remote side can drop replays of
a request whose response was lost.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import requests

from ..errors import NetworkError, OfflineError, RemoteHTTPError, RemoteTimeoutError
from ..models import Action, DomainType
from ..utils.serialization import dumps
from .. import __version__

logger = logging.getLogger(__name__)


ROUTES: Dict[Tuple[DomainType, Action], Tuple[str, str]] = {
    (DomainType.ORDER, Action.CREATE): ("POST", "/api/pos/orders"),
    (DomainType.ORDER, Action.UPDATE): ("PUT", "/api/orders/{id}"),
    (DomainType.ORDER, Action.DELETE): ("DELETE", "/api/orders/{id}"),
    (DomainType.CUSTOMER, Action.CREATE): ("POST", "/api/customers"),
    (DomainType.CUSTOMER, Action.UPDATE): ("PUT", "/api/customers/{id}"),
    (DomainType.CUSTOMER, Action.DELETE): ("DELETE", "/api/customers/{id}"),
    (DomainType.PRODUCT, Action.CREATE): ("POST", "/api/products"),
    (DomainType.PRODUCT, Action.UPDATE): ("PUT", "/api/products/{id}"),
    (DomainType.PRODUCT, Action.DELETE): ("DELETE", "/api/products/{id}"),
    (DomainType.INVENTORY, Action.UPDATE): ("PUT", "/api/inventory/{product_id}"),
}


class RemoteClient:
    """
    requests-based client for the remote authority.

    Any timeout, connection failure or non-2xx response raises a
    NetworkError subclass; the drainer treats all of them as retryable.
    """

    DEFAULT_ENDPOINT = "http://localhost:8080"
    DEFAULT_TIMEOUT = 10.0  # seconds

    def __init__(
        self,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the client.

        Args:
            endpoint: Base URL of the remote API
            api_key: API key for authentication
            timeout: Per-request timeout in seconds
            session: Optional preconfigured requests session
        """
        self.endpoint = (endpoint or self.DEFAULT_ENDPOINT).rstrip('/')
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def _build_headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        """Build HTTP headers for the request."""
        headers = {
            "Content-Type": "application/json",
            "User-Agent": f"PosSync/{__version__}",
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        url = f"{self.endpoint}{path}"
        data = dumps(payload).encode('utf-8') if payload is not None else None
        try:
            response = self.session.request(
                method,
                url,
                data=data,
                headers=self._build_headers(idempotency_key),
                timeout=timeout or self.timeout,
            )
        except requests.Timeout as e:
            raise RemoteTimeoutError(f"{method} {path} timed out", cause=e) from e
        except requests.ConnectionError as e:
            raise OfflineError(f"{method} {path} could not connect: {e}", cause=e) from e
        except requests.RequestException as e:
            raise NetworkError(f"{method} {path} failed: {e}", cause=e) from e

        if not 200 <= response.status_code < 300:
            logger.warning(f"{method} {path} returned {response.status_code}")
            raise RemoteHTTPError(response.status_code, response.reason or "", response.text or "")

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    def submit(
        self,
        domain_type: Any,
        action: Any,
        payload: Dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> Any:
        """
        Replay one mutation against the remote authority.

        Args:
            domain_type: order, customer, product or inventory
            action: create, update or delete
            payload: Domain record
            idempotency_key: Client-generated id used for deduplication

        Returns:
            Decoded response body, if any

        Raises:
            NetworkError: On any failure
        """
        key = (DomainType(domain_type), Action(action))
        if key not in ROUTES:
            raise NetworkError(f"No remote operation for {key[0].value}/{key[1].value}")
        method, template = ROUTES[key]
        path = template.format(**{
            k: requests.utils.quote(str(payload.get(k, "")), safe="") for k in ("id", "product_id")
        })
        body = None if method == "DELETE" else payload
        return self._request(method, path, body, idempotency_key)

    def _fetch_list(self, path: str, field: str) -> List[Dict[str, Any]]:
        body = self._request("GET", path)
        if isinstance(body, list):
            return body
        if isinstance(body, dict):
            for name in (field, "data", "items"):
                if isinstance(body.get(name), list):
                    return body[name]
        raise NetworkError(f"Unexpected response shape from {path}")

    def fetch_products(self) -> List[Dict[str, Any]]:
        return self._fetch_list("/api/products", "products")

    def fetch_customers(self) -> List[Dict[str, Any]]:
        return self._fetch_list("/api/customers", "customers")

    def ping(self) -> bool:
        """Test if the remote API is reachable."""
        try:
            self._request("GET", "/health", timeout=5)
            return True
        except NetworkError:
            return False

    def close(self) -> None:
        self.session.close()

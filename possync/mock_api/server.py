"""
Mock remote authority for local development and testing.

Accepts the order, customer, product and inventory mutations the drainer
replays, deduplicates them on the Idempotency-Key header, and serves the
product and customer lists the reconciler downloads.

Usage:
    python -m possync.mock_api.server [--port 8080]

Endpoints:
    GET    /health                  - Health check
    GET    /api/products            - Product catalog
    GET    /api/customers           - Customers
    GET    /api/requests            - Mutations received (for inspection)
    POST   /api/pos/orders          - Create order
    PUT    /api/orders/{id}         - Update order
    DELETE /api/orders/{id}         - Delete order
    POST   /api/customers           - Create customer (same for /api/products)
    PUT    /api/customers/{id}      - Update customer
    DELETE /api/customers/{id}      - Delete customer
    PUT    /api/inventory/{id}      - Apply a stock movement
"""

import argparse
import json
import logging
import re
import threading
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote

logger = logging.getLogger(__name__)


class MockAuthority:
    """In-memory state behind the mock server."""

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.products: Dict[str, Dict[str, Any]] = {}
        self.received: List[Dict[str, Any]] = []
        self._responses: Dict[str, Tuple[int, Dict[str, Any]]] = {}
        self._failures: List[int] = []
        self._lock = threading.Lock()

    def seed_products(self, products: List[Dict[str, Any]]) -> None:
        with self._lock:
            for product in products:
                self.products[product["id"]] = dict(product)

    def seed_customers(self, customers: List[Dict[str, Any]]) -> None:
        with self._lock:
            for customer in customers:
                self.customers[customer["id"]] = dict(customer)

    def fail_next(self, count: int = 1, status: int = 503) -> None:
        """Answer the next `count` mutations with `status` without applying them."""
        with self._lock:
            self._failures.extend([status] * count)

    def applied_count(self, method: str, path: str) -> int:
        with self._lock:
            return sum(
                1 for r in self.received
                if r["method"] == method and r["path"] == path and not r["replayed"]
            )

    def handle_mutation(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]],
        idempotency_key: Optional[str],
    ) -> Tuple[int, Dict[str, Any]]:
        with self._lock:
            if self._failures:
                status = self._failures.pop(0)
                logger.info(f"Injected failure {status} for {method} {path}")
                return status, {"error": "Injected failure"}

            if idempotency_key and idempotency_key in self._responses:
                self.received.append(self._record(method, path, body, idempotency_key, True))
                logger.info(f"Replayed {method} {path} ({idempotency_key})")
                return self._responses[idempotency_key]

            status, response = self._apply(method, path, body or {})
            if 200 <= status < 300:
                self.received.append(self._record(method, path, body, idempotency_key, False))
                if idempotency_key:
                    self._responses[idempotency_key] = (status, response)
            return status, response

    @staticmethod
    def _record(method, path, body, key, replayed) -> Dict[str, Any]:
        return {
            "method": method,
            "path": path,
            "body": body,
            "idempotency_key": key,
            "replayed": replayed,
            "received_at": datetime.now(timezone.utc).isoformat(),
        }

    def _apply(self, method: str, path: str, body: Dict[str, Any]) -> Tuple[int, Dict[str, Any]]:
        if method == "POST" and path == "/api/pos/orders":
            if not body.get("id"):
                return 400, {"error": "Order id is required"}
            self.orders[body["id"]] = body
            for line in body.get("line_items", []):
                self._move_stock(line.get("product_id"), -int(line.get("quantity", 0)))
            logger.info(f"Received order {body.get('order_number', body['id'])}")
            return 201, {"status": "created", "id": body["id"]}

        match = re.fullmatch(r"/api/inventory/([^/]+)", path)
        if match and method == "PUT":
            product_id = unquote(match.group(1))
            if product_id not in self.products:
                return 404, {"error": f"Unknown product {product_id}"}
            stock = self._move_stock(product_id, int(body.get("quantity", 0)))
            return 200, {"status": "updated", "id": product_id, "stock": stock}

        match = re.fullmatch(r"/api/(orders|customers|products)(?:/([^/]+))?", path)
        if not match:
            return 404, {"error": "Not found"}
        collection = getattr(self, match.group(1))
        record_id = unquote(match.group(2)) if match.group(2) else None

        if method == "POST" and record_id is None and match.group(1) != "orders":
            if not body.get("id"):
                return 400, {"error": "id is required"}
            collection[body["id"]] = body
            return 201, {"status": "created", "id": body["id"]}
        if method == "PUT" and record_id:
            collection.setdefault(record_id, {}).update(body)
            return 200, {"status": "updated", "id": record_id}
        if method == "DELETE" and record_id:
            if collection.pop(record_id, None) is None:
                return 404, {"error": f"{record_id} not found"}
            return 200, {"status": "deleted", "id": record_id}
        return 405, {"error": "Method not allowed"}

    def _move_stock(self, product_id: Optional[str], delta: int) -> Optional[int]:
        product = self.products.get(product_id)
        if product is None:
            return None
        product["stock"] = max(0, int(product.get("stock", 0)) + delta)
        return product["stock"]


class MockAPIHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the mock remote authority."""

    @property
    def authority(self) -> MockAuthority:
        return self.server.authority

    def _send_json_response(self, status_code: int, data: Any):
        """Send a JSON response."""
        payload = json.dumps(data).encode('utf-8')
        self.send_response(status_code)
        self.send_header('Content-Type', 'application/json')
        self.send_header('Content-Length', str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def _authorized(self) -> bool:
        if not self.authority.api_key:
            return True
        return self.headers.get('Authorization') == f"Bearer {self.authority.api_key}"

    def do_GET(self):
        """Handle GET requests."""
        if self.path == '/health':
            self._send_json_response(200, {'status': 'healthy'})
        elif not self._authorized():
            self._send_json_response(401, {'error': 'Unauthorized'})
        elif self.path == '/api/products':
            self._send_json_response(200, {'products': list(self.authority.products.values())})
        elif self.path == '/api/customers':
            self._send_json_response(200, {'customers': list(self.authority.customers.values())})
        elif self.path == '/api/requests':
            received = self.authority.received
            self._send_json_response(200, {'count': len(received), 'requests': received[-100:]})
        else:
            self._send_json_response(404, {'error': 'Not found'})

    def _handle_mutation(self, method: str):
        if not self._authorized():
            self._send_json_response(401, {'error': 'Unauthorized'})
            return

        body = None
        content_length = int(self.headers.get('Content-Length', 0))
        if content_length:
            try:
                body = json.loads(self.rfile.read(content_length).decode('utf-8'))
            except json.JSONDecodeError as e:
                logger.error(f"Invalid JSON: {e}")
                self._send_json_response(400, {'error': 'Invalid JSON'})
                return

        try:
            status, response = self.authority.handle_mutation(
                method, self.path, body, self.headers.get('Idempotency-Key')
            )
        except Exception as e:
            logger.error(f"Error processing {method} {self.path}: {e}")
            self._send_json_response(500, {'error': str(e)})
            return
        self._send_json_response(status, response)

    def do_POST(self):
        self._handle_mutation('POST')

    def do_PUT(self):
        self._handle_mutation('PUT')

    def do_DELETE(self):
        self._handle_mutation('DELETE')

    def log_message(self, format, *args):
        """Override to use Python logging instead of stderr."""
        logger.debug(f"{self.address_string()} - {format % args}")


def create_server(
    host: str = '127.0.0.1',
    port: int = 8080,
    authority: Optional[MockAuthority] = None,
) -> HTTPServer:
    """
    Build a server without starting it. Port 0 picks a free port.
    """
    httpd = HTTPServer((host, port), MockAPIHandler)
    httpd.authority = authority or MockAuthority()
    return httpd


def start_in_thread(
    authority: Optional[MockAuthority] = None,
    host: str = '127.0.0.1',
    port: int = 0,
) -> Tuple[HTTPServer, threading.Thread]:
    """Serve on a daemon thread; stop with server.shutdown()."""
    httpd = create_server(host, port, authority)
    thread = threading.Thread(target=httpd.serve_forever, name="MockAPI", daemon=True)
    thread.start()
    return httpd, thread


def run_server(host: str = '0.0.0.0', port: int = 8080, api_key: Optional[str] = None):
    """Run the mock API server."""
    httpd = create_server(host, port, MockAuthority(api_key=api_key))
    logger.info(f"Mock remote authority running on http://{host}:{httpd.server_address[1]}")
    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        logger.info("Server shutting down...")
    finally:
        httpd.server_close()


if __name__ == '__main__':
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
    parser = argparse.ArgumentParser(description="Mock remote authority")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8080)
    parser.add_argument("--api-key", default=None)
    args = parser.parse_args()
    run_server(args.host, args.port, args.api_key)

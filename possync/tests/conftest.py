"""
Pytest configuration and shared fixtures for the sync engine tests.
"""
import os
import tempfile
import threading
import uuid
from typing import Any, Dict, List, Optional

import pytest

from possync.config.app_config import AppConfig, CloudSyncConfig, StoreConfig
from possync.errors import OfflineError, RemoteHTTPError
from possync.models import Action, DomainType
from possync.storage.local_store import LocalStore
from possync.sync.applier import PRODUCTS, LocalMutationApplier
from possync.sync.connectivity import ConnectivityMonitor
from possync.sync.drainer import SyncDrainer
from possync.sync.sync_queue import SyncQueue
from possync.utils.clock import ManualClock


class FakeRemote:
    """
    In-process stand-in for the remote authority.

    Deduplicates on the idempotency key the same way the real remote is
    expected to, and can be told to fail the next N calls.
    """

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.applied: Dict[str, Dict[str, Any]] = {}
        self.products: List[Dict[str, Any]] = []
        self.customers: List[Dict[str, Any]] = []
        self._failures: List[Exception] = []
        self.before_call = None
        self.online = True
        self._lock = threading.Lock()

    def fail_next(self, count: int = 1, error: Optional[Exception] = None) -> None:
        for _ in range(count):
            self._failures.append(error or RemoteHTTPError(503, "Service Unavailable"))

    def submit(self, domain_type, action, payload, idempotency_key=None):
        with self._lock:
            self.calls.append({
                "domain_type": DomainType(domain_type),
                "action": Action(action),
                "payload": payload,
                "idempotency_key": idempotency_key,
            })
        if self.before_call:
            self.before_call(len(self.calls))
        if self._failures:
            raise self._failures.pop(0)
        if idempotency_key not in self.applied:
            self.applied[idempotency_key] = payload
        return {"status": "ok"}

    def fetch_products(self):
        return [dict(p) for p in self.products]

    def fetch_customers(self):
        return [dict(c) for c in self.customers]

    def ping(self) -> bool:
        if not self.online:
            raise OfflineError("unreachable")
        return True

    def close(self):
        pass


@pytest.fixture
def clock():
    """Manual clock starting at 2025-01-15 09:00 UTC."""
    return ManualClock()


@pytest.fixture
def store(clock):
    """Initialized in-memory store."""
    s = LocalStore(":memory:", clock=clock).initialize()
    yield s
    s.close()


@pytest.fixture
def temp_db_path():
    """Temporary file path for a file-backed store."""
    temp_path = os.path.join(tempfile.gettempdir(), f"test_possync_{uuid.uuid4().hex}.db")

    yield temp_path

    # Cleanup
    for suffix in ("", "-journal", "-wal", "-shm"):
        try:
            if os.path.exists(temp_path + suffix):
                os.unlink(temp_path + suffix)
        except OSError:
            pass


@pytest.fixture
def queue(store, clock):
    return SyncQueue(store, clock=clock)


@pytest.fixture
def monitor():
    """Monitor that starts offline."""
    return ConnectivityMonitor(initially_online=False)


@pytest.fixture
def applier(store, queue, clock):
    return LocalMutationApplier(store, queue, clock=clock)


@pytest.fixture
def fake_remote():
    return FakeRemote()


@pytest.fixture
def drainer(queue, fake_remote, monitor, clock, applier, store):
    """Drainer with no per-call timeout so calls run on the test thread."""
    d = SyncDrainer(
        queue,
        fake_remote,
        monitor,
        clock=clock,
        applier=applier,
        store=store,
        interval=30,
        request_timeout=None,
    )
    yield d
    d.close()


@pytest.fixture
def sample_products():
    return [
        {"id": "prod-a", "name": "Coffee beans 500g", "price": 15000.0, "stock": 5,
         "category": "grocery", "barcode": "8930000000011", "sku": "CB-500"},
        {"id": "prod-b", "name": "Green tea", "price": 8000.0, "stock": 20,
         "category": "grocery", "barcode": "8930000000028", "sku": "GT-100"},
        {"id": "prod-c", "name": "Rice wine", "price": 50000.0, "stock": 3,
         "category": "alcohol", "barcode": "8930000000035", "sku": "RW-750"},
    ]


@pytest.fixture
def seeded_store(store, sample_products):
    """Store with the sample products mirrored."""
    store.replace_all(PRODUCTS, sample_products)
    return store


@pytest.fixture
def sample_customer():
    return {"id": "cust-1", "name": "Nguyen Van A", "phone": "0901234567",
            "email": "a@example.com", "loyalty_points": 10}


@pytest.fixture
def test_app_config(temp_db_path):
    """Application config with a file-backed store and background sync off."""
    return AppConfig(
        store=StoreConfig(path=temp_db_path),
        cloud_sync=CloudSyncConfig(
            endpoint="http://localhost:8080",
            api_key="test-api-key",
            enable_background_sync=False,
            request_timeout=None,
        ),
    )


@pytest.fixture
def sale_draft():
    """Factory for order drafts selling one product."""
    def _draft(product_id: str = "prod-a", quantity: int = 2, **extra) -> Dict[str, Any]:
        draft = {
            "cashier_id": "cashier-1",
            "line_items": [{"product_id": product_id, "quantity": quantity}],
            "payment_method": "cash",
        }
        draft.update(extra)
        return draft

    return _draft

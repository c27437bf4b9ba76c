"""
Sync engine service.

Wires the local store, queue, connectivity monitor, remote client, applier,
drainer and reconciler from an AppConfig, and exposes the calls the
presentation layer uses: record a sale, read sync-health indicators, and
start/stop background syncing.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..config.app_config import AppConfig
from ..models import OfflineOrder, QueueItem
from ..storage.local_store import LocalStore
from ..sync.applier import LocalMutationApplier
from ..sync.connectivity import ConnectivityMonitor
from ..sync.drainer import DrainResult, SyncDrainer
from ..sync.reconciler import MirrorReconciler
from ..sync.remote_client import RemoteClient
from ..sync.sync_queue import SyncQueue
from ..utils.clock import SystemClock


class ServiceStatus(Enum):
    """Status states for the sync service."""
    STOPPED = "stopped"
    STARTING = "starting"
    OFFLINE = "offline"
    CONNECTED = "connected"
    SYNCING = "syncing"
    ERROR = "error"


@dataclass
class ServiceState:
    """Current state of the sync service."""
    status: ServiceStatus = ServiceStatus.STOPPED
    message: str = ""
    last_sync: Optional[datetime] = None
    pending_items: int = 0
    dead_letters: int = 0
    error_count: int = 0
    errors: list = field(default_factory=list)


class SyncService:
    """
    Entry point for the offline sync engine.

    Components are created by open(); start() additionally runs the drainer's
    background timer with the remote client's health check as the
    connectivity probe.
    """

    def __init__(
        self,
        config: AppConfig,
        clock=None,
        remote=None,
        monitor: Optional[ConnectivityMonitor] = None,
        on_status_change: Optional[Callable[[ServiceState], None]] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the sync service.

        Args:
            config: Application configuration
            clock: Time source shared by every component
            remote: Remote authority client; built from config when None
            monitor: Connectivity monitor; a new offline one when None
            on_status_change: Callback for status updates
            logger: Optional logger instance
        """
        self.config = config
        self.clock = clock or SystemClock()
        self.on_status_change = on_status_change
        self.logger = logger or logging.getLogger(__name__)

        self.monitor = monitor or ConnectivityMonitor()
        self.remote = remote
        self.store: Optional[LocalStore] = None
        self.queue: Optional[SyncQueue] = None
        self.applier: Optional[LocalMutationApplier] = None
        self.drainer: Optional[SyncDrainer] = None
        self.reconciler: Optional[MirrorReconciler] = None

        self._state = ServiceState()
        self._lock = threading.Lock()
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._running = False

    @property
    def state(self) -> ServiceState:
        """Get current service state."""
        with self._lock:
            return self._state

    @property
    def is_open(self) -> bool:
        return self.store is not None

    @property
    def is_running(self) -> bool:
        return self._running

    def _update_status(
        self,
        status: ServiceStatus,
        message: str = "",
        error: Optional[Exception] = None
    ) -> None:
        with self._lock:
            self._state.status = status
            self._state.message = message

            if error:
                self._state.error_count += 1
                self._state.errors.append({
                    'time': self.clock.now(),
                    'error': str(error)
                })
                # Keep only last 10 errors
                self._state.errors = self._state.errors[-10:]

        self.logger.info(f"Status: {status.value} - {message}")

        if self.on_status_change:
            try:
                self.on_status_change(self._state)
            except Exception as e:
                self.logger.error(f"Error in status callback: {e}")

    # Setup

    def setup_store(self) -> None:
        """Open the local store and build the queue and the write path."""
        self.store = LocalStore(self.config.store.path, clock=self.clock).initialize()
        sync = self.config.cloud_sync
        self.queue = SyncQueue(
            self.store,
            clock=self.clock,
            max_retries=sync.max_retries,
            retention=timedelta(hours=sync.retention_hours),
        )
        self.applier = LocalMutationApplier(
            self.store,
            self.queue,
            clock=self.clock,
            tax=self.config.tax,
            loyalty=self.config.loyalty,
        )

    def setup_cloud_sync(self) -> None:
        """Build the remote client, drainer and reconciler if syncing is enabled."""
        sync = self.config.cloud_sync
        if not sync.enabled:
            self.logger.info("Cloud sync disabled; mutations will only be queued")
            return

        if self.remote is None:
            self.remote = RemoteClient(
                endpoint=sync.endpoint,
                api_key=sync.api_key,
                timeout=sync.request_timeout,
            )

        self.drainer = SyncDrainer(
            self.queue,
            self.remote,
            self.monitor,
            clock=self.clock,
            applier=self.applier,
            store=self.store,
            interval=sync.sync_interval,
            request_timeout=sync.request_timeout,
            on_cycle=self._on_drain_cycle,
        )
        self.reconciler = MirrorReconciler(
            self.store,
            remote=self.remote,
            clock=self.clock,
            preserve_local_deltas=sync.preserve_local_deltas,
        )
        self._unsubscribe = self.monitor.subscribe(self._on_connectivity_change)

    def open(self) -> 'SyncService':
        """
        Create every component and recover items interrupted by a crash.

        Returns:
            This service
        """
        if self.is_open:
            return self
        self.setup_store()
        self.setup_cloud_sync()
        self.queue.recover_interrupted()
        self._refresh_counts()
        return self

    # Lifecycle

    def start(self) -> bool:
        """
        Open the service and start background syncing.

        Returns:
            True if started, False if already running
        """
        if self._running:
            self.logger.warning("Service is already running")
            return False

        try:
            self._update_status(ServiceStatus.STARTING, "Opening local store...")
            self.open()
            if self.drainer and self.config.cloud_sync.enable_background_sync:
                if self.drainer.health_check is None and hasattr(self.remote, "ping"):
                    self.drainer.health_check = self.remote.ping
                self.drainer.start()
        except Exception as e:
            self.logger.exception(f"Service error: {e}")
            self._update_status(ServiceStatus.ERROR, str(e), error=e)
            raise

        self._running = True
        self._update_connectivity_status()
        return True

    def stop(self, timeout: float = 10.0) -> None:
        """Stop background syncing and close the store."""
        self.logger.info("Stopping sync service...")
        if self.drainer:
            self.drainer.stop(timeout=timeout)
            self.drainer.close()
            self.drainer = None
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        if self.remote is not None and hasattr(self.remote, "close"):
            self.remote.close()
        if self.store:
            self.store.close()
            self.store = None
        self._running = False
        self._update_status(ServiceStatus.STOPPED, "Service stopped")

    def restart(self) -> bool:
        self.stop()
        return self.start()

    # Callbacks

    def _update_connectivity_status(self) -> None:
        if self.monitor.is_online:
            self._update_status(ServiceStatus.CONNECTED, "Online")
        else:
            self._update_status(ServiceStatus.OFFLINE, "Offline; sales are queued locally")

    def _on_connectivity_change(self, online: bool) -> None:
        self._update_connectivity_status()

    def _on_drain_cycle(self, result: DrainResult) -> None:
        self._refresh_counts()
        if result.completed:
            with self._lock:
                self._state.last_sync = self.clock.now()
        if result.failed:
            self._update_status(
                ServiceStatus.CONNECTED if self.monitor.is_online else ServiceStatus.OFFLINE,
                f"{result.failed} of {result.attempted} items failed to sync",
                error=RuntimeError(f"{result.failed} sync failures ({result.dead_lettered} dead-lettered)"),
            )

    def _refresh_counts(self) -> None:
        if not self.queue:
            return
        summary = self.queue.status_summary()
        with self._lock:
            self._state.pending_items = self.queue.pending_count()
            self._state.dead_letters = summary["dead_letter"]

    # Presentation layer

    def _require_open(self) -> None:
        if not self.is_open:
            raise RuntimeError("Sync service is not open. Call open() or start() first.")

    def record_sale(self, draft: Dict[str, Any]) -> OfflineOrder:
        """Record a sale locally and queue it for replay."""
        self._require_open()
        order = self.applier.apply_order(draft)
        self._refresh_counts()
        return order

    def pending_count(self) -> int:
        self._require_open()
        return self.queue.pending_count()

    def last_sync_time(self) -> Optional[str]:
        self._require_open()
        return self.store.get_setting("last_sync_time")

    def queue_status_summary(self) -> Dict[str, int]:
        self._require_open()
        return self.queue.status_summary()

    def dead_letters(self) -> List[QueueItem]:
        self._require_open()
        return self.queue.dead_letters()

    def requeue(self, item_id: str) -> QueueItem:
        self._require_open()
        item = self.queue.requeue(item_id)
        self._refresh_counts()
        return item

    def sync_now(self) -> Optional[DrainResult]:
        """
        Drain the queue immediately.

        Returns:
            The cycle result, or None if sync is disabled, offline or busy
        """
        self._require_open()
        if self.drainer is None:
            return None
        self._update_status(ServiceStatus.SYNCING, "Sync requested")
        result = self.drainer.sync_now()
        self._update_connectivity_status()
        return result

    def resync_mirrors(self) -> Dict[str, Any]:
        """Refresh the product and customer mirrors from the remote authority."""
        self._require_open()
        if self.reconciler is None:
            raise RuntimeError("Cloud sync is disabled; nothing to resync from")
        return self.reconciler.full_resync()

    def cleanup_old_data(self, days_to_keep: int = 30) -> Dict[str, int]:
        """Drop synced orders and stock history older than days_to_keep."""
        self._require_open()
        return self.applier.cleanup_old_data(days_to_keep)

    def export_data(self) -> Dict[str, Any]:
        self._require_open()
        return self.store.export_data()

    def get_status_summary(self) -> dict:
        """
        Get a summary of current service status.

        Returns:
            Dictionary with status information
        """
        if self.is_open:
            self._refresh_counts()
        state = self.state
        return {
            'status': state.status.value,
            'message': state.message,
            'running': self.is_running,
            'online': self.monitor.is_online,
            'last_sync': self.last_sync_time() if self.is_open else None,
            'pending_items': state.pending_items,
            'dead_letters': state.dead_letters,
            'error_count': state.error_count,
            'recent_errors': state.errors[-3:] if state.errors else []
        }

"""
Connectivity-aware drainer.

Replays queued mutations against the remote authority. A cycle is started by
a transition to online, by the interval timer (tick), or by an explicit
sync_now(); at most one cycle runs at a time and overlapping triggers are
dropped.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from ..errors import QueueError, RemoteTimeoutError
from ..models import QueueItem, QueueStatus
from ..utils.clock import SystemClock, to_iso
from .connectivity import ConnectivityMonitor
from .sync_queue import SyncQueue

logger = logging.getLogger(__name__)


@dataclass
class DrainResult:
    """Outcome of one drain cycle."""
    trigger: str = "manual"
    attempted: int = 0
    completed: int = 0
    failed: int = 0
    dead_lettered: int = 0
    interrupted: bool = False
    purged: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SyncDrainer:
    """
    Single-flight replay of the sync queue.

    Triggers:
    - connectivity going online (subscribed on construction)
    - tick(), which drains once the injected clock passes the next due time
    - sync_now()

    Each remote call is bounded by request_timeout. A call that overruns is
    abandoned on its worker thread, the item is marked failed and the cycle
    moves on with a fresh worker.
    """

    DEFAULT_INTERVAL = 30.0  # seconds
    DEFAULT_REQUEST_TIMEOUT = 10.0  # seconds
    POLL_INTERVAL = 1.0  # seconds between background ticks

    def __init__(
        self,
        queue: SyncQueue,
        remote,
        monitor: ConnectivityMonitor,
        clock=None,
        applier=None,
        store=None,
        interval: float = DEFAULT_INTERVAL,
        request_timeout: Optional[float] = DEFAULT_REQUEST_TIMEOUT,
        health_check: Optional[Callable[[], bool]] = None,
        on_cycle: Optional[Callable[[DrainResult], None]] = None,
    ):
        """
        Initialize the drainer.

        Args:
            queue: Queue to replay
            remote: Object with submit(domain_type, action, payload, idempotency_key)
            monitor: Connectivity signal
            clock: Time source (defaults to the system clock)
            applier: Receives on_item_completed / on_item_failed callbacks
            store: Local store used to record the last sync time
            interval: Seconds between timer-driven cycles while online
            request_timeout: Per-call bound in seconds, None for no bound
            health_check: Optional callable probed by the background loop
            on_cycle: Optional callback receiving each finished cycle's result
        """
        self.queue = queue
        self.remote = remote
        self.monitor = monitor
        self.clock = clock or SystemClock()
        self.applier = applier
        self.store = store
        self.interval = timedelta(seconds=interval)
        self.request_timeout = request_timeout
        self.health_check = health_check
        self.on_cycle = on_cycle

        self._cycle_lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._next_due: Optional[datetime] = None
        self._last_result: Optional[DrainResult] = None

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self._unsubscribe = self.monitor.subscribe(self._on_connectivity_change)

    @property
    def is_draining(self) -> bool:
        return self._cycle_lock.locked()

    @property
    def last_result(self) -> Optional[DrainResult]:
        return self._last_result

    @property
    def next_due(self) -> Optional[datetime]:
        return self._next_due

    def _on_connectivity_change(self, online: bool) -> None:
        if online:
            self.drain("online")

    def sync_now(self) -> Optional[DrainResult]:
        """Run a cycle immediately if online and none is running."""
        return self.drain("manual")

    def tick(self) -> Optional[DrainResult]:
        """Run a cycle if online and the interval has elapsed."""
        if self._next_due is not None and self.clock.now() < self._next_due:
            return None
        if self.health_check is not None:
            self.monitor.probe(self.health_check)
            # Coming online above already drained and moved the due time
            if self._next_due is not None and self.clock.now() < self._next_due:
                return None
        return self.drain("timer")

    def drain(self, trigger: str = "manual") -> Optional[DrainResult]:
        """
        Run one drain cycle.

        Returns:
            The cycle's result, or None if offline or a cycle is already running
        """
        if not self.monitor.is_online:
            logger.debug(f"Drain ({trigger}) skipped: offline")
            return None
        if not self._cycle_lock.acquire(blocking=False):
            logger.debug(f"Drain ({trigger}) skipped: a cycle is already running")
            return None

        try:
            result = self._run_cycle(trigger)
        finally:
            self._next_due = self.clock.now() + self.interval
            self._cycle_lock.release()

        self._last_result = result
        if self.on_cycle:
            try:
                self.on_cycle(result)
            except Exception as e:
                logger.error(f"Error in drain cycle callback: {e}")
        return result

    def _run_cycle(self, trigger: str) -> DrainResult:
        result = DrainResult(trigger=trigger)
        items = self.queue.eligible()
        if items:
            logger.info(f"Draining {len(items)} queue items ({trigger})")

        for index, item in enumerate(items):
            if not self.monitor.is_online:
                result.interrupted = True
                logger.info(f"Went offline; {len(items) - index} items left for later")
                break
            try:
                self._process_item(item, result)
            except QueueError as e:
                # Item changed since the snapshot (requeued, purged)
                logger.warning(f"Skipping queue item {item.id}: {e}")

        result.purged = self.queue.purge_completed()
        if result.completed and self.store is not None:
            self.store.set_setting("last_sync_time", to_iso(self.clock.now()))

        if result.attempted:
            logger.info(
                f"Drain cycle finished: {result.completed} completed, {result.failed} failed, "
                f"{result.dead_lettered} dead-lettered"
            )
        return result

    def _process_item(self, item: QueueItem, result: DrainResult) -> None:
        item = self.queue.transition(item.id, QueueStatus.PROCESSING)
        result.attempted += 1

        try:
            self._call_remote(item)
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.error(f"Sync of {item.domain_type.value}/{item.action.value} {item.id} failed: {error}")
            item = self.queue.transition(item.id, QueueStatus.FAILED, error=error)
            result.failed += 1
            if item.is_dead_letter(self.queue.max_retries):
                result.dead_lettered += 1
            self._notify("on_item_failed", item, error)
            return

        item = self.queue.transition(item.id, QueueStatus.COMPLETED)
        result.completed += 1
        self._notify("on_item_completed", item)

    def _call_remote(self, item: QueueItem) -> Any:
        def call():
            return self.remote.submit(
                item.domain_type, item.action, item.payload, idempotency_key=item.id
            )

        if not self.request_timeout:
            return call()

        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="SyncRemote")
        future = self._executor.submit(call)
        try:
            return future.result(timeout=self.request_timeout)
        except FutureTimeoutError:
            # The stalled call keeps its thread; later items get a new one
            self._executor.shutdown(wait=False)
            self._executor = None
            raise RemoteTimeoutError(
                f"Remote call for {item.id} exceeded {self.request_timeout}s",
                details={"id": item.id},
            ) from None

    def _notify(self, hook: str, *args) -> None:
        if self.applier is None:
            return
        try:
            getattr(self.applier, hook)(*args)
        except Exception as e:
            logger.error(f"Error in {hook} for queue item {args[0].id}: {e}")

    # Background loop

    def start(self) -> None:
        """Start the background timer thread."""
        if self._thread and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._background_loop,
            name="SyncDrainer",
            daemon=True
        )
        self._thread.start()
        logger.debug("Background drain thread started")

    def _background_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Error in background drain loop: {e}")

            self._stop_event.wait(min(self.POLL_INTERVAL, self.interval.total_seconds()))

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the background thread and release the worker pool."""
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self._thread = None
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

    def close(self) -> None:
        self.stop()
        self._unsubscribe()

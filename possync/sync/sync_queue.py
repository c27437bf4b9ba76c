"""
Durable mutation queue.

Every business mutation is written here before any network attempt is made.
The drainer replays items in enqueue order and moves them through the
lifecycle:

    pending -> processing -> completed
                          -> failed -> processing (while retries remain)
"""

import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional

from ..errors import InvalidTransitionError, QueueItemNotFoundError, ValidationError
from ..models import Action, DomainType, QueueItem, QueueStatus
from ..storage.local_store import LocalStore, StoreTransaction
from ..utils.clock import SystemClock, parse_iso, to_iso
from ..utils.serialization import dumps

logger = logging.getLogger(__name__)


# Actions the remote authority exposes for each domain type
SUPPORTED_ACTIONS: Dict[DomainType, frozenset] = {
    DomainType.ORDER: frozenset(Action),
    DomainType.CUSTOMER: frozenset(Action),
    DomainType.PRODUCT: frozenset(Action),
    DomainType.INVENTORY: frozenset({Action.UPDATE}),
}

ALLOWED_TRANSITIONS: Dict[QueueStatus, frozenset] = {
    QueueStatus.PENDING: frozenset({QueueStatus.PROCESSING}),
    QueueStatus.PROCESSING: frozenset({QueueStatus.COMPLETED, QueueStatus.FAILED}),
    QueueStatus.FAILED: frozenset({QueueStatus.PROCESSING}),
    QueueStatus.COMPLETED: frozenset(),
}


def _identity_field(domain_type: DomainType) -> str:
    return "product_id" if domain_type == DomainType.INVENTORY else "id"


class SyncQueue:
    """
    Ordered ledger of mutations awaiting remote acknowledgment.

    This class provides:
    - Durable enqueue (returns only after the item is committed)
    - FIFO listing by enqueue time
    - The item state machine, with a bounded retry budget
    - Dead-letter listing and manual requeue
    - Retention-based cleanup of completed items
    """

    TABLE = "sync_queue"
    DEFAULT_MAX_RETRIES = 3
    DEFAULT_RETENTION = timedelta(hours=24)

    def __init__(
        self,
        store: LocalStore,
        clock=None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retention: timedelta = DEFAULT_RETENTION,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.max_retries = max_retries
        self.retention = retention

    def _now(self) -> str:
        return to_iso(self.clock.now())

    def _validate(self, domain_type: Any, action: Any, payload: Any) -> tuple:
        try:
            domain = DomainType(domain_type)
        except ValueError:
            raise ValidationError(
                f"Unknown domain type: {domain_type!r}",
                details={"domain_type": str(domain_type)},
            ) from None
        try:
            act = Action(action)
        except ValueError:
            raise ValidationError(f"Unknown action: {action!r}", details={"action": str(action)}) from None

        if act not in SUPPORTED_ACTIONS[domain]:
            raise ValidationError(f"Action '{act.value}' is not supported for {domain.value}")
        if not isinstance(payload, dict):
            raise ValidationError(f"Payload must be a mapping, got {type(payload).__name__}")

        identity = _identity_field(domain)
        if payload.get(identity) in (None, "") and (act != Action.CREATE or domain == DomainType.ORDER):
            raise ValidationError(f"{domain.value} {act.value} payload is missing '{identity}'")

        try:
            dumps(payload)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Payload is not serializable: {e}") from e

        return domain, act

    def enqueue(
        self,
        domain_type: Any,
        action: Any,
        payload: Dict[str, Any],
        tx: Optional[StoreTransaction] = None,
    ) -> str:
        """
        Record a mutation for later replay.

        Args:
            domain_type: order, customer, product or inventory
            action: create, update or delete
            payload: The domain record to send
            tx: Join an already open store transaction instead of opening one

        Returns:
            The client-generated id of the new queue item

        Raises:
            ValidationError: If the mutation is malformed (nothing is written)
            StorageError: If the item could not be stored
        """
        domain, act = self._validate(domain_type, action, payload)
        now = self._now()
        item = QueueItem(
            id=str(uuid.uuid4()),
            domain_type=domain,
            action=act,
            payload=payload,
            enqueued_at=now,
            updated_at=now,
        )

        if tx is not None:
            tx.put(self.TABLE, item.to_dict())
        else:
            self.store.put(self.TABLE, item.to_dict())

        logger.debug(f"Enqueued {domain.value}/{act.value} as {item.id}")
        return item.id

    def get(self, item_id: str) -> Optional[QueueItem]:
        record = self.store.get(self.TABLE, item_id)
        return QueueItem.from_dict(record) if record else None

    @staticmethod
    def _fifo(records: List[Dict[str, Any]]) -> List[QueueItem]:
        # Records arrive in insertion order; the stable sort keeps it for ties.
        items = [QueueItem.from_dict(record) for record in records]
        return sorted(items, key=lambda item: item.enqueued_at)

    def list_by_status(self, status: Any) -> List[QueueItem]:
        status = QueueStatus(status)
        return self._fifo(self.store.query_by_index(self.TABLE, "status", status.value))

    def list_all(self) -> List[QueueItem]:
        return self._fifo(self.store.get_all(self.TABLE))

    def transition(self, item_id: str, new_status: Any, error: Optional[str] = None) -> QueueItem:
        """
        Move an item to a new status.

        Entering FAILED consumes one retry and records the error. Leaving
        FAILED is only allowed while retries remain.

        Args:
            item_id: Queue item id
            new_status: Target status
            error: Error text for a failed attempt

        Returns:
            The updated item

        Raises:
            QueueItemNotFoundError: If no such item exists
            InvalidTransitionError: If the move is not allowed
        """
        new_status = QueueStatus(new_status)
        with self.store.transaction() as tx:
            record = tx.get(self.TABLE, item_id)
            if record is None:
                raise QueueItemNotFoundError(f"Queue item {item_id} not found", details={"id": item_id})

            item = QueueItem.from_dict(record)
            if new_status not in ALLOWED_TRANSITIONS[item.status]:
                raise InvalidTransitionError(
                    f"Cannot move {item_id} from {item.status.value} to {new_status.value}",
                    details={"id": item_id, "from": item.status.value, "to": new_status.value},
                )
            if item.status == QueueStatus.FAILED and item.retry_count >= self.max_retries:
                raise InvalidTransitionError(
                    f"Queue item {item_id} exhausted its {self.max_retries} retries",
                    details={"id": item_id, "retry_count": item.retry_count},
                )

            now = self._now()
            item.status = new_status
            item.updated_at = now
            if new_status == QueueStatus.FAILED:
                item.retry_count += 1
                item.last_error = error or "Unknown error"
            elif new_status == QueueStatus.COMPLETED:
                item.completed_at = now
                item.last_error = None

            tx.put(self.TABLE, item.to_dict())

        if item.is_dead_letter(self.max_retries):
            logger.warning(
                f"Queue item {item_id} ({item.domain_type.value}/{item.action.value}) dead-lettered "
                f"after {item.retry_count} attempts: {item.last_error}"
            )
        return item

    def eligible(self) -> List[QueueItem]:
        """Pending items plus failed items with retries left, in FIFO order."""
        items = [
            item for item in self.list_all()
            if item.status == QueueStatus.PENDING
            or (item.status == QueueStatus.FAILED and item.retry_count < self.max_retries)
        ]
        return items

    def dead_letters(self) -> List[QueueItem]:
        return [item for item in self.list_by_status(QueueStatus.FAILED) if item.is_dead_letter(self.max_retries)]

    def requeue(self, item_id: str) -> QueueItem:
        """
        Return a dead-lettered item to pending with a fresh retry budget.

        This is the operator's manual recovery path; the drainer never calls it.
        """
        with self.store.transaction() as tx:
            record = tx.get(self.TABLE, item_id)
            if record is None:
                raise QueueItemNotFoundError(f"Queue item {item_id} not found", details={"id": item_id})
            item = QueueItem.from_dict(record)
            if item.status != QueueStatus.FAILED:
                raise InvalidTransitionError(
                    f"Only failed items can be requeued; {item_id} is {item.status.value}"
                )
            item.status = QueueStatus.PENDING
            item.retry_count = 0
            item.updated_at = self._now()
            tx.put(self.TABLE, item.to_dict())

        logger.info(f"Queue item {item_id} requeued by operator")
        return item

    def recover_interrupted(self) -> int:
        """
        Return items stranded in PROCESSING by a crash to PENDING.

        The outcome of their last attempt is unknown, so no retry is consumed;
        the remote side deduplicates on the item id.

        Returns:
            Number of items recovered
        """
        recovered = 0
        with self.store.transaction() as tx:
            for record in tx.query_by_index(self.TABLE, "status", QueueStatus.PROCESSING.value):
                item = QueueItem.from_dict(record)
                item.status = QueueStatus.PENDING
                item.last_error = "Interrupted before acknowledgment"
                item.updated_at = self._now()
                tx.put(self.TABLE, item.to_dict())
                recovered += 1

        if recovered:
            logger.info(f"Recovered {recovered} interrupted queue items")
        return recovered

    def purge_completed(self, now=None) -> int:
        """
        Delete completed items older than the retention window.

        Returns:
            Number of items deleted
        """
        cutoff = (now or self.clock.now()) - self.retention
        purged = 0
        with self.store.transaction() as tx:
            for record in tx.query_by_index(self.TABLE, "status", QueueStatus.COMPLETED.value):
                completed_at = record.get("completed_at") or record.get("updated_at")
                if completed_at and parse_iso(completed_at) <= cutoff:
                    tx.delete(self.TABLE, record["id"])
                    purged += 1

        if purged:
            logger.debug(f"Purged {purged} completed queue items")
        return purged

    def pending_count(self) -> int:
        """Items still awaiting acknowledgment, dead letters excluded."""
        return sum(
            1 for item in self.list_all()
            if item.status in (QueueStatus.PENDING, QueueStatus.PROCESSING)
            or (item.status == QueueStatus.FAILED and item.retry_count < self.max_retries)
        )

    def status_summary(self) -> Dict[str, int]:
        summary = {status.value: 0 for status in QueueStatus}
        dead = 0
        for item in self.list_all():
            summary[item.status.value] += 1
            if item.is_dead_letter(self.max_retries):
                dead += 1
        summary["dead_letter"] = dead
        return summary

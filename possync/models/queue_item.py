from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .record import RecordMixin


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class DomainType(str, Enum):
    ORDER = "order"
    CUSTOMER = "customer"
    PRODUCT = "product"
    INVENTORY = "inventory"


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class QueueItem(RecordMixin):
    id: str
    domain_type: DomainType
    action: Action
    payload: Dict[str, Any]
    enqueued_at: str
    retry_count: int = 0
    status: QueueStatus = QueueStatus.PENDING
    last_error: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None

    def __post_init__(self):
        self.domain_type = DomainType(self.domain_type)
        self.action = Action(self.action)
        self.status = QueueStatus(self.status)

    def is_dead_letter(self, max_retries: int) -> bool:
        return self.status == QueueStatus.FAILED and self.retry_count >= max_retries

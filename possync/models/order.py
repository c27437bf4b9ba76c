from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .record import RecordMixin


class OrderStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


@dataclass
class LineItem(RecordMixin):
    product_id: str
    name: str
    unit_price: float
    quantity: int
    category: str = ""

    @property
    def total(self) -> float:
        return self.unit_price * self.quantity


@dataclass
class OfflineOrder(RecordMixin):
    id: str
    order_number: str
    cashier_id: str
    line_items: List[LineItem]
    subtotal: float
    discount: float
    tax_amount: float
    excise_amount: float
    total: float
    payment_method: str
    created_at: str
    customer_id: Optional[str] = None
    payment_data: Dict[str, Any] = field(default_factory=dict)
    loyalty_points_earned: int = 0
    loyalty_points_redeemed: int = 0
    status: OrderStatus = OrderStatus.PENDING
    synced_at: Optional[str] = None
    last_sync_attempt: Optional[str] = None
    sync_retry_count: int = 0
    sync_error: Optional[str] = None
    queue_item_id: Optional[str] = None

    def __post_init__(self):
        self.status = OrderStatus(self.status)
        self.line_items = [
            item if isinstance(item, LineItem) else LineItem.from_dict(item)
            for item in self.line_items
        ]

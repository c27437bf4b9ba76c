from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .record import RecordMixin


class InventoryType(str, Enum):
    SALE = "sale"
    ADJUSTMENT = "adjustment"
    RESTOCK = "restock"


@dataclass
class InventoryTransaction(RecordMixin):
    """Append-only record of one stock mutation.

    quantity is the requested signed delta; previous_stock/new_stock record
    what the mirror actually did after clamping at zero.
    """
    id: str
    product_id: str
    type: InventoryType
    quantity: int
    timestamp: str
    previous_stock: Optional[int] = None
    new_stock: Optional[int] = None
    reason: Optional[str] = None
    order_id: Optional[str] = None
    queue_item_id: Optional[str] = None
    synced: bool = False

    def __post_init__(self):
        self.type = InventoryType(self.type)


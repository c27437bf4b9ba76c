from dataclasses import dataclass
from typing import Optional

from .record import RecordMixin


@dataclass
class OfflineProduct(RecordMixin):
    id: str
    name: str
    price: float
    stock: int
    category: str = ""
    min_stock: int = 0
    barcode: Optional[str] = None
    sku: Optional[str] = None
    last_synced_at: Optional[str] = None

    def __post_init__(self):
        # The mirror never holds negative stock, whatever the remote sends.
        self.stock = max(0, int(self.stock))
        self.price = float(self.price)

    @property
    def is_low_stock(self) -> bool:
        return self.stock <= self.min_stock

from dataclasses import dataclass
from typing import Optional

from .record import RecordMixin


@dataclass
class OfflineCustomer(RecordMixin):
    id: str
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    loyalty_points: int = 0
    loyalty_tier: str = "bronze"
    total_spent: float = 0.0
    last_synced_at: Optional[str] = None

    def __post_init__(self):
        self.loyalty_points = int(self.loyalty_points or 0)
        self.total_spent = float(self.total_spent or 0)

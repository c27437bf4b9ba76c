"""Models package for the sync engine."""

from .customer import OfflineCustomer
from .inventory import InventoryTransaction, InventoryType
from .order import LineItem, OfflineOrder, OrderStatus
from .product import OfflineProduct
from .queue_item import Action, DomainType, QueueItem, QueueStatus

__all__ = [
    'Action',
    'DomainType',
    'InventoryTransaction',
    'InventoryType',
    'LineItem',
    'OfflineCustomer',
    'OfflineOrder',
    'OfflineProduct',
    'OrderStatus',
    'QueueItem',
    'QueueStatus',
]

"""
Offline write path.

A sale (or stock adjustment, or customer edit) is made durable and locally
consistent in one store transaction: the domain record, its optimistic side
effects on the mirrors, the inventory ledger entries and the queue item that
will replay it. Either all of it is written or none of it is.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from ..config.app_config import LoyaltyConfig, TaxConfig
from ..errors import ValidationError
from ..models import (
    Action,
    DomainType,
    InventoryTransaction,
    InventoryType,
    LineItem,
    OfflineCustomer,
    OfflineOrder,
    OfflineProduct,
    OrderStatus,
    QueueItem,
)
from ..storage.local_store import LocalStore, StoreTransaction
from ..utils.clock import SystemClock, parse_iso, to_iso
from .pricing import Discount, compute_totals, loyalty_points_for
from .sync_queue import SyncQueue

logger = logging.getLogger(__name__)

ORDERS = "orders"
PRODUCTS = "products"
CUSTOMERS = "customers"
INVENTORY = "inventory_transactions"

# Fields that only make sense on this terminal
LOCAL_ORDER_FIELDS = (
    "status", "synced_at", "last_sync_attempt", "sync_retry_count", "sync_error", "queue_item_id",
)


class LocalMutationApplier:
    """
    Applies business actions to the local store and queues them for replay.

    Also follows queue outcomes back onto domain records: acknowledged orders
    become synced, and their inventory entries are marked synced.
    """

    def __init__(
        self,
        store: LocalStore,
        queue: SyncQueue,
        clock=None,
        tax: Optional[TaxConfig] = None,
        loyalty: Optional[LoyaltyConfig] = None,
    ):
        self.store = store
        self.queue = queue
        self.clock = clock or SystemClock()
        self.tax = tax or TaxConfig()
        self.loyalty = loyalty or LoyaltyConfig()

    # Orders

    def apply_order(self, draft: Dict[str, Any]) -> OfflineOrder:
        """
        Record a sale taken at this terminal.

        Args:
            draft: cashier_id, line_items [{product_id, quantity, unit_price?,
                   name?, category?}], and optionally customer_id, discount,
                   payment_method, payment_data, loyalty_points_redeemed.
                   Missing line details are filled from the product mirror.

        Returns:
            The persisted order, status pending

        Raises:
            ValidationError: If the draft is malformed (nothing is written)
            StorageError: If the store rejects the write (nothing is written)
        """
        if not isinstance(draft, dict):
            raise ValidationError("Order draft must be a mapping")
        cashier_id = draft.get("cashier_id")
        if not cashier_id:
            raise ValidationError("Order draft is missing 'cashier_id'")
        raw_lines = draft.get("line_items") or []
        if not raw_lines:
            raise ValidationError("Order draft has no line items")
        discount = Discount.from_value(draft.get("discount"))
        redeemed = int(draft.get("loyalty_points_redeemed") or 0)
        if redeemed < 0:
            raise ValidationError("loyalty_points_redeemed cannot be negative")

        now = self.clock.now()
        with self.store.transaction() as tx:
            line_items = [self._build_line_item(tx, raw) for raw in raw_lines]
            totals = compute_totals(line_items, discount, self.tax)

            order = OfflineOrder(
                id=str(uuid.uuid4()),
                order_number=self._next_order_number(tx, now),
                cashier_id=str(cashier_id),
                customer_id=draft.get("customer_id"),
                line_items=line_items,
                subtotal=totals.subtotal,
                discount=totals.discount,
                tax_amount=totals.tax_amount,
                excise_amount=totals.excise_amount,
                total=totals.total,
                payment_method=draft.get("payment_method", "cash"),
                payment_data=draft.get("payment_data") or {},
                loyalty_points_earned=loyalty_points_for(totals.total, self.loyalty),
                loyalty_points_redeemed=redeemed,
                created_at=to_iso(now),
            )

            order.queue_item_id = self.queue.enqueue(
                DomainType.ORDER, Action.CREATE, self._remote_order_payload(order), tx=tx
            )
            tx.put(ORDERS, order.to_dict())

            for line in order.line_items:
                self._apply_stock_delta(
                    tx, line.product_id, -line.quantity, InventoryType.SALE, now,
                    order_id=order.id, queue_item_id=order.queue_item_id,
                )

            if order.customer_id:
                self._apply_loyalty(tx, order)

        logger.info(f"Recorded offline order {order.order_number} ({order.total:.2f})")
        return order

    def _build_line_item(self, tx: StoreTransaction, raw: Dict[str, Any]) -> LineItem:
        product_id = raw.get("product_id")
        if not product_id:
            raise ValidationError("Line item is missing 'product_id'")
        try:
            quantity = int(raw.get("quantity", 0))
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid quantity for {product_id}") from None
        if quantity <= 0:
            raise ValidationError(f"Quantity for {product_id} must be positive")

        product = tx.get(PRODUCTS, product_id) or {}
        unit_price = raw.get("unit_price", product.get("price"))
        if unit_price is None:
            raise ValidationError(f"No price for {product_id} in the draft or the catalog mirror")
        if float(unit_price) < 0:
            raise ValidationError(f"Negative price for {product_id}")

        return LineItem(
            product_id=str(product_id),
            name=raw.get("name") or product.get("name", ""),
            unit_price=float(unit_price),
            quantity=quantity,
            category=raw.get("category") or product.get("category", ""),
        )

    def _next_order_number(self, tx: StoreTransaction, now: datetime) -> str:
        day = now.strftime("%y%m%d")
        key = f"order_sequence:{day}"
        setting = tx.get("settings", key)
        sequence = (setting["value"] if setting else 0) + 1
        tx.put("settings", {"key": key, "value": sequence, "last_updated": to_iso(now)})
        return f"OF{day}{sequence:04d}"

    @staticmethod
    def _remote_order_payload(order: OfflineOrder) -> Dict[str, Any]:
        payload = order.to_dict()
        for name in LOCAL_ORDER_FIELDS:
            payload.pop(name, None)
        return payload

    def _apply_loyalty(self, tx: StoreTransaction, order: OfflineOrder) -> None:
        record = tx.get(CUSTOMERS, order.customer_id)
        if record is None:
            logger.debug(f"Customer {order.customer_id} not mirrored; loyalty left to the remote")
            return
        customer = OfflineCustomer.from_dict(record)
        customer.loyalty_points = max(
            0, customer.loyalty_points + order.loyalty_points_earned - order.loyalty_points_redeemed
        )
        customer.total_spent = round(customer.total_spent + order.total, 2)
        tx.put(CUSTOMERS, customer.to_dict())

    # Stock

    def _apply_stock_delta(
        self,
        tx: StoreTransaction,
        product_id: str,
        delta: int,
        kind: InventoryType,
        now: datetime,
        order_id: Optional[str] = None,
        queue_item_id: Optional[str] = None,
        reason: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> InventoryTransaction:
        previous = new = None
        record = tx.get(PRODUCTS, product_id)
        if record is not None:
            product = OfflineProduct.from_dict(record)
            previous = product.stock
            new = max(0, previous + delta)
            if previous + delta < 0:
                logger.warning(f"Stock for {product_id} clamped at 0 ({previous} {delta:+d})")
            product.stock = new
            tx.put(PRODUCTS, product.to_dict())
        else:
            logger.warning(f"Product {product_id} not in catalog mirror; recording movement only")

        entry = InventoryTransaction(
            id=transaction_id or str(uuid.uuid4()),
            product_id=product_id,
            type=kind,
            quantity=delta,
            previous_stock=previous,
            new_stock=new,
            reason=reason,
            order_id=order_id,
            queue_item_id=queue_item_id,
            timestamp=to_iso(now),
        )
        tx.put(INVENTORY, entry.to_dict())
        return entry

    def adjust_stock(
        self,
        product_id: str,
        delta: int,
        kind: Union[InventoryType, str] = InventoryType.ADJUSTMENT,
        reason: Optional[str] = None,
    ) -> InventoryTransaction:
        """
        Apply a manual stock adjustment or restock and queue it.

        Raises:
            ValidationError: On a zero delta, a sale type, a non-positive
                restock, or a product missing from the mirror
        """
        kind = InventoryType(kind)
        if kind == InventoryType.SALE:
            raise ValidationError("Sales are recorded through apply_order")
        if not isinstance(delta, int) or delta == 0:
            raise ValidationError("Stock delta must be a non-zero integer")
        if kind == InventoryType.RESTOCK and delta < 0:
            raise ValidationError("Restock quantity must be positive")

        now = self.clock.now()
        with self.store.transaction() as tx:
            if tx.get(PRODUCTS, product_id) is None:
                raise ValidationError(f"Product {product_id} is not in the catalog mirror")
            transaction_id = str(uuid.uuid4())
            queue_item_id = self.queue.enqueue(
                DomainType.INVENTORY,
                Action.UPDATE,
                {
                    "product_id": product_id,
                    "quantity": delta,
                    "type": kind.value,
                    "reason": reason,
                    "transaction_id": transaction_id,
                },
                tx=tx,
            )
            entry = self._apply_stock_delta(
                tx, product_id, delta, kind, now,
                queue_item_id=queue_item_id, reason=reason, transaction_id=transaction_id,
            )
        return entry

    # Mirrors

    def _save_mirror(self, domain: DomainType, table: str, record: Dict[str, Any], model, action: Action):
        if action == Action.DELETE:
            raise ValidationError(f"Use the delete method to remove a {domain.value}")
        if not record.get("id"):
            if action != Action.CREATE:
                raise ValidationError(f"{domain.value} {action.value} payload is missing 'id'")
            record["id"] = str(uuid.uuid4())
        try:
            result = model.from_dict(record)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid {domain.value} record: {e}") from e

        with self.store.transaction() as tx:
            tx.put(table, result.to_dict())
            self.queue.enqueue(domain, action, result.to_dict(), tx=tx)
        return result

    def _delete_mirror(self, domain: DomainType, table: str, record_id: str) -> bool:
        if not record_id:
            raise ValidationError(f"{domain.value} delete needs an id")
        with self.store.transaction() as tx:
            existed = tx.delete(table, record_id)
            self.queue.enqueue(domain, Action.DELETE, {"id": record_id}, tx=tx)
        return existed

    def save_customer(
        self,
        customer: Union[OfflineCustomer, Dict[str, Any]],
        action: Union[Action, str] = Action.CREATE,
    ) -> OfflineCustomer:
        """Write a customer to the mirror and queue the change."""
        record = customer.to_dict() if isinstance(customer, OfflineCustomer) else dict(customer)
        if not record.get("name"):
            raise ValidationError("Customer is missing 'name'")
        return self._save_mirror(DomainType.CUSTOMER, CUSTOMERS, record, OfflineCustomer, Action(action))

    def delete_customer(self, customer_id: str) -> bool:
        return self._delete_mirror(DomainType.CUSTOMER, CUSTOMERS, customer_id)

    def save_product(
        self,
        product: Union[OfflineProduct, Dict[str, Any]],
        action: Union[Action, str] = Action.UPDATE,
    ) -> OfflineProduct:
        """Write a product to the mirror and queue the change."""
        record = product.to_dict() if isinstance(product, OfflineProduct) else dict(product)
        return self._save_mirror(DomainType.PRODUCT, PRODUCTS, record, OfflineProduct, Action(action))

    def delete_product(self, product_id: str) -> bool:
        return self._delete_mirror(DomainType.PRODUCT, PRODUCTS, product_id)

    # Queue outcomes

    def _orders_for(self, tx: StoreTransaction, item: QueueItem) -> List[OfflineOrder]:
        if item.domain_type != DomainType.ORDER:
            return []
        return [OfflineOrder.from_dict(r) for r in tx.query_by_index(ORDERS, "queue_item_id", item.id)]

    def on_item_completed(self, item: QueueItem) -> None:
        """Mark the domain records carried by an acknowledged item as synced."""
        now = to_iso(self.clock.now())
        with self.store.transaction() as tx:
            for order in self._orders_for(tx, item):
                order.status = OrderStatus.SYNCED
                order.synced_at = now
                order.last_sync_attempt = now
                order.sync_error = None
                tx.put(ORDERS, order.to_dict())
                logger.info(f"Order {order.order_number} synced")

            for record in tx.query_by_index(INVENTORY, "queue_item_id", item.id):
                record["synced"] = True
                tx.put(INVENTORY, record)

    def on_item_failed(self, item: QueueItem, error: str) -> None:
        """Record a failed attempt on the order carried by the item."""
        now = to_iso(self.clock.now())
        with self.store.transaction() as tx:
            for order in self._orders_for(tx, item):
                order.status = OrderStatus.FAILED
                order.last_sync_attempt = now
                order.sync_retry_count = item.retry_count
                order.sync_error = error
                tx.put(ORDERS, order.to_dict())

    # Queries

    def get_order(self, order_id: str) -> Optional[OfflineOrder]:
        record = self.store.get(ORDERS, order_id)
        return OfflineOrder.from_dict(record) if record else None

    def list_orders(self, status: Optional[Union[OrderStatus, str]] = None) -> List[OfflineOrder]:
        if status is None:
            records = self.store.get_all(ORDERS)
        else:
            records = self.store.query_by_index(ORDERS, "status", OrderStatus(status).value)
        return [OfflineOrder.from_dict(r) for r in records]

    def get_product(self, product_id: str) -> Optional[OfflineProduct]:
        record = self.store.get(PRODUCTS, product_id)
        return OfflineProduct.from_dict(record) if record else None

    def find_product_by_barcode(self, barcode: str) -> Optional[OfflineProduct]:
        records = self.store.query_by_index(PRODUCTS, "barcode", barcode)
        return OfflineProduct.from_dict(records[0]) if records else None

    def inventory_history(self, product_id: Optional[str] = None) -> List[InventoryTransaction]:
        if product_id is None:
            records = self.store.get_all(INVENTORY)
        else:
            records = self.store.query_by_index(INVENTORY, "product_id", product_id)
        return [InventoryTransaction.from_dict(r) for r in records]

    def search_products(self, query: str) -> List[OfflineProduct]:
        """Case-insensitive match on name or SKU, substring match on barcode."""
        needle = (query or "").strip().lower()
        if not needle:
            return []
        matches = []
        for record in self.store.get_all(PRODUCTS):
            product = OfflineProduct.from_dict(record)
            if (needle in product.name.lower()
                    or needle in (product.sku or "").lower()
                    or needle in (product.barcode or "")):
                matches.append(product)
        return matches

    def find_customer_by_phone(self, phone: str) -> Optional[OfflineCustomer]:
        records = self.store.query_by_index(CUSTOMERS, "phone", phone)
        return OfflineCustomer.from_dict(records[0]) if records else None

    def search_customers(self, query: str) -> List[OfflineCustomer]:
        """Case-insensitive match on name, substring match on phone."""
        needle = (query or "").strip().lower()
        if not needle:
            return []
        return [
            customer for customer in (OfflineCustomer.from_dict(r) for r in self.store.get_all(CUSTOMERS))
            if needle in customer.name.lower() or needle in (customer.phone or "")
        ]

    # Retention

    def cleanup_old_data(self, days_to_keep: int = 30) -> Dict[str, int]:
        """
        Delete synced orders and synced inventory records older than the window.

        Pending and failed orders and unsynced stock movements are never
        removed, whatever their age.

        Args:
            days_to_keep: Age in days after which synced history is dropped

        Returns:
            Number of deleted orders and inventory records
        """
        if days_to_keep < 0:
            raise ValidationError("days_to_keep cannot be negative")
        cutoff = self.clock.now() - timedelta(days=days_to_keep)
        removed = {"orders": 0, "inventory_transactions": 0}

        with self.store.transaction() as tx:
            for record in tx.query_by_index(ORDERS, "status", OrderStatus.SYNCED.value):
                synced_at = record.get("synced_at")
                if synced_at and parse_iso(synced_at) < cutoff:
                    tx.delete(ORDERS, record["id"])
                    removed["orders"] += 1

            for record in tx.query_by_index(INVENTORY, "synced", True):
                if parse_iso(record["timestamp"]) < cutoff:
                    tx.delete(INVENTORY, record["id"])
                    removed["inventory_transactions"] += 1

        if any(removed.values()):
            logger.info(
                f"Removed {removed['orders']} synced orders and "
                f"{removed['inventory_transactions']} inventory records older than {days_to_keep} days"
            )
        return removed

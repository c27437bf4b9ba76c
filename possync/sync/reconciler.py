"""
Mirror reconciliation.

A full resync replaces the catalog and customer mirrors with the remote
authority's copy. Local changes the remote has not acknowledged yet are laid
back on top, so an offline sale still waiting in the queue does not get its
stock decrement undone by a fresh catalog download.
"""

import logging
from collections import defaultdict
from typing import Any, Dict, List, Tuple

from ..errors import ValidationError
from ..models import DomainType, OfflineCustomer, OfflineProduct, QueueStatus
from ..storage.local_store import LocalStore, StoreTransaction
from ..utils.clock import SystemClock, to_iso
from .applier import CUSTOMERS, INVENTORY, ORDERS, PRODUCTS
from .sync_queue import SyncQueue

logger = logging.getLogger(__name__)


class MirrorReconciler:
    """Merges remote-authoritative catalog and customer data into the mirrors."""

    def __init__(
        self,
        store: LocalStore,
        remote=None,
        clock=None,
        preserve_local_deltas: bool = True,
    ):
        self.store = store
        self.remote = remote
        self.clock = clock or SystemClock()
        self.preserve_local_deltas = preserve_local_deltas

    @staticmethod
    def _unacknowledged(tx: StoreTransaction, domain: DomainType) -> Dict[str, str]:
        """Latest outstanding action per record id for one domain type."""
        outstanding: Dict[str, str] = {}
        for record in tx.query_by_index(SyncQueue.TABLE, "domain_type", domain.value):
            if record["status"] == QueueStatus.COMPLETED.value:
                continue
            record_id = record["payload"].get("id")
            if record_id:
                outstanding[record_id] = record["action"]
        return outstanding

    @staticmethod
    def _unsynced_stock_deltas(tx: StoreTransaction) -> Dict[str, int]:
        """Net stock change per product from movements the remote has not seen."""
        deltas: Dict[str, int] = defaultdict(int)
        for record in tx.query_by_index(INVENTORY, "synced", False):
            previous, new = record.get("previous_stock"), record.get("new_stock")
            if previous is not None and new is not None:
                # What the mirror actually did, after clamping at zero
                deltas[record["product_id"]] += new - previous
            else:
                deltas[record["product_id"]] += record["quantity"]
        return deltas

    @staticmethod
    def _unsynced_loyalty_deltas(tx: StoreTransaction) -> Dict[str, Tuple[int, float]]:
        """(points, spend) per customer from orders whose queue item is outstanding."""
        deltas: Dict[str, Tuple[int, float]] = {}
        for record in tx.get_all(ORDERS):
            customer_id = record.get("customer_id")
            queue_item_id = record.get("queue_item_id")
            if not customer_id or not queue_item_id:
                continue
            item = tx.get(SyncQueue.TABLE, queue_item_id)
            if item is None or item["status"] == QueueStatus.COMPLETED.value:
                continue
            points, spent = deltas.get(customer_id, (0, 0.0))
            deltas[customer_id] = (
                points + int(record.get("loyalty_points_earned") or 0)
                - int(record.get("loyalty_points_redeemed") or 0),
                spent + float(record.get("total") or 0),
            )
        return deltas

    def _merge(
        self,
        tx: StoreTransaction,
        table: str,
        domain: DomainType,
        incoming: Dict[str, Dict[str, Any]],
    ) -> List[Dict[str, Any]]:
        merged = dict(incoming)
        if not self.preserve_local_deltas:
            return list(merged.values())

        local = {record["id"]: record for record in tx.get_all(table)}
        for record_id, action in self._unacknowledged(tx, domain).items():
            if action == "delete":
                merged.pop(record_id, None)
            elif record_id in local:
                merged[record_id] = local[record_id]
        return list(merged.values())

    def resync_products(self, records: List[Dict[str, Any]]) -> int:
        """
        Replace the product mirror with remote data.

        Unsynced inventory movements are re-applied to the incoming stock
        (clamped at zero) and products with unacknowledged edits keep their
        local version.

        Returns:
            Number of products in the mirror afterwards
        """
        now = to_iso(self.clock.now())
        with self.store.transaction() as tx:
            deltas = self._unsynced_stock_deltas(tx) if self.preserve_local_deltas else {}
            incoming: Dict[str, Dict[str, Any]] = {}
            for raw in records:
                try:
                    product = OfflineProduct.from_dict(raw)
                except (TypeError, ValueError) as e:
                    raise ValidationError(f"Invalid product from remote: {e}") from e
                delta = deltas.get(product.id, 0)
                if delta:
                    logger.debug(f"Re-applying unsynced delta {delta:+d} to {product.id}")
                    product.stock = max(0, product.stock + delta)
                product.last_synced_at = now
                incoming[product.id] = product.to_dict()

            merged = self._merge(tx, PRODUCTS, DomainType.PRODUCT, incoming)
            tx.replace_all(PRODUCTS, merged)

        logger.info(f"Product mirror resynced ({len(merged)} products)")
        return len(merged)

    def resync_customers(self, records: List[Dict[str, Any]]) -> int:
        """
        Replace the customer mirror with remote data, keeping customers whose
        local changes are still queued.

        Loyalty points and spend from orders not yet acknowledged are added
        back onto the incoming values.

        Returns:
            Number of customers in the mirror afterwards
        """
        now = to_iso(self.clock.now())
        with self.store.transaction() as tx:
            deltas = self._unsynced_loyalty_deltas(tx) if self.preserve_local_deltas else {}
            incoming: Dict[str, Dict[str, Any]] = {}
            for raw in records:
                try:
                    customer = OfflineCustomer.from_dict(raw)
                except (TypeError, ValueError) as e:
                    raise ValidationError(f"Invalid customer from remote: {e}") from e
                if customer.id in deltas:
                    points, spent = deltas[customer.id]
                    customer.loyalty_points = max(0, customer.loyalty_points + points)
                    customer.total_spent = round(customer.total_spent + spent, 2)
                customer.last_synced_at = now
                incoming[customer.id] = customer.to_dict()

            merged = self._merge(tx, CUSTOMERS, DomainType.CUSTOMER, incoming)
            tx.replace_all(CUSTOMERS, merged)

        logger.info(f"Customer mirror resynced ({len(merged)} customers)")
        return len(merged)

    def full_resync(self, remote=None) -> Dict[str, Any]:
        """
        Download catalog and customers from the remote authority and merge them.

        Raises:
            NetworkError: If either download fails; mirrors are left as they were
        """
        remote = remote or self.remote
        if remote is None:
            raise ValueError("No remote client configured for resync")

        products = remote.fetch_products()
        customers = remote.fetch_customers()
        result = {
            "products": self.resync_products(products),
            "customers": self.resync_customers(customers),
        }
        resynced_at = to_iso(self.clock.now())
        self.store.set_setting("last_resync_time", resynced_at)
        result["resynced_at"] = resynced_at
        return result

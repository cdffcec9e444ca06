from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from stock_reservation.errors import (
    InsufficientStock,
    InvalidArgument,
    LedgerInvariantError,
    NotFound,
    PersistenceError,
    StockReservationError,
)
from stock_reservation.locks import KeyedLocks
from stock_reservation.models import CatalogEntry, ProductStock
from stock_reservation.persistence import Persistence

logger = logging.getLogger(__name__)


def _check_qty(qty: object) -> int:
    # bool is an int subclass, but True is not a quantity
    if isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
        raise InvalidArgument(f"quantity must be a positive integer, got {qty!r}")
    return qty


class StockLedger:
    """
    Owner of the per-product stock counters.

    Every mutation (`reserve`, `confirm`, `release`) is a single
    check-then-act step under the product's lock ("stock:<id>"), and is
    written through to the persistence collaborator before the lock is
    released. If the write fails the previous record is put back, so the
    ledger never reports an effect it could not save.

    Conservation law kept by every operation:
        available + locked == total, all three >= 0
    `deducted` only grows and sits outside that equation.
    """

    def __init__(self, persistence: Optional[Persistence] = None, locks: Optional[KeyedLocks] = None) -> None:
        self.persistence = persistence
        self.locks = locks or KeyedLocks()
        self._products: Dict[str, ProductStock] = {}
        self._save_lock = threading.Lock()

    @staticmethod
    def _key(product_id: str) -> str:
        return f"stock:{product_id}"

    def load(self, products: Iterable[ProductStock]) -> None:
        """Install records read from persistence at startup. Nothing is saved."""
        records = {p.id: p for p in products}
        for p in records.values():
            if not p.is_consistent():
                raise LedgerInvariantError(f"Loaded product {p.id} violates stock conservation: {p}")
        self._products = records

    # Reads

    def get(self, product_id: str) -> ProductStock:
        record = self._products.get(product_id)
        if record is None:
            raise NotFound(f"Product {product_id} not found", product_id=product_id)
        return record

    def snapshot(self) -> List[ProductStock]:
        return sorted(list(self._products.values()), key=lambda p: p.id)

    # Mutations

    def _persist(self) -> None:
        # caller holds _save_lock, so only committed records reach the saved snapshot
        if self.persistence is not None:
            self.persistence.save_products(self.snapshot())

    def _commit(self, before: ProductStock, after: ProductStock) -> ProductStock:
        with self._save_lock:
            self._products[after.id] = after
            try:
                self._persist()
            except Exception as e:
                self._products[before.id] = before
                logger.error(f"[product={before.id}] save failed, record restored: {e}")
                if isinstance(e, StockReservationError):
                    raise
                raise PersistenceError(f"Failed to save products: {e}") from e
        return after

    def _swap_all(self, records: Dict[str, ProductStock]) -> None:
        keys = [self._key(pid) for pid in set(self._products) | set(records)]
        with self.locks.hold_all(keys), self._save_lock:
            previous = self._products
            self._products = records
            try:
                self._persist()
            except Exception as e:
                self._products = previous
                if isinstance(e, StockReservationError):
                    raise
                raise PersistenceError(f"Failed to save products: {e}") from e

    def reserve(self, product_id: str, qty: int) -> ProductStock:
        qty = _check_qty(qty)
        with self.locks.hold(self._key(product_id)):
            item = self.get(product_id)
            if qty > item.available:
                raise InsufficientStock(product_id, requested=qty, available=item.available)
            updated = replace(item, available=item.available - qty, locked=item.locked + qty)
            self._commit(item, updated)
        logger.info(f"[product={product_id}] reserved qty={qty} (available={updated.available}, locked={updated.locked})")
        return updated

    def confirm(self, product_id: str, qty: int) -> ProductStock:
        qty = _check_qty(qty)
        with self.locks.hold(self._key(product_id)):
            item = self.get(product_id)
            if qty > item.locked:
                raise LedgerInvariantError(
                    f"Cannot confirm {qty} of product {product_id}: only {item.locked} locked"
                )
            updated = replace(
                item,
                locked=item.locked - qty,
                deducted=item.deducted + qty,
                total=item.total - qty,
            )
            self._commit(item, updated)
        logger.info(
            f"[product={product_id}] confirmed qty={qty} (total={updated.total}, locked={updated.locked}, deducted={updated.deducted})"
        )
        return updated

    def release(self, product_id: str, qty: int) -> ProductStock:
        qty = _check_qty(qty)
        with self.locks.hold(self._key(product_id)):
            item = self.get(product_id)
            if qty > item.locked:
                raise LedgerInvariantError(
                    f"Cannot release {qty} of product {product_id}: only {item.locked} locked"
                )
            updated = replace(item, available=item.available + qty, locked=item.locked - qty)
            self._commit(item, updated)
        logger.info(f"[product={product_id}] released qty={qty} (available={updated.available}, locked={updated.locked})")
        return updated

    def reset_all(self, catalog: Iterable[CatalogEntry]) -> List[ProductStock]:
        entries = list(catalog)
        for entry in entries:
            if isinstance(entry.total, bool) or not isinstance(entry.total, int) or entry.total < 0:
                raise InvalidArgument(f"catalog total for {entry.id} must be a non-negative integer")
        fresh = {e.id: ProductStock.from_catalog(e) for e in entries}
        self._swap_all(fresh)
        logger.info(f"ledger reset with {len(fresh)} products")
        return self.snapshot()

    def restore(self, products: Iterable[ProductStock]) -> None:
        """Put back a previous snapshot (counters included) and save it."""
        records = {p.id: p for p in products}
        self._swap_all(records)
        logger.info(f"ledger restored to {len(records)} previous records")

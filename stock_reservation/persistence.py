from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, List, Protocol

from stock_reservation.errors import PersistenceError
from stock_reservation.models import DEFAULT_CATALOG, Order, ProductStock

logger = logging.getLogger(__name__)


class Persistence(Protocol):
    """
    Durable storage for products and orders.

    Only "last write wins per collection" is assumed; no transactions.
    """

    def load_products(self) -> List[ProductStock]: ...
    def save_products(self, products: List[ProductStock]) -> None: ...
    def load_orders(self) -> List[Order]: ...
    def save_orders(self, orders: List[Order]) -> None: ...


class InMemoryPersistence:
    """Keeps the last saved lists. Handy for tests and the default desk."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.products: List[dict] = []
        self.orders: List[dict] = []

    def load_products(self) -> List[ProductStock]:
        with self._lock:
            return [ProductStock.from_dict(p) for p in self.products]

    def save_products(self, products: List[ProductStock]) -> None:
        with self._lock:
            self.products = [p.to_dict() for p in products]

    def load_orders(self) -> List[Order]:
        with self._lock:
            return [Order.from_dict(o) for o in self.orders]

    def save_orders(self, orders: List[Order]) -> None:
        with self._lock:
            self.orders = [o.to_dict() for o in orders]


def read_json(path: Path) -> Any:
    try:
        with path.open("r", encoding="utf-8") as fh:
            return json.load(fh)
    except (OSError, ValueError) as e:
        raise PersistenceError(f"Failed to read {path}: {e}") from e


def write_json(path: Path, data: Any) -> None:
    """Write `data` next to `path` first, then move it into place."""
    try:
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2, ensure_ascii=False)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
    except OSError as e:
        raise PersistenceError(f"Failed to write {path}: {e}") from e


class JsonFilePersistence:
    """
    products.json / orders.json under one data directory.

    On first start the directory is created, products are seeded from the
    default catalog and orders start empty.
    """

    def __init__(self, data_dir: str | os.PathLike[str]) -> None:
        self.data_dir = Path(data_dir)
        self.products_file = self.data_dir / "products.json"
        self.orders_file = self.data_dir / "orders.json"
        self._lock = threading.Lock()
        self._init_files()

    def _init_files(self) -> None:
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Failed to create data dir {self.data_dir}: {e}") from e
        if not self.products_file.exists():
            write_json(self.products_file, [ProductStock.from_catalog(c).to_dict() for c in DEFAULT_CATALOG])
            logger.info("seeded %s with default catalog", self.products_file)
        if not self.orders_file.exists():
            write_json(self.orders_file, [])

    def load_products(self) -> List[ProductStock]:
        with self._lock:
            return [ProductStock.from_dict(p) for p in read_json(self.products_file)]

    def save_products(self, products: List[ProductStock]) -> None:
        with self._lock:
            write_json(self.products_file, [p.to_dict() for p in products])

    def load_orders(self) -> List[Order]:
        with self._lock:
            return [Order.from_dict(o) for o in read_json(self.orders_file)]

    def save_orders(self, orders: List[Order]) -> None:
        with self._lock:
            write_json(self.orders_file, [o.to_dict() for o in orders])

"""Pytest fixtures for the stock reservation desk (in-memory collaborators)."""

import pytest

from stock_reservation.audit import InMemoryAuditLog
from stock_reservation.ledger import StockLedger
from stock_reservation.locks import KeyedLocks
from stock_reservation.models import CatalogEntry
from stock_reservation.persistence import InMemoryPersistence
from stock_reservation.service import OrderDesk
from stock_reservation.workflow import OrderWorkflow

CATALOG = [
    CatalogEntry(id="P1", name="Phone", total=100),
    CatalogEntry(id="P2", name="Earbuds", total=5),
    CatalogEntry(id="P3", name="Laptop", total=0),  # Out of stock
]


class FlakyPersistence(InMemoryPersistence):
    """In-memory persistence whose saves can be told to fail."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_product_saves = 0
        self.fail_order_saves = 0
        self.order_save_attempts = 0

    def save_products(self, products):
        if self.fail_product_saves:
            self.fail_product_saves -= 1
            raise OSError("disk full (products)")
        super().save_products(products)

    def save_orders(self, orders):
        self.order_save_attempts += 1
        if self.fail_order_saves:
            self.fail_order_saves -= 1
            raise OSError("disk full (orders)")
        super().save_orders(orders)


@pytest.fixture
def persistence() -> FlakyPersistence:
    return FlakyPersistence()


@pytest.fixture
def audit() -> InMemoryAuditLog:
    return InMemoryAuditLog()


@pytest.fixture
def ledger(persistence) -> StockLedger:
    ledger = StockLedger(persistence=persistence, locks=KeyedLocks(timeout=2.0))
    ledger.reset_all(CATALOG)
    return ledger


@pytest.fixture
def workflow(ledger, persistence, audit) -> OrderWorkflow:
    return OrderWorkflow(ledger, persistence=persistence, audit=audit, status_write_retries=2)


@pytest.fixture
def desk(workflow, audit) -> OrderDesk:
    return OrderDesk(workflow, audit)

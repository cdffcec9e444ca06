from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Optional

from stock_reservation.audit import AuditSink, InMemoryAuditLog, JsonFileAuditLog
from stock_reservation.config import Settings
from stock_reservation.errors import InsufficientStock, StockReservationError
from stock_reservation.ledger import StockLedger
from stock_reservation.locks import KeyedLocks
from stock_reservation.models import DEFAULT_CATALOG, CatalogEntry, OperationResult
from stock_reservation.persistence import InMemoryPersistence, JsonFilePersistence, Persistence
from stock_reservation.workflow import OrderWorkflow

logger = logging.getLogger(__name__)


class OrderDesk:
    """
    Request/response boundary over the workflow.

    Four mutating operations (submit order, report payment, report
    fulfillment, reset inventory) and three reads (stock, orders, audit).
    Nothing raised by the core escapes: every call returns an
    `OperationResult` with a success flag, a message and, on failure, the
    error kind plus structured details.
    """

    def __init__(self, workflow: OrderWorkflow, audit: Optional[AuditSink] = None) -> None:
        self.workflow = workflow
        self.audit = audit if audit is not None else workflow.audit

    @classmethod
    def open(cls, settings: Optional[Settings] = None) -> "OrderDesk":
        settings = settings or Settings()
        persistence: Persistence
        audit: AuditSink
        if settings.data_dir:
            persistence = JsonFilePersistence(settings.data_dir)
            audit = JsonFileAuditLog(settings.data_dir)
        else:
            persistence = InMemoryPersistence()
            audit = InMemoryAuditLog()

        locks = KeyedLocks(timeout=settings.lock_timeout)
        ledger = StockLedger(persistence=persistence, locks=locks)
        products = persistence.load_products()
        if products:
            ledger.load(products)
        else:
            ledger.reset_all(DEFAULT_CATALOG)
        workflow = OrderWorkflow(
            ledger,
            persistence=persistence,
            audit=audit,
            locks=locks,
            status_write_retries=settings.status_write_retries,
        )
        workflow.load(persistence.load_orders())
        logger.info(f"order desk opened (data_dir={settings.data_dir or 'memory'})")
        return cls(workflow, audit)

    def _call(self, action: str, fn: Callable[[], Any], message: str) -> OperationResult:
        try:
            data = fn()
        except InsufficientStock as e:
            logger.info(f"{action} rejected: {e.message}")
            return OperationResult(False, "Insufficient stock", error=e.code, details=dict(e.details))
        except StockReservationError as e:
            logger.info(f"{action} rejected ({e.code}): {e.message}")
            return OperationResult(False, e.message, error=e.code, details=dict(e.details))
        except Exception:
            logger.exception(f"{action} failed unexpectedly")
            return OperationResult(False, "Internal error", error="internal")
        return OperationResult(True, message, data=data)

    def submit_order(self, product_id: Any, quantity: Any, buyer_id: Any, buyer_name: Any) -> OperationResult:
        return self._call(
            "submit",
            lambda: self.workflow.submit(product_id, quantity, buyer_id, buyer_name).to_dict(),
            "Order submitted",
        )

    def report_payment(self, order_id: Any, outcome: Any) -> OperationResult:
        message = "Payment succeeded" if outcome == "success" else "Payment failed"
        return self._call("pay", lambda: self.workflow.pay(order_id, outcome).to_dict(), message)

    def report_fulfillment(self, order_id: Any, outcome: Any) -> OperationResult:
        message = "Fulfillment succeeded" if outcome == "success" else "Fulfillment failed"
        return self._call("fulfill", lambda: self.workflow.fulfill(order_id, outcome).to_dict(), message)

    def reset_inventory(self, catalog: Optional[Iterable[CatalogEntry]] = None) -> OperationResult:
        return self._call(
            "reset",
            lambda: [p.to_dict() for p in self.workflow.reset(catalog)],
            "Inventory reset",
        )

    def list_stock(self) -> OperationResult:
        return self._call("stock", lambda: [p.to_dict() for p in self.workflow.ledger.snapshot()], "OK")

    def list_orders(self) -> OperationResult:
        return self._call("orders", lambda: [o.to_dict() for o in self.workflow.list_orders()], "OK")

    def list_audit(self) -> OperationResult:
        def entries() -> list:
            if self.audit is None:
                return []
            return [e.to_dict() for e in self.audit.entries()]

        return self._call("audit", entries, "OK")

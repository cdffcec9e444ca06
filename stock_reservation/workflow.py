from __future__ import annotations

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type, TypeVar, Union

from stock_reservation.audit import AuditSink
from stock_reservation.errors import (
    InternalError,
    InvalidArgument,
    InvalidState,
    NotFound,
    PersistenceError,
    StockReservationError,
)
from stock_reservation.ledger import StockLedger
from stock_reservation.locks import KeyedLocks, SharedExclusiveLock
from stock_reservation.models import (
    DEFAULT_CATALOG,
    CatalogEntry,
    FulfillOutcome,
    Order,
    OrderStatus,
    PayOutcome,
    ProductStock,
    Resolution,
    utcnow,
)
from stock_reservation.persistence import Persistence

logger = logging.getLogger(__name__)

E = TypeVar("E", PayOutcome, FulfillOutcome)


@dataclass(frozen=True, slots=True)
class Transition:
    source: OrderStatus
    target: OrderStatus
    resolution: Optional[Resolution]
    stamp: Optional[str]
    audit_event: str


# The only legal moves. Anything not listed here is InvalidState.
TRANSITIONS: Dict[Tuple[str, Union[PayOutcome, FulfillOutcome]], Transition] = {
    ("pay", PayOutcome.SUCCESS): Transition(
        OrderStatus.PENDING, OrderStatus.PAID, Resolution.CONFIRMED, "paid_at", "order_paid"
    ),
    ("pay", PayOutcome.FAILED): Transition(
        OrderStatus.PENDING, OrderStatus.CANCELLED, Resolution.RELEASED, None, "order_cancelled"
    ),
    ("pay", PayOutcome.TIMEOUT): Transition(
        OrderStatus.PENDING, OrderStatus.CANCELLED, Resolution.RELEASED, None, "order_cancelled"
    ),
    ("fulfill", FulfillOutcome.SUCCESS): Transition(
        OrderStatus.PAID, OrderStatus.FULFILLED, None, "fulfilled_at", "order_fulfilled"
    ),
    ("fulfill", FulfillOutcome.FAILED): Transition(
        OrderStatus.PAID, OrderStatus.FULFILL_FAILED, None, None, "order_fulfill_failed"
    ),
}

TERMINAL_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.FULFILLED, OrderStatus.FULFILL_FAILED})


def allowed_moves() -> set[Tuple[OrderStatus, OrderStatus]]:
    return {(t.source, t.target) for t in TRANSITIONS.values()}


def new_order_id() -> str:
    return "ORD" + uuid.uuid4().hex.upper()


def _require_text(value: Any, field_name: str) -> str:
    if isinstance(value, bool) or value is None:
        raise InvalidArgument(f"{field_name} is required", field=field_name)
    if isinstance(value, int):
        value = str(value)
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgument(f"{field_name} is required", field=field_name)
    return value


def _parse_outcome(enum_cls: Type[E], value: Any) -> E:
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise InvalidArgument(f"outcome must be one of: {allowed}; got {value!r}", field="outcome") from None


class Step(ABC):
    """One compensable piece of order submission."""

    def __init__(self, workflow: "OrderWorkflow", order: Order):
        self.workflow = workflow
        self.order = order

    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    def execute(self) -> None: ...

    @abstractmethod
    def compensate(self) -> None: ...

    def run(self) -> None:
        logger.info(f"[order={self.order.id}] STEP {self.name()}")
        self.execute()
        logger.info(f"[order={self.order.id}] STEP {self.name()} OK")

    def run_compensation(self) -> None:
        logger.info(f"[order={self.order.id}] COMPENSATE {self.name()}")
        self.compensate()
        logger.info(f"[order={self.order.id}] COMPENSATE {self.name()} OK")


class ReserveStock(Step):
    def name(self) -> str:
        return "ReserveStock"

    def execute(self) -> None:
        self.workflow.ledger.reserve(self.order.product_id, self.order.reserved_quantity)

    def compensate(self) -> None:
        self.workflow.ledger.release(self.order.product_id, self.order.reserved_quantity)


class RecordOrder(Step):
    """Adds the order record and saves it; on a failed save the record is removed again."""

    def name(self) -> str:
        return "RecordOrder"

    def execute(self) -> None:
        wf = self.workflow
        wf._orders[self.order.id] = self.order
        try:
            wf._save_orders()
        except Exception:
            wf._orders.pop(self.order.id, None)
            raise

    def compensate(self) -> None:
        self.workflow._orders.pop(self.order.id, None)
        self.workflow._save_orders()


class OrderWorkflow:
    """
    Owns order records and drives the stock ledger through the order state machine.

    pending -> paid -> fulfilled | fulfill_failed
    pending -> cancelled

    Each order's transition and its ledger call run under the order's lock
    ("order:<id>"); different orders never contend. `reset` waits for every
    submit and transition in flight and keeps new ones out until it is done.

    The ledger effect is the source of truth: once confirm/release succeeded
    the in-memory order is resolved, even when saving the orders afterwards
    keeps failing.
    """

    def __init__(
        self,
        ledger: StockLedger,
        persistence: Optional[Persistence] = None,
        audit: Optional[AuditSink] = None,
        locks: Optional[KeyedLocks] = None,
        status_write_retries: int = 3,
    ) -> None:
        self.ledger = ledger
        self.persistence = persistence
        self.audit = audit
        self.locks = locks or ledger.locks
        self.status_write_retries = max(0, status_write_retries)
        self._orders: Dict[str, Order] = {}
        self._save_lock = threading.Lock()
        # submit and transitions share it, reset takes it alone
        self._gate = SharedExclusiveLock(timeout=self.locks.timeout)

    def load(self, orders: Iterable[Order]) -> None:
        self._orders = {o.id: o for o in orders}

    # Reads

    def get_order(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found", order_id=order_id)
        return replace(order)

    def list_orders(self) -> List[Order]:
        return sorted((replace(o) for o in list(self._orders.values())), key=lambda o: o.created_at)

    # Persistence / audit helpers

    def _save_orders(self) -> None:
        if self.persistence is None:
            return
        with self._save_lock:
            self.persistence.save_orders(sorted(list(self._orders.values()), key=lambda o: o.created_at))

    def _save_orders_with_retry(self, order_id: str) -> None:
        last: Optional[Exception] = None
        for attempt in range(1, self.status_write_retries + 2):
            try:
                self._save_orders()
                return
            except Exception as e:
                last = e
                logger.warning(f"[order={order_id}] saving orders failed (attempt {attempt}): {e}")
        raise PersistenceError(
            f"Order {order_id} was updated but could not be saved: {last}", order_id=order_id
        ) from last

    def _audit(self, event_type: str, details: Dict[str, Any]) -> None:
        if self.audit is None:
            return
        try:
            self.audit.record(event_type, details)
        except Exception as e:
            logger.warning(f"audit record {event_type} failed: {e}")

    # Operations

    def submit(self, product_id: Any, quantity: Any, buyer_id: Any, buyer_name: Any) -> Order:
        product_id = _require_text(product_id, "product_id")
        buyer_id = _require_text(buyer_id, "buyer_id")
        buyer_name = _require_text(buyer_name, "buyer_name")
        if quantity is None:
            raise InvalidArgument("quantity is required", field="quantity")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise InvalidArgument(f"quantity must be a positive integer, got {quantity!r}", field="quantity")

        with self._gate.shared():
            order = self._submit_steps(product_id, quantity, buyer_id, buyer_name)
        self._audit(
            "order_submitted",
            {"order_id": order.id, "product_id": product_id, "quantity": quantity, "buyer_id": buyer_id},
        )
        return replace(order)

    def _submit_steps(self, product_id: str, quantity: int, buyer_id: str, buyer_name: str) -> Order:
        product = self.ledger.get(product_id)
        order = Order(
            id=new_order_id(),
            product_id=product_id,
            product_name=product.name,
            quantity=quantity,
            buyer_id=buyer_id,
            buyer_name=buyer_name,
            reserved_quantity=quantity,
        )
        logger.info(f"[order={order.id}] SUBMIT product={product_id} qty={quantity} buyer={buyer_id}")

        steps: List[Step] = [ReserveStock(self, order), RecordOrder(self, order)]
        completed: List[Step] = []
        try:
            for step in steps:
                step.run()
                completed.append(step)
        except Exception as e:
            logger.warning(f"[order={order.id}] SUBMIT FAILED: {e}")
            for step in reversed(completed):
                try:
                    step.run_compensation()
                except Exception as comp_exc:
                    logger.error(f"[order={order.id}] COMPENSATION FAILED at {step.name()}: {comp_exc}")
            if isinstance(e, StockReservationError):
                raise
            raise InternalError(f"Order submission failed: {e}") from e
        return order

    def pay(self, order_id: Any, outcome: Any) -> Order:
        order_id = _require_text(order_id, "order_id")
        result = _parse_outcome(PayOutcome, outcome)
        return self._advance(order_id, TRANSITIONS[("pay", result)], result.value)

    def fulfill(self, order_id: Any, outcome: Any) -> Order:
        order_id = _require_text(order_id, "order_id")
        result = _parse_outcome(FulfillOutcome, outcome)
        return self._advance(order_id, TRANSITIONS[("fulfill", result)], result.value)

    def _advance(self, order_id: str, transition: Transition, outcome: str) -> Order:
        with self._gate.shared():
            # unknown ids never get a lock entry
            if order_id not in self._orders:
                raise NotFound(f"Order {order_id} not found", order_id=order_id)
            with self.locks.hold(f"order:{order_id}"):
                updated = self._apply(order_id, transition, outcome)

        self._audit(transition.audit_event, {"order_id": order_id, "status": outcome})
        return replace(updated)

    def _apply(self, order_id: str, transition: Transition, outcome: str) -> Order:
        """Guard, ledger effect and record update for one order. Caller holds the order lock."""
        order = self._orders.get(order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found", order_id=order_id)
        if order.status is not transition.source:
            raise InvalidState(order_id, order.status.value, transition.target.value)
        if transition.resolution is not None and order.resolution is not None:
            # status and resolution disagree; never settle a reservation twice
            raise InvalidState(order_id, order.resolution.value, transition.resolution.value)

        if transition.resolution is Resolution.CONFIRMED:
            self.ledger.confirm(order.product_id, order.reserved_quantity)
        elif transition.resolution is Resolution.RELEASED:
            self.ledger.release(order.product_id, order.reserved_quantity)

        changes: Dict[str, Any] = {"status": transition.target}
        if transition.resolution is not None:
            changes["resolution"] = transition.resolution
        if transition.stamp is not None:
            changes[transition.stamp] = utcnow()
        updated = replace(order, **changes)
        self._orders[order_id] = updated
        logger.info(f"[order={order_id}] {order.status.value} -> {updated.status.value} ({outcome})")
        self._save_orders_with_retry(order_id)
        return updated

    def reset(self, catalog: Optional[Iterable[CatalogEntry]] = None) -> List[ProductStock]:
        """
        Re-initialize stock from `catalog` (default catalog if None) and drop every order.

        Runs alone: no submit or transition is in flight while it works. If
        the emptied order list cannot be saved, the previous stock and orders
        are put back so products and orders on disk keep describing the same
        reservations.
        """
        with self._gate.exclusive():
            previous_products = self.ledger.snapshot()
            previous_orders = self._orders
            products = self.ledger.reset_all(DEFAULT_CATALOG if catalog is None else catalog)
            self._orders = {}
            try:
                self._save_orders_with_retry("*")
            except Exception:
                logger.error("saving cleared orders failed, restoring previous stock and orders")
                self._orders = previous_orders
                try:
                    self.ledger.restore(previous_products)
                except Exception as restore_exc:
                    logger.error(f"restoring previous stock failed: {restore_exc}")
                raise
        logger.info("orders cleared")
        self._audit("inventory_reset", {"products": [p.id for p in products]})
        return products

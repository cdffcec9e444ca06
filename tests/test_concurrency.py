"""
Concurrency tests: many threads submitting and paying against one product.

These run real threads against the in-process lock backend (no mocks).
"""

import threading

import pytest

from stock_reservation.errors import InsufficientStock, InvalidState, LockAcquireTimeout, NotFound, PersistenceError
from stock_reservation.ledger import StockLedger
from stock_reservation.locks import KeyedLocks, ThreadLockBackend
from stock_reservation.models import CatalogEntry, OrderStatus
from stock_reservation.persistence import InMemoryPersistence
from stock_reservation.workflow import OrderWorkflow


def _run_together(n, target):
    barrier = threading.Barrier(n)
    results: list = [None] * n

    def worker(i):
        barrier.wait(timeout=5.0)
        try:
            results[i] = ("ok", target(i))
        except Exception as e:
            results[i] = ("err", e)

    threads = [threading.Thread(target=worker, args=(i,), name=f"worker-{i}") for i in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10.0)
    return results


def test_two_submits_of_60_against_100(workflow, ledger):
    """Exactly one of two concurrent 60-unit orders wins."""
    results = _run_together(2, lambda i: workflow.submit("P1", 60, f"u{i}", f"Buyer {i}"))

    ok = [r for kind, r in results if kind == "ok"]
    errors = [r for kind, r in results if kind == "err"]
    assert len(ok) == 1
    assert len(errors) == 1 and isinstance(errors[0], InsufficientStock)
    assert errors[0].available == 40

    p = ledger.get("P1")
    assert (p.available, p.locked, p.total) == (40, 60, 100)


def test_no_oversell_under_many_submits(workflow, ledger):
    results = _run_together(30, lambda i: workflow.submit("P1", 7, f"u{i}", f"Buyer {i}"))

    ok = [r for kind, r in results if kind == "ok"]
    assert all(isinstance(r, InsufficientStock) for kind, r in results if kind == "err")
    assert len(ok) == 14
    assert sum(o.reserved_quantity for o in ok) <= 100

    p = ledger.get("P1")
    assert (p.available, p.locked) == (2, 98)
    assert p.available + p.locked == p.total


def test_concurrent_pays_resolve_exactly_once(workflow, ledger):
    order = workflow.submit("P2", 4, "u1", "Alice")
    outcomes = ["success", "timeout", "failed", "success"]

    results = _run_together(len(outcomes), lambda i: workflow.pay(order.id, outcomes[i]))

    ok = [r for kind, r in results if kind == "ok"]
    errors = [r for kind, r in results if kind == "err"]
    assert len(ok) == 1
    assert all(isinstance(e, InvalidState) for e in errors)

    p = ledger.get("P2")
    assert p.locked == 0
    if ok[0].status is OrderStatus.PAID:
        assert (p.total, p.available, p.deducted) == (1, 1, 4)
    else:
        assert (p.total, p.available, p.deducted) == (5, 5, 0)


def test_mixed_traffic_keeps_conservation(persistence):
    ledger = StockLedger(persistence=persistence, locks=KeyedLocks(timeout=5.0))
    ledger.reset_all([CatalogEntry(id="A", name="A", total=50), CatalogEntry(id="B", name="B", total=50)])
    wf = OrderWorkflow(ledger, persistence=persistence)

    def traffic(i):
        product = "A" if i % 2 else "B"
        order = wf.submit(product, 3, f"u{i}", f"Buyer {i}")
        wf.pay(order.id, "success" if i % 3 else "timeout")
        return order.id

    _run_together(24, traffic)

    for p in ledger.snapshot():
        assert p.available >= 0 and p.locked >= 0
        assert p.available + p.locked == p.total
        assert p.locked == 0
        assert p.total + p.deducted == 50

    statuses = {o.status for o in wf.list_orders()}
    assert statuses <= {OrderStatus.PAID, OrderStatus.CANCELLED}


class NeverBackend:
    def acquire(self, key: str, timeout: float | None) -> bool:
        return False

    def release(self, key: str) -> None:
        raise AssertionError("release should not be called")


def test_lock_timeout_surfaces_as_error():
    ledger = StockLedger(locks=KeyedLocks(backend=NeverBackend(), timeout=0.1))

    with pytest.raises(LockAcquireTimeout):
        ledger.reserve("P1", 1)


def test_same_key_blocks_different_keys_do_not():
    locks = KeyedLocks(backend=ThreadLockBackend(), timeout=0.2)
    started = threading.Event()
    release = threading.Event()
    results = {}

    def holder():
        with locks.hold("stock:A"):
            started.set()
            release.wait(timeout=2.0)

    t = threading.Thread(target=holder, name="lock-holder")
    t.start()
    assert started.wait(timeout=2.0)
    try:
        with pytest.raises(LockAcquireTimeout):
            with locks.hold("stock:A"):
                pass
        with locks.hold("stock:B"):
            results["b_acquired"] = True
    finally:
        release.set()
        t.join(timeout=5.0)

    assert results.get("b_acquired") is True
    with locks.hold("stock:A"):
        pass


def test_reset_waits_for_transition_in_flight(workflow, ledger, monkeypatch):
    """A reset cannot slip between a pay's ledger call and its order update."""
    order = workflow.submit("P1", 10, "u1", "Alice")
    entered = threading.Event()
    proceed = threading.Event()
    real_release = ledger.release

    def slow_release(product_id, qty):
        entered.set()
        assert proceed.wait(timeout=5.0)
        return real_release(product_id, qty)

    monkeypatch.setattr(ledger, "release", slow_release)
    results = {}

    def pay():
        results["pay"] = workflow.pay(order.id, "timeout")

    def reset():
        results["reset"] = workflow.reset([CatalogEntry(id="P1", name="Phone", total=100)])

    def submit():
        results["late"] = workflow.submit("P1", 10, "u2", "Bob")

    t_pay = threading.Thread(target=pay, name="pay")
    t_pay.start()
    assert entered.wait(timeout=2.0)

    t_reset = threading.Thread(target=reset, name="reset")
    t_reset.start()
    t_reset.join(timeout=0.3)
    assert t_reset.is_alive()  # still waiting for the pay

    t_submit = threading.Thread(target=submit, name="late-submit")
    t_submit.start()

    proceed.set()
    for t in (t_pay, t_reset, t_submit):
        t.join(timeout=5.0)

    assert results["pay"].status is OrderStatus.CANCELLED
    late = results["late"]
    assert [o.id for o in workflow.list_orders()] == [late.id]
    p = ledger.get("P1")
    assert (p.total, p.available, p.locked) == (100, 90, 10)

    assert workflow.pay(late.id, "success").status is OrderStatus.PAID
    p = ledger.get("P1")
    assert (p.total, p.available, p.locked, p.deducted) == (90, 90, 0, 10)


def test_lock_map_does_not_grow_with_ids(workflow):
    backend = workflow.locks.backend
    baseline = len(backend)

    for i in range(200):
        with pytest.raises(NotFound):
            workflow.pay(f"ORD-nope-{i}", "success")
    for i in range(20):
        order = workflow.submit("P1", 1, f"u{i}", f"Buyer {i}")
        workflow.pay(order.id, "success")
        workflow.fulfill(order.id, "success")

    assert len(backend) == baseline


def test_lock_map_returns_to_baseline_after_contention(workflow):
    backend = workflow.locks.backend
    baseline = len(backend)

    _run_together(16, lambda i: workflow.submit("P2", 1, f"u{i}", f"Buyer {i}"))

    assert len(backend) == baseline


def test_timed_out_waiter_leaves_no_entry():
    backend = ThreadLockBackend()
    assert backend.acquire("stock:A", 0.1)

    def contender():
        assert backend.acquire("stock:A", 0.05) is False

    t = threading.Thread(target=contender, name="contender")
    t.start()
    t.join(timeout=2.0)

    assert len(backend) == 1
    backend.release("stock:A")
    assert len(backend) == 0


def test_snapshots_stay_consistent_during_traffic(workflow, ledger):
    """Readers never see a record where available + locked != total."""
    stop = threading.Event()
    torn = []
    reads = [0]

    def reader():
        while not stop.is_set():
            for p in ledger.snapshot():
                if p.available < 0 or p.locked < 0 or p.available + p.locked != p.total:
                    torn.append(p)
            reads[0] += 1

    def traffic(i):
        order = workflow.submit("P1", 2, f"u{i}", f"Buyer {i}")
        workflow.pay(order.id, "success" if i % 2 else "failed")

    t = threading.Thread(target=reader, name="snapshot-reader")
    t.start()
    try:
        _run_together(20, traffic)
    finally:
        stop.set()
        t.join(timeout=5.0)

    assert torn == []
    assert reads[0] > 0
    p = ledger.get("P1")
    assert (p.total, p.available, p.locked, p.deducted) == (80, 80, 0, 20)


def test_failing_save_does_not_leak_into_other_products_save():
    entered = threading.Event()
    proceed = threading.Event()

    class GatedPersistence(InMemoryPersistence):
        fail_next = False

        def save_products(self, products):
            if self.fail_next:
                self.fail_next = False
                entered.set()
                proceed.wait(timeout=5.0)
                raise OSError("disk full (products)")
            super().save_products(products)

    persistence = GatedPersistence()
    ledger = StockLedger(persistence=persistence, locks=KeyedLocks(timeout=2.0))
    ledger.reset_all([CatalogEntry(id="A", name="A", total=100), CatalogEntry(id="B", name="B", total=10)])
    persistence.fail_next = True
    results = {}

    def reserve(key, product_id, qty):
        try:
            results[key] = ledger.reserve(product_id, qty)
        except Exception as e:
            results[key] = e

    t_a = threading.Thread(target=reserve, args=("a", "A", 10), name="reserve-A")
    t_a.start()
    assert entered.wait(timeout=2.0)

    t_b = threading.Thread(target=reserve, args=("b", "B", 1), name="reserve-B")
    t_b.start()
    t_b.join(timeout=0.2)
    assert t_b.is_alive()  # waits for A's save to settle

    proceed.set()
    t_a.join(timeout=5.0)
    t_b.join(timeout=5.0)

    assert isinstance(results["a"], PersistenceError)
    assert results["b"].locked == 1
    saved = {p["id"]: p for p in persistence.products}
    assert (saved["A"]["available"], saved["A"]["locked"]) == (100, 0)
    assert (saved["B"]["available"], saved["B"]["locked"]) == (9, 1)

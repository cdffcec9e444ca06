from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"
    FULFILLED = "fulfilled"
    FULFILL_FAILED = "fulfill_failed"


class PayOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"


class FulfillOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class Resolution(str, Enum):
    """Which ledger call settled an order's reservation."""

    CONFIRMED = "confirmed"
    RELEASED = "released"


@dataclass(frozen=True, slots=True)
class CatalogEntry:
    id: str
    name: str
    total: int


@dataclass(frozen=True, slots=True)
class ProductStock:
    """
    Counters for one SKU.

    Records are immutable: the ledger swaps whole records, so a reader always
    sees the four counters of one product from the same moment.
    """

    id: str
    name: str
    total: int
    available: int
    locked: int = 0
    deducted: int = 0

    @classmethod
    def from_catalog(cls, entry: CatalogEntry) -> "ProductStock":
        return cls(id=entry.id, name=entry.name, total=entry.total, available=entry.total)

    def is_consistent(self) -> bool:
        return (
            self.available >= 0
            and self.locked >= 0
            and self.total >= 0
            and self.available + self.locked == self.total
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProductStock":
        return cls(
            id=str(data["id"]),
            name=data.get("name", ""),
            total=int(data["total"]),
            available=int(data["available"]),
            locked=int(data.get("locked", 0)),
            deducted=int(data.get("deducted", 0)),
        )


@dataclass(slots=True)
class Order:
    id: str
    product_id: str
    product_name: str
    quantity: int
    buyer_id: str
    buyer_name: str
    reserved_quantity: int
    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    paid_at: Optional[datetime] = None
    fulfilled_at: Optional[datetime] = None
    resolution: Optional[Resolution] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "buyer_id": self.buyer_id,
            "buyer_name": self.buyer_name,
            "reserved_quantity": self.reserved_quantity,
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "paid_at": _iso(self.paid_at),
            "fulfilled_at": _iso(self.fulfilled_at),
            "resolution": self.resolution.value if self.resolution else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Order":
        resolution = data.get("resolution")
        return cls(
            id=data["id"],
            product_id=str(data["product_id"]),
            product_name=data.get("product_name", ""),
            quantity=int(data["quantity"]),
            buyer_id=str(data["buyer_id"]),
            buyer_name=data["buyer_name"],
            reserved_quantity=int(data.get("reserved_quantity", data["quantity"])),
            status=OrderStatus(data["status"]),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            paid_at=_parse_dt(data.get("paid_at")),
            fulfilled_at=_parse_dt(data.get("fulfilled_at")),
            resolution=Resolution(resolution) if resolution else None,
        )


@dataclass(frozen=True, slots=True)
class AuditEntry:
    id: str
    timestamp: datetime
    type: str
    details: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": _iso(self.timestamp),
            "type": self.type,
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEntry":
        return cls(
            id=data["id"],
            timestamp=_parse_dt(data["timestamp"]) or utcnow(),
            type=data["type"],
            details=dict(data.get("details") or {}),
        )


@dataclass(slots=True)
class OperationResult:
    """
    What the outer boundary hands back for every operation.

    `error` is the error kind code on failure, `details` carries whatever the
    caller needs to react without re-querying (e.g. `available_stock`).
    """

    success: bool
    message: str
    data: Any = None
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success, "message": self.message}
        if self.data is not None:
            payload["data"] = self.data
        if self.error is not None:
            payload["error"] = self.error
        payload.update(self.details)
        return payload


DEFAULT_CATALOG: List[CatalogEntry] = [
    CatalogEntry(id="1", name="iPhone 14 Pro", total=100),
    CatalogEntry(id="2", name="AirPods Pro 2", total=200),
    CatalogEntry(id="3", name='MacBook Pro 14"', total=50),
]

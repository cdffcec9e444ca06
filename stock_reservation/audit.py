from __future__ import annotations

import logging
import os
import threading
import uuid
from pathlib import Path
from typing import Any, Dict, List, Protocol

from stock_reservation.models import AuditEntry, utcnow
from stock_reservation.persistence import read_json, write_json

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    """Receives one event per successful transition. Best effort only."""

    def record(self, event_type: str, details: Dict[str, Any]) -> None: ...
    def entries(self) -> List[AuditEntry]: ...


def _new_entry(event_type: str, details: Dict[str, Any]) -> AuditEntry:
    return AuditEntry(id=uuid.uuid4().hex, timestamp=utcnow(), type=event_type, details=dict(details))


class InMemoryAuditLog:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: List[AuditEntry] = []

    def record(self, event_type: str, details: Dict[str, Any]) -> None:
        entry = _new_entry(event_type, details)
        with self._lock:
            self._entries.append(entry)
        logger.info("audit %s %s", event_type, details)

    def entries(self) -> List[AuditEntry]:
        with self._lock:
            return list(self._entries)


class JsonFileAuditLog:
    """Appends entries to logs.json (whole file rewritten per record)."""

    def __init__(self, data_dir: str | os.PathLike[str]) -> None:
        self.path = Path(data_dir) / "logs.json"
        self._lock = threading.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            write_json(self.path, [])

    def record(self, event_type: str, details: Dict[str, Any]) -> None:
        entry = _new_entry(event_type, details)
        with self._lock:
            logs = read_json(self.path)
            logs.append(entry.to_dict())
            write_json(self.path, logs)
        logger.info("audit %s %s", event_type, details)

    def entries(self) -> List[AuditEntry]:
        with self._lock:
            return [AuditEntry.from_dict(e) for e in read_json(self.path)]

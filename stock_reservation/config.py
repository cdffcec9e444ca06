from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from stock_reservation.errors import InvalidArgument


@dataclass
class Settings:
    """Runtime configuration for an order desk."""
    # None = keep everything in memory
    data_dir: Optional[str] = None
    # Seconds to wait for a product/order lock
    lock_timeout: float = 3.0
    # Extra attempts when saving orders after a ledger effect
    status_write_retries: int = 3
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        settings = cls()
        if env.get("STOCK_DATA_DIR"):
            settings.data_dir = env["STOCK_DATA_DIR"]
        try:
            if env.get("STOCK_LOCK_TIMEOUT"):
                settings.lock_timeout = float(env["STOCK_LOCK_TIMEOUT"])
            if env.get("STOCK_STATUS_WRITE_RETRIES"):
                settings.status_write_retries = int(env["STOCK_STATUS_WRITE_RETRIES"])
        except ValueError as e:
            raise InvalidArgument(f"Bad numeric setting: {e}") from e
        if env.get("STOCK_LOG_LEVEL"):
            settings.log_level = env["STOCK_LOG_LEVEL"].upper()
        return settings

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from . import metrics
from .diagnostics import Diagnostics
from .ledger import DEFAULT_SHARDS, TimingLedger
from .storage import StepTimingStore

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


@dataclass
class LedgerSettings:
    """Runtime settings for the timing agent.

    db_path of None (or empty) keeps every timing in memory only.
    """
    enabled: bool = False
    db_path: Optional[str] = None
    shards: int = DEFAULT_SHARDS
    metrics_enabled: bool = True
    metrics_path: Optional[str] = None
    log_level: str = "INFO"
    worker_id: Optional[str] = None

    @classmethod
    def from_env(cls) -> "LedgerSettings":
        return cls(
            enabled=_env_flag("STEP_TIMINGS_ENABLED", "0"),
            db_path=os.getenv("STEP_TIMINGS_DB") or None,
            shards=int(os.getenv("STEP_TIMINGS_SHARDS", str(DEFAULT_SHARDS))),
            metrics_enabled=_env_flag("METRICS_ENABLED", "1"),
            metrics_path=os.getenv("STEP_TIMINGS_METRICS_FILE") or None,
            log_level=os.getenv("STEP_TIMINGS_LOG_LEVEL", "INFO").upper(),
        )


def build_ledger(settings: LedgerSettings, diagnostics: Optional[Diagnostics] = None) -> TimingLedger:
    """Construct the ledger described by settings.

    Opening the store may raise StorageInitError; callers treat that as fatal.
    """
    if settings.metrics_enabled:
        metrics.init_metrics()
    store = StepTimingStore(settings.db_path) if settings.db_path else None
    ledger = TimingLedger(store=store, diagnostics=diagnostics, shards=settings.shards,
                           worker_id=settings.worker_id)
    if store is not None:
        logger.info(f"Step timings persisted to {settings.db_path}")
    return ledger

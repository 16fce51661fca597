"""Timing agent for behavior-driven test runs.

This package houses:
- ledger: concurrent start/end bookkeeping for test steps
- storage: SQLite persistence of completed step durations
- diagnostics: sink for non-fatal timing anomalies
- plugin: pytest-bdd hook bindings
"""

from .config import LedgerSettings, build_ledger
from .diagnostics import Anomaly, AnomalyKind, Diagnostics
from .ledger import StepRecord, TimingLedger
from .storage import StepTimingStore, StorageError, StorageInitError

__all__ = [
    "Anomaly",
    "AnomalyKind",
    "Diagnostics",
    "LedgerSettings",
    "StepRecord",
    "StepTimingStore",
    "StorageError",
    "StorageInitError",
    "TimingLedger",
    "build_ledger",
]

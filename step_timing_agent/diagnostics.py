from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from . import metrics

logger = logging.getLogger(__name__)


class AnomalyKind(str, Enum):
    LOOKUP_MISS = "lookup_miss"
    PERSISTENCE_FAILURE = "persistence_failure"
    REPORT_FAILURE = "report_failure"


@dataclass(frozen=True)
class Anomaly:
    kind: AnomalyKind
    step_id: Optional[str]
    message: str


class Diagnostics:
    """Sink for non-fatal timing anomalies.

    Every anomaly is logged, counted in Prometheus and kept in memory so
    callers (and tests) can inspect what went wrong after a run.
    """

    def __init__(self, log: Optional[logging.Logger] = None) -> None:
        self.log = log or logger
        self._lock = threading.Lock()
        self._anomalies: List[Anomaly] = []

    def _record(self, anomaly: Anomaly) -> Anomaly:
        with self._lock:
            self._anomalies.append(anomaly)
        metrics.record_anomaly(anomaly.kind.value)
        return anomaly

    def lookup_miss(self, step_id: str) -> Anomaly:
        message = f"No start time recorded for step '{step_id}'"
        self.log.warning(message)
        return self._record(Anomaly(AnomalyKind.LOOKUP_MISS, step_id, message))

    def persistence_failure(self, step_id: Optional[str], error: BaseException) -> Anomaly:
        message = f"Failed to persist step '{step_id}': {error}" if step_id else f"Storage failure: {error}"
        self.log.error(message)
        return self._record(Anomaly(AnomalyKind.PERSISTENCE_FAILURE, step_id, message))

    def report_failure(self, error: BaseException) -> Anomaly:
        message = f"Failed to fetch report: {error}"
        self.log.error(message)
        return self._record(Anomaly(AnomalyKind.REPORT_FAILURE, None, message))

    @property
    def anomalies(self) -> List[Anomaly]:
        with self._lock:
            return list(self._anomalies)

    def count(self, kind: Optional[AnomalyKind] = None) -> int:
        with self._lock:
            if kind is None:
                return len(self._anomalies)
            return sum(1 for a in self._anomalies if a.kind == kind)

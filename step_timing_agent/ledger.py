from __future__ import annotations

import contextlib
import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Dict, Generic, Iterator, List, Optional, Tuple, TypeVar

from . import metrics
from .diagnostics import Diagnostics
from .storage import StepTimingStore, StorageError

logger = logging.getLogger(__name__)

K = TypeVar("K")
V = TypeVar("V")

DEFAULT_SHARDS = 16


@dataclass(frozen=True)
class StepRecord:
    step_id: str
    scenario_name: str
    step_text: str
    started_at: float
    duration: Optional[float] = None
    outcome: Optional[str] = None
    created_at: Optional[str] = None
    # perf_counter() reading taken with started_at; durations come from this clock
    monotonic_start: float = field(default=0.0, repr=False, compare=False)

    @property
    def duration_ms(self) -> Optional[int]:
        if self.duration is None:
            return None
        return int(self.duration * 1000)


class ShardedMap(Generic[K, V]):
    """Dictionary split into lock-guarded shards so unrelated keys do not contend."""

    def __init__(self, shards: int = DEFAULT_SHARDS) -> None:
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._shards: List[Tuple[threading.Lock, Dict[K, V]]] = [
            (threading.Lock(), {}) for _ in range(shards)
        ]

    def _shard(self, key: K) -> Tuple[threading.Lock, Dict[K, V]]:
        return self._shards[hash(key) % len(self._shards)]

    def set(self, key: K, value: V) -> None:
        lock, data = self._shard(key)
        with lock:
            data[key] = value

    def get(self, key: K, default: Optional[V] = None) -> Optional[V]:
        lock, data = self._shard(key)
        with lock:
            return data.get(key, default)

    def pop(self, key: K, default: Optional[V] = None) -> Optional[V]:
        lock, data = self._shard(key)
        with lock:
            return data.pop(key, default)

    def __contains__(self, key: K) -> bool:
        lock, data = self._shard(key)
        with lock:
            return key in data

    def __len__(self) -> int:
        total = 0
        for lock, data in self._shards:
            with lock:
                total += len(data)
        return total

    def values(self) -> List[V]:
        out: List[V] = []
        for lock, data in self._shards:
            with lock:
                out.extend(data.values())
        return out


class AtomicCounter:
    """Fetch-and-increment counter; every call observes a distinct value."""

    def __init__(self, start: int = 1) -> None:
        self._lock = threading.Lock()
        self._next = start

    def next(self) -> int:
        with self._lock:
            value = self._next
            self._next += 1
            return value


class TimingLedger:
    """Records start/end times of test steps and reports their durations.

    The ledger owns its own thread-safety: hooks fired from parallel workers
    may call start() and end() without coordinating. When a store is given,
    each completed step is also persisted; storage problems are reported to
    the diagnostics sink and never raised from start() or end().
    """

    def __init__(self, store: Optional[StepTimingStore] = None, diagnostics: Optional[Diagnostics] = None,
                 shards: int = DEFAULT_SHARDS, worker_id: Optional[str] = None) -> None:
        self.store = store
        # keeps ids unique when several worker processes share one store
        self.worker_id = worker_id
        self.diagnostics = diagnostics or Diagnostics()
        self._counter = AtomicCounter()
        self._in_flight: ShardedMap[str, StepRecord] = ShardedMap(shards)
        self._completed: ShardedMap[str, StepRecord] = ShardedMap(shards)

    @property
    def persistent(self) -> bool:
        return self.store is not None

    def _generate_step_id(self, scenario_name: str, step_text: str) -> str:
        if self.worker_id:
            return f"{scenario_name}-{step_text}-{self.worker_id}-{self._counter.next()}"
        return f"{scenario_name}-{step_text}-{self._counter.next()}"

    def start(self, scenario_name: str, step_text: str) -> str:
        step_id = self._generate_step_id(scenario_name, step_text)
        self._in_flight.set(step_id, StepRecord(
            step_id=step_id,
            scenario_name=scenario_name,
            step_text=step_text,
            started_at=time.time(),
            monotonic_start=time.perf_counter(),
        ))
        metrics.record_step_started()
        return step_id

    def end(self, step_id: str, scenario_name: str, step_text: str,
            outcome: Optional[str] = None) -> Optional[float]:
        """Close the step opened by start().

        Returns the duration in seconds, or None when no start was recorded
        for step_id.
        """
        started = self._in_flight.pop(step_id)
        if started is None:
            self.diagnostics.lookup_miss(step_id)
            return None

        duration = max(0.0, time.perf_counter() - started.monotonic_start)
        record = replace(started, scenario_name=scenario_name, step_text=step_text,
                         duration=duration, outcome=outcome)
        self._completed.set(step_id, record)
        metrics.record_step_completed(duration)

        if self.store is not None:
            try:
                inserted = self.store.record_step(step_id, scenario_name, step_text, record.duration_ms)
                if not inserted:
                    logger.debug(f"Step '{step_id}' already persisted")
            except StorageError as e:
                self.diagnostics.persistence_failure(step_id, e)
        return duration

    @contextlib.contextmanager
    def track(self, scenario_name: str, step_text: str) -> Iterator[str]:
        """Time the enclosed block as one step."""
        step_id = self.start(scenario_name, step_text)
        outcome = "failed"
        try:
            yield step_id
            outcome = "passed"
        finally:
            self.end(step_id, scenario_name, step_text, outcome)

    def records(self) -> List[StepRecord]:
        return self._completed.values()

    def in_flight(self) -> int:
        return len(self._in_flight)

    def report(self) -> str:
        """Human-readable listing of every completed step.

        Call once the run is quiescent. Rows come from the store when one is
        configured; if it cannot be read the in-memory records are listed.
        """
        if self.store is not None:
            try:
                rows = self.store.fetch_steps()
            except StorageError as e:
                self.diagnostics.report_failure(e)
            else:
                lines = ["=== Step Duration Report (SQLite) ==="]
                for row in rows:
                    lines.append(
                        f"StepID: {row['step_id']}, Scenario: {row['scenario_name']}, "
                        f"Step: {row['step_text']}, Duration: {row['duration_ms']} ms, "
                        f"Timestamp: {row['created_at']}"
                    )
                return "\n".join(lines)

        lines = ["=== Step Duration Report (in-memory) ==="]
        for record in self.records():
            lines.append(
                f"StepID: {record.step_id}, Scenario: {record.scenario_name}, "
                f"Step: {record.step_text}, Duration: {record.duration_ms} ms"
            )
        return "\n".join(lines)

    def close(self) -> None:
        """Release the store handle, if any. Raises StorageError when already closed."""
        if self.store is None:
            return
        self.store.close()

import logging

import pytest

from step_timing_agent import metrics
from step_timing_agent.config import LedgerSettings, build_ledger
from step_timing_agent.diagnostics import AnomalyKind, Diagnostics
from step_timing_agent.storage import StorageError, StorageInitError


def test_settings_defaults(monkeypatch):
    for name in ("STEP_TIMINGS_ENABLED", "STEP_TIMINGS_DB", "STEP_TIMINGS_SHARDS",
                 "METRICS_ENABLED", "STEP_TIMINGS_METRICS_FILE", "STEP_TIMINGS_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)

    settings = LedgerSettings.from_env()
    assert settings.enabled is False
    assert settings.db_path is None
    assert settings.shards == 16
    assert settings.metrics_enabled is True
    assert settings.metrics_path is None
    assert settings.log_level == "INFO"


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("STEP_TIMINGS_ENABLED", "yes")
    monkeypatch.setenv("STEP_TIMINGS_DB", "/tmp/x.db")
    monkeypatch.setenv("STEP_TIMINGS_SHARDS", "4")
    monkeypatch.setenv("METRICS_ENABLED", "off")
    monkeypatch.setenv("STEP_TIMINGS_LOG_LEVEL", "debug")

    settings = LedgerSettings.from_env()
    assert settings.enabled is True
    assert settings.db_path == "/tmp/x.db"
    assert settings.shards == 4
    assert settings.metrics_enabled is False
    assert settings.log_level == "DEBUG"


def test_build_ledger_in_memory():
    ledger = build_ledger(LedgerSettings(enabled=True))
    assert ledger.persistent is False


def test_build_ledger_with_store(tmp_path):
    ledger = build_ledger(LedgerSettings(enabled=True, db_path=str(tmp_path / "t.db")))
    assert ledger.persistent is True
    ledger.close()


def test_build_ledger_propagates_init_failure(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    with pytest.raises(StorageInitError):
        build_ledger(LedgerSettings(enabled=True, db_path=str(blocker / "sub" / "t.db")))


def test_diagnostics_records_and_logs(caplog):
    diagnostics = Diagnostics()
    with caplog.at_level(logging.WARNING):
        diagnostics.lookup_miss("a-b-1")
        diagnostics.persistence_failure("a-b-2", StorageError("disk full"))
        diagnostics.report_failure(StorageError("closed"))

    assert diagnostics.count() == 3
    assert diagnostics.count(AnomalyKind.LOOKUP_MISS) == 1
    assert [a.kind for a in diagnostics.anomalies] == [
        AnomalyKind.LOOKUP_MISS,
        AnomalyKind.PERSISTENCE_FAILURE,
        AnomalyKind.REPORT_FAILURE,
    ]
    assert "disk full" in caplog.text
    assert "Failed to fetch report: closed" in caplog.text


def test_diagnostics_accepts_custom_logger(caplog):
    custom = logging.getLogger("timings.custom")
    diagnostics = Diagnostics(log=custom)
    with caplog.at_level(logging.WARNING, logger="timings.custom"):
        diagnostics.lookup_miss("x-1")
    assert any(r.name == "timings.custom" for r in caplog.records)


def test_anomalies_are_counted_in_metrics():
    metrics.init_metrics()
    registry = metrics._get_registry()
    labels = {"kind": "lookup_miss"}
    before = registry.get_sample_value("step_timings_anomalies_total", labels) or 0.0
    Diagnostics().lookup_miss("x-1")
    after = registry.get_sample_value("step_timings_anomalies_total", labels)
    assert after == before + 1
    assert b"step_timings_anomalies_total" in metrics.metrics_payload_bytes()


def test_build_ledger_passes_worker_id():
    ledger = build_ledger(LedgerSettings(enabled=True, worker_id="gw2"))
    assert ledger.start("S", "step") == "S-step-gw2-1"

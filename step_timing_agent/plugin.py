"""pytest plugin binding the timing ledger to pytest-bdd's step lifecycle hooks.

Enable with ``--step-timings`` (or STEP_TIMINGS_ENABLED=1). Durations are kept
in memory unless ``--step-timings-db`` (or STEP_TIMINGS_DB) names a SQLite file.
"""
from __future__ import annotations

import logging
import threading
from typing import Dict, Optional, Tuple

import pytest

from . import metrics
from .config import LedgerSettings, build_ledger
from .ledger import TimingLedger
from .storage import StorageError, StorageInitError

logger = logging.getLogger(__name__)

PLUGIN_NAME = "step_timings"


class StepTimingPlugin:
    """Starts a ledger step before each BDD step and ends it afterwards.

    Scenario names are cached per test item between the before-scenario and
    after-scenario hooks. Step ids returned by the ledger are kept until the
    matching after-step or step-error hook.
    """

    def __init__(self, ledger: TimingLedger, settings: LedgerSettings) -> None:
        self.ledger = ledger
        self.settings = settings
        self._lock = threading.Lock()
        self._scenario_names: Dict[str, str] = {}
        self._step_ids: Dict[Tuple[str, int], str] = {}

    def _scenario_name(self, request, scenario) -> str:
        with self._lock:
            return self._scenario_names.get(request.node.nodeid, scenario.name)

    @pytest.hookimpl(optionalhook=True)
    def pytest_bdd_before_scenario(self, request, feature, scenario):
        with self._lock:
            self._scenario_names[request.node.nodeid] = scenario.name

    @pytest.hookimpl(optionalhook=True)
    def pytest_bdd_after_scenario(self, request, feature, scenario):
        with self._lock:
            self._scenario_names.pop(request.node.nodeid, None)

    @pytest.hookimpl(optionalhook=True)
    def pytest_bdd_before_step(self, request, feature, scenario, step, step_func):
        step_id = self.ledger.start(self._scenario_name(request, scenario), step.name)
        with self._lock:
            self._step_ids[(request.node.nodeid, id(step))] = step_id

    @pytest.hookimpl(optionalhook=True)
    def pytest_bdd_after_step(self, request, feature, scenario, step, step_func, step_func_args):
        self._finish(request, scenario, step, "passed")

    @pytest.hookimpl(optionalhook=True)
    def pytest_bdd_step_error(self, request, feature, scenario, step, step_func, step_func_args, exception):
        self._finish(request, scenario, step, "failed")

    def _finish(self, request, scenario, step, outcome: str) -> None:
        with self._lock:
            step_id = self._step_ids.pop((request.node.nodeid, id(step)), None)
        if step_id is None:
            logger.debug(f"No step id tracked for '{step.name}' in {request.node.nodeid}")
            return
        self.ledger.end(step_id, self._scenario_name(request, scenario), step.name, outcome)

    def pytest_terminal_summary(self, terminalreporter):
        terminalreporter.write_sep("=", "step timings")
        for line in self.ledger.report().splitlines():
            terminalreporter.write_line(line)
        anomalies = self.ledger.diagnostics.count()
        if anomalies:
            terminalreporter.write_line(f"{anomalies} timing anomalies recorded", yellow=True)

    def shutdown(self) -> None:
        """Flush metrics and release the store. Failures are logged only."""
        if self.settings.metrics_path:
            try:
                metrics.write_metrics_file(self.settings.metrics_path)
            except OSError as e:
                logger.error(f"Failed to write metrics to {self.settings.metrics_path}: {e}")
        try:
            self.ledger.close()
        except StorageError as e:
            logger.error(f"Failed to close step timing store: {e}")


def pytest_addoption(parser):
    group = parser.getgroup("step-timings", "BDD step timing")
    group.addoption(
        "--step-timings",
        action="store_true",
        default=None,
        help="Record the duration of every pytest-bdd step and print a report.",
    )
    group.addoption(
        "--step-timings-db",
        default=None,
        metavar="PATH",
        help="Persist step durations to this SQLite database.",
    )
    group.addoption(
        "--step-timings-in-memory",
        action="store_true",
        default=False,
        help="Keep step durations in memory only, ignoring STEP_TIMINGS_DB.",
    )
    group.addoption(
        "--step-timings-metrics",
        default=None,
        metavar="PATH",
        help="Write Prometheus metrics for the run to this file.",
    )


def _worker_id(config) -> Optional[str]:
    """xdist worker name (gw0, gw1, ...) or None in the controller or a plain run"""
    workerinput = getattr(config, "workerinput", None)
    if not workerinput:
        return None
    return workerinput.get("workerid")


def _settings_from_config(config) -> LedgerSettings:
    settings = LedgerSettings.from_env()
    if config.getoption("step_timings"):
        settings.enabled = True
    db_path: Optional[str] = config.getoption("step_timings_db")
    if db_path:
        settings.enabled = True
        settings.db_path = db_path
    if config.getoption("step_timings_in_memory"):
        settings.enabled = True
        settings.db_path = None
    metrics_path: Optional[str] = config.getoption("step_timings_metrics")
    if metrics_path:
        settings.metrics_path = metrics_path
    settings.worker_id = _worker_id(config)
    return settings


def pytest_configure(config):
    settings = _settings_from_config(config)
    if not settings.enabled:
        return
    try:
        ledger = build_ledger(settings)
    except StorageInitError as e:
        raise pytest.UsageError(str(e)) from e
    config.pluginmanager.register(StepTimingPlugin(ledger, settings), PLUGIN_NAME)


def pytest_unconfigure(config):
    plugin = config.pluginmanager.get_plugin(PLUGIN_NAME)
    if plugin is None:
        return
    plugin.shutdown()
    config.pluginmanager.unregister(plugin, PLUGIN_NAME)

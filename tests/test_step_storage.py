import threading

import pytest

from step_timing_agent.storage import StepTimingStore, StorageError, StorageInitError


def test_schema_created_and_rows_fetched(tmp_path):
    store = StepTimingStore(str(tmp_path / "timings.db"))
    assert store.record_step("Login-I click submit-1", "Login", "I click submit", 152) is True

    rows = store.fetch_steps()
    assert len(rows) == 1
    row = rows[0]
    assert row["step_id"] == "Login-I click submit-1"
    assert row["scenario_name"] == "Login"
    assert row["step_text"] == "I click submit"
    assert row["duration_ms"] == 152
    assert row["created_at"]  # filled by the column default
    store.close()


def test_duplicate_step_id_is_ignored(tmp_path):
    store = StepTimingStore(str(tmp_path / "timings.db"))
    assert store.record_step("s-a-1", "s", "a", 10) is True
    assert store.record_step("s-a-1", "s", "a", 99) is False

    assert store.count_steps("s-a-1") == 1
    assert store.fetch_steps()[0]["duration_ms"] == 10
    store.close()


def test_table_survives_reopen(tmp_path):
    db_path = str(tmp_path / "timings.db")
    first = StepTimingStore(db_path)
    first.record_step("s-a-1", "s", "a", 5)
    first.close()

    second = StepTimingStore(db_path)
    assert second.count_steps() == 1
    second.close()


def test_creates_parent_directories(tmp_path):
    db_path = tmp_path / "nested" / "dir" / "timings.db"
    store = StepTimingStore(str(db_path))
    assert db_path.parent.is_dir()
    store.close()


def test_in_memory_database():
    store = StepTimingStore(":memory:")
    store.record_step("s-a-1", "s", "a", 1)
    assert store.count_steps() == 1
    store.close()


def test_unopenable_path_raises_init_error(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")

    with pytest.raises(StorageInitError):
        StepTimingStore(str(blocker / "sub" / "timings.db"))


def test_init_error_is_a_storage_error():
    assert issubclass(StorageInitError, StorageError)


def test_close_twice_raises(tmp_path):
    store = StepTimingStore(str(tmp_path / "timings.db"))
    assert store.closed is False
    store.close()
    assert store.closed is True

    with pytest.raises(StorageError):
        store.close()


def test_operations_after_close_raise(tmp_path):
    store = StepTimingStore(str(tmp_path / "timings.db"))
    store.close()

    with pytest.raises(StorageError):
        store.record_step("s-a-1", "s", "a", 1)
    with pytest.raises(StorageError):
        store.fetch_steps()
    with pytest.raises(StorageError):
        store.count_steps()


def test_concurrent_writers(tmp_path):
    store = StepTimingStore(str(tmp_path / "timings.db"))

    def write(worker):
        for i in range(50):
            store.record_step(f"w{worker}-step-{i}", f"w{worker}", "step", i)
            # every worker also races on one shared id
            store.record_step("shared-step-0", "shared", "step", 0)

    threads = [threading.Thread(target=write, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert store.count_steps() == 4 * 50 + 1
    assert store.count_steps("shared-step-0") == 1
    store.close()

from __future__ import annotations

from datetime import datetime

import pytest

from config import TIMEZONE, StorageSettings
from db import (
    MemoryStorage,
    SQLiteStorage,
    StorageError,
    format_timestamp,
    open_storage,
    retention_cutoff,
)


@pytest.fixture
def sqlite_storage(tmp_path) -> SQLiteStorage:
    return SQLiteStorage(str(tmp_path / "data" / "piklima.db"))


def test_write_and_read_back_in_insertion_order(sqlite_storage) -> None:
    ts = datetime.now(TIMEZONE).replace(second=0, microsecond=0)
    stamp = format_timestamp(ts)
    sqlite_storage.write("bmp280", "temp", 21500, timestamp=ts)
    sqlite_storage.write("bmp280", "pressure", 1013, timestamp=ts)

    records = sqlite_storage.read("bmp280")

    assert [(r.topic, r.value) for r in records] == [("temp", "21500"), ("pressure", "1013")]
    assert {r.ts for r in records} == {stamp}
    assert sqlite_storage.view("bmp280") == {
        "temp": {stamp: "21500"},
        "pressure": {stamp: "1013"},
    }


def test_write_without_timestamp_uses_current_minute(sqlite_storage) -> None:
    before = format_timestamp()
    sqlite_storage.write("core", "temp-m", 42000)
    after = format_timestamp()

    (record,) = sqlite_storage.read("core")
    assert before <= record.ts <= after


def test_empty_topic_is_rejected(sqlite_storage) -> None:
    with pytest.raises(StorageError):
        sqlite_storage.write("core", "", 1)


@pytest.mark.parametrize("module", ["", "core; DROP TABLE x", "amb-temp"])
def test_invalid_module_names_are_rejected(sqlite_storage, module) -> None:
    with pytest.raises(StorageError):
        sqlite_storage.write(module, "temp", 1)


def test_reading_unknown_module_raises(sqlite_storage) -> None:
    with pytest.raises(StorageError):
        sqlite_storage.read("nothing")


def test_cleanup_drops_module_table(sqlite_storage) -> None:
    sqlite_storage.write("htu21", "humidity", 45500)

    sqlite_storage.cleanup("htu21")

    with pytest.raises(StorageError):
        sqlite_storage.read("htu21")
    sqlite_storage.write("htu21", "humidity", 46000)
    assert len(sqlite_storage.read("htu21")) == 1


def test_read_only_storage_ignores_writes(tmp_path) -> None:
    path = str(tmp_path / "piklima.db")
    SQLiteStorage(path).write("core", "temp-m", 41000)

    read_only = SQLiteStorage(path, read_only=True)
    read_only.write("core", "temp-m", 99000)

    assert [r.value for r in read_only.read("core")] == ["41000"]


def test_prune_old_removes_expired_rows(sqlite_storage) -> None:
    # der erste Schreibvorgang bereinigt bereits, daher zuerst ein aktueller Wert
    sqlite_storage.write("core", "temp-m", 40000)
    sqlite_storage.write(
        "core", "temp-m", 39000, timestamp=datetime(2000, 1, 1, 0, 0, tzinfo=TIMEZONE)
    )
    assert len(sqlite_storage.read("core")) == 2

    sqlite_storage.prune_old("core")

    assert [r.value for r in sqlite_storage.read("core")] == ["40000"]


@pytest.mark.parametrize(
    "now, months, expected",
    [
        (datetime(2024, 8, 15), 6, datetime(2024, 2, 15)),
        (datetime(2024, 3, 10), 6, datetime(2023, 9, 10)),
        (datetime(2024, 3, 31), 1, datetime(2024, 2, 29)),
        (datetime(2023, 3, 31), 1, datetime(2023, 2, 28)),
        (datetime(2024, 1, 5), 12, datetime(2023, 1, 5)),
        (datetime(2024, 1, 5), 13, datetime(2022, 12, 5)),
    ],
)
def test_retention_cutoff(now, months, expected) -> None:
    assert retention_cutoff(now, months) == expected


def test_memory_storage_has_same_view() -> None:
    storage = MemoryStorage()
    ts = datetime(2024, 5, 1, 8, 0, tzinfo=TIMEZONE)
    storage.write("system", "load-1m", 12, timestamp=ts)
    storage.write("system", "load-1m", None, timestamp=ts)

    assert storage.view("system") == {"load-1m": {"2024-05-01 08:00": ""}}
    with pytest.raises(StorageError):
        storage.read("smc768")
    with pytest.raises(StorageError):
        storage.write("system", "", 1)

    storage.cleanup("system")
    with pytest.raises(StorageError):
        storage.view("system")


def test_open_storage_selects_backend(tmp_path) -> None:
    sqlite_settings = StorageSettings(type="sqlite", path=str(tmp_path / "a.db"))

    assert isinstance(open_storage(sqlite_settings), SQLiteStorage)
    assert isinstance(open_storage(StorageSettings(type="memory")), MemoryStorage)
    assert open_storage(StorageSettings(type="none")) is None
    with pytest.raises(StorageError):
        open_storage(StorageSettings(type="postgres"))

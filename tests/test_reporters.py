from __future__ import annotations

from pathlib import Path

import pytest

from db import MemoryStorage, StorageError
from reporters import (
    Bmp280Reporter,
    CollectError,
    Dht22Reporter,
    Htu21Reporter,
    ReporterInitError,
    Smc768Reporter,
    SystemReporter,
    load_modules,
    module_names,
    parse_loadavg,
    parse_time_in_state,
)


class FakeEnvDevice:
    """Liefert feste Werte wie die Adafruit-Treiber."""

    def __init__(self, temperature=21.5, pressure=1013.25, humidity=45.5) -> None:
        self._temperature = temperature
        self.pressure = pressure
        self.relative_humidity = humidity
        self.humidity = humidity
        self.fail = False

    @property
    def temperature(self):
        if self.fail:
            raise OSError("I2C read failed")
        return self._temperature


class FlakyDht:
    def __init__(self, failures: int) -> None:
        self._failures = failures
        self.humidity = 50.0
        self.exited = False

    def exit(self) -> None:
        self.exited = True

    @property
    def temperature(self):
        if self._failures > 0:
            self._failures -= 1
            raise RuntimeError("Checksum did not validate. Try again.")
        return 20.0


class BrokenStorage:
    def write(self, module, topic, value, timestamp=None):
        raise StorageError("database is locked")


def test_bmp280_converts_to_fixed_point_and_feeds_store(store) -> None:
    reporter = Bmp280Reporter(FakeEnvDevice(), store=store)

    values = reporter.collect()

    assert values == {"pressure": 1013, "temp": 21500}
    assert reporter.report() == {"pressure": [1013], "temp": [21500]}
    assert store.last("amb-temp") == 21500
    assert store.last("pressure") == 1013
    assert reporter.name == "bmp280"


def test_htu21_maps_only_humidity_into_store(store) -> None:
    reporter = Htu21Reporter(FakeEnvDevice(temperature=22.25, humidity=55.125), store=store)

    reporter.collect()

    assert reporter.report() == {"humidity": [55125], "temp": [22250]}
    assert store.last("humidity") == 55125
    assert store.length("amb-temp") == 0


def test_failed_collect_keeps_history_and_recovers(store) -> None:
    device = FakeEnvDevice()
    reporter = Bmp280Reporter(device, store=store)
    reporter.collect()

    device.fail = True
    for _ in range(2):
        with pytest.raises(CollectError):
            reporter.collect()
        assert len(reporter.report()["temp"]) == 1
        assert store.length("amb-temp") == 1

    device.fail = False
    reporter.collect()

    assert len(reporter.report()["temp"]) == 2
    assert store.length("amb-temp") == 2


def test_collect_forwards_values_to_storage() -> None:
    storage = MemoryStorage()
    reporter = Bmp280Reporter(FakeEnvDevice(), storage=storage)

    reporter.collect()

    view = storage.view("bmp280")
    assert list(view["pressure"].values()) == ["1013"]
    assert list(view["temp"].values()) == ["21500"]


def test_storage_errors_do_not_fail_collect(store) -> None:
    reporter = Bmp280Reporter(FakeEnvDevice(), store=store, storage=BrokenStorage())

    values = reporter.collect()

    assert values["temp"] == 21500
    assert store.last("amb-temp") == 21500


def test_history_is_bounded() -> None:
    reporter = Htu21Reporter(FakeEnvDevice(), history_limit=3)

    for _ in range(5):
        reporter.collect()

    assert len(reporter.report()["humidity"]) == 3


def test_report_is_a_copy() -> None:
    reporter = Htu21Reporter(FakeEnvDevice())
    reporter.collect()

    report = reporter.report()
    report["humidity"].append(1)

    assert reporter.report()["humidity"] == [45500]


def test_dht22_retries_and_adds_dew_point() -> None:
    reporter = Dht22Reporter(FlakyDht(failures=2), retries=3, retry_delay=0)

    values = reporter.collect()

    assert values["temp"] == 20000
    assert values["humidity"] == 50000
    assert 9200 < values["dew-point"] < 9400


def test_dht22_gives_up_after_retries() -> None:
    reporter = Dht22Reporter(FlakyDht(failures=5), retries=3, retry_delay=0)

    with pytest.raises(CollectError):
        reporter.collect()
    assert reporter.report() == {"temp": [], "humidity": [], "dew-point": []}


def test_dht22_release_exits_device() -> None:
    device = FlakyDht(failures=0)
    reporter = Dht22Reporter(device, retry_delay=0)

    reporter.release()

    assert device.exited is True
    Htu21Reporter(FakeEnvDevice()).release()


def test_parse_time_in_state() -> None:
    text = "600000 200116\n700000 35684\n\n1800000 2726\n"

    assert parse_time_in_state(text) == {"600": 2001, "700": 356, "1800": 27}


def test_parse_loadavg() -> None:
    assert parse_loadavg("0.12 0.24 0.30 1/123 4567\n") == {
        "load-1m": 12,
        "load-5m": 24,
        "load-15m": 30,
    }
    with pytest.raises(ValueError):
        parse_loadavg("garbage")


def _system_files(tmp_path: Path) -> tuple[Path, Path]:
    time_in_state = tmp_path / "time_in_state"
    time_in_state.write_text("600000 200116\n700000 35684\n", encoding="utf-8")
    loadavg = tmp_path / "loadavg"
    loadavg.write_text("0.12 0.24 0.30 1/123 4567\n", encoding="utf-8")
    return time_in_state, loadavg


def test_system_reporter_collects_histogram_and_load(tmp_path) -> None:
    time_in_state, loadavg = _system_files(tmp_path)
    reporter = SystemReporter(str(time_in_state), str(loadavg))

    reporter.collect()
    reporter.collect()

    assert reporter.report() == {
        "time_in_state": {"600": 2001, "700": 356},
        "load_avg": {"1m": [12, 12], "5m": [24, 24], "15m": [30, 30]},
    }


def test_system_reporter_without_cpufreq_still_reports_load(tmp_path) -> None:
    _, loadavg = _system_files(tmp_path)
    reporter = SystemReporter(str(tmp_path / "missing"), str(loadavg))

    reporter.collect()

    assert reporter.report()["time_in_state"] == {}
    assert reporter.report()["load_avg"]["1m"] == [12]


def test_system_reporter_without_loadavg_fails_tick(tmp_path) -> None:
    time_in_state, _ = _system_files(tmp_path)
    reporter = SystemReporter(str(time_in_state), str(tmp_path / "missing"))

    with pytest.raises(CollectError):
        reporter.collect()


def test_smc768_reads_only_allowed_sensors(tmp_path) -> None:
    base = tmp_path / "applesmc.768"
    base.mkdir()
    (base / "temp1_label").write_text("TC0C\n", encoding="utf-8")
    (base / "temp1_input").write_text("45000\n", encoding="utf-8")
    (base / "temp2_label").write_text("TB0T\n", encoding="utf-8")
    (base / "temp2_input").write_text("30000\n", encoding="utf-8")
    (base / "fan1_input").write_text("2000\n", encoding="utf-8")
    throttle = tmp_path / "core_throttle_total_time_ms"
    throttle.write_text("12\n", encoding="utf-8")
    storage = MemoryStorage()

    reporter = Smc768Reporter(str(base), str(throttle), storage=storage)
    values = reporter.collect()

    assert values == {"TC0C": 45000, "Exhaust": 2000, "ThrottleTime": 12}
    assert reporter.report() == {"TC0C": [45000], "Exhaust": [2000], "ThrottleTime": [12]}
    assert set(storage.view("smc768")) == {"TC0C", "Exhaust", "ThrottleTime"}


def test_smc768_without_sensors_fails_tick(tmp_path) -> None:
    reporter = Smc768Reporter(str(tmp_path), str(tmp_path / "missing"))

    with pytest.raises(CollectError):
        reporter.collect()


def test_load_modules_drops_modules_that_fail_to_initialise() -> None:
    def broken():
        raise ReporterInitError("no device at 0x76")

    modules = load_modules(
        [
            ("bmp280", broken),
            ("htu21", lambda: Htu21Reporter(FakeEnvDevice())),
            ("dht22", lambda: Dht22Reporter(FlakyDht(0), retry_delay=0)),
        ]
    )

    assert isinstance(modules, tuple)
    assert module_names(modules) == "htu21 dht22"

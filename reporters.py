"""Sensor-Module ("Reporter") mit eigener kurzer Historie.

Jeder Reporter liest in ``sense()`` seinen Sensor (ohne Sperre), rechnet in
Ganzzahlen um und hängt die Werte in ``collect()`` unter seiner eigenen Sperre
an. Zugeordnete Werte landen zusätzlich als Rohwerte im gemeinsamen
``TimeSeriesStore`` und, falls vorhanden, im Datenspeicher.
"""
from __future__ import annotations

import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Iterable, Mapping

from config import (
    MEASUREMENT_RETRIES,
    MEASUREMENT_RETRY_DELAY_SECONDS,
    REPORTER_HISTORY_LIMIT,
    SMC768_PATH,
    SMC768_THROTTLE_PATH,
    SYSTEM_LOADAVG_PATH,
    SYSTEM_TIME_IN_STATE_PATH,
)
from db import StorageError
from sensors import calculate_dew_point_mc, read_virtual_file, to_milli

LOGGER = logging.getLogger(__name__)


class ReporterInitError(Exception):
    """Sensor konnte beim Start nicht initialisiert werden."""


class CollectError(Exception):
    """Einzelne Messung fehlgeschlagen; der Reporter bleibt aktiv."""


class Reporter(ABC):
    """Gemeinsame Basis: Name, Messung (``collect``) und Bericht (``report``)."""

    name = ""
    series: tuple[str, ...] = ()
    store_metrics: Mapping[str, str] = {}

    def __init__(
        self,
        store=None,
        storage=None,
        store_metrics: Mapping[str, str] | None = None,
        history_limit: int = REPORTER_HISTORY_LIMIT,
    ) -> None:
        self._data: dict[str, list[int]] = {key: [] for key in self.series}
        self._lock = threading.Lock()
        self._store = store
        self._storage = storage
        self._store_metrics = dict(self.store_metrics if store_metrics is None else store_metrics)
        self._history_limit = history_limit

    @abstractmethod
    def sense(self) -> dict[str, int]:
        """Liest den Sensor und liefert ``{teilmetrik: wert}`` in Ganzzahlen."""

    def collect(self) -> dict[str, int]:
        try:
            values = self.sense()
        except CollectError:
            raise
        except (OSError, RuntimeError, ValueError) as exc:
            raise CollectError(f"{self.name}: {exc}") from exc

        with self._lock:
            for key, value in values.items():
                history = self._data.setdefault(key, [])
                history.append(value)
                if len(history) > self._history_limit:
                    del history[: len(history) - self._history_limit]

        if self._store is not None:
            mapped = {
                self._store_metrics[key]: value
                for key, value in values.items()
                if key in self._store_metrics
            }
            if mapped:
                self._store.append_many(mapped)

        self._persist(values)
        return values

    def report(self) -> dict:
        with self._lock:
            return {key: list(values) for key, values in self._data.items()}

    def release(self) -> None:
        """Gibt das Gerät beim Beenden frei; Standard: nichts zu tun."""

    def _persist(self, values: Mapping[str, int]) -> None:
        if self._storage is None:
            return
        for topic, value in values.items():
            try:
                self._storage.write(self.name, topic, value)
            except StorageError:
                LOGGER.exception("%s: %s konnte nicht gespeichert werden", self.name, topic)


class Bmp280Reporter(Reporter):
    """Umgebungstemperatur (m°C) und Luftdruck (hPa) vom BMP280."""

    name = "bmp280"
    series = ("pressure", "temp")
    store_metrics = {"temp": "amb-temp", "pressure": "pressure"}

    def __init__(self, device, **kwargs) -> None:
        super().__init__(**kwargs)
        self._device = device

    def sense(self) -> dict[str, int]:
        temperature = to_milli(self._device.temperature, "Temperatur")
        pressure = round(float(self._device.pressure))
        LOGGER.debug("BMP280: %s m°C | %s hPa", temperature, pressure)
        return {"pressure": pressure, "temp": temperature}


class Htu21Reporter(Reporter):
    """Relative Luftfeuchte (mRH, 100 % = 100000) vom HTU21."""

    name = "htu21"
    series = ("humidity", "temp")
    store_metrics = {"humidity": "humidity"}

    def __init__(self, device, **kwargs) -> None:
        super().__init__(**kwargs)
        self._device = device

    def sense(self) -> dict[str, int]:
        humidity = to_milli(self._device.relative_humidity, "Luftfeuchtigkeit")
        temperature = to_milli(self._device.temperature, "Temperatur")
        LOGGER.debug("HTU21: %s m°C | %s mRH", temperature, humidity)
        return {"humidity": humidity, "temp": temperature}


class Dht22Reporter(Reporter):
    """DHT22 mit Wiederholungen, inklusive Taupunkt."""

    name = "dht22"
    series = ("temp", "humidity", "dew-point")

    def __init__(
        self,
        device,
        retries: int = MEASUREMENT_RETRIES,
        retry_delay: float = MEASUREMENT_RETRY_DELAY_SECONDS,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self._device = device
        self._retries = retries
        self._retry_delay = retry_delay

    def sense(self) -> dict[str, int]:
        for attempt in range(1, self._retries + 1):
            try:
                temperature = to_milli(self._device.temperature, "Temperatur")
                humidity = to_milli(self._device.humidity, "Luftfeuchtigkeit")
                return {
                    "temp": temperature,
                    "humidity": humidity,
                    "dew-point": calculate_dew_point_mc(temperature, humidity),
                }
            except (RuntimeError, ValueError) as exc:
                # der DHT22 liefert regelmäßig Prüfsummenfehler
                LOGGER.warning(
                    "DHT22 Lesefehler (Versuch %s/%s): %s", attempt, self._retries, exc
                )
                time.sleep(self._retry_delay)
        raise CollectError(f"DHT22 konnte nach {self._retries} Versuchen nicht gelesen werden")

    def release(self) -> None:
        try:
            self._device.exit()
        except (OSError, RuntimeError):
            LOGGER.exception("DHT22 konnte nicht freigegeben werden")


class SystemReporter(Reporter):
    """CPU-Frequenzverteilung und Lastmittel aus /sys und /proc.

    Lastmittel werden in Hundertsteln gespeichert (0.12 -> 12).
    """

    name = "system"
    series = ("load-1m", "load-5m", "load-15m")

    def __init__(
        self,
        time_in_state_path: str = SYSTEM_TIME_IN_STATE_PATH,
        loadavg_path: str = SYSTEM_LOADAVG_PATH,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self._time_in_state_path = time_in_state_path
        self._loadavg_path = loadavg_path
        self._time_in_state: dict[str, int] = {}

    def sense(self) -> dict[str, int]:
        try:
            time_in_state = parse_time_in_state(read_virtual_file(self._time_in_state_path))
        except (OSError, ValueError) as exc:
            LOGGER.error("CPU time_in_state nicht lesbar: %s", exc)
        else:
            with self._lock:
                self._time_in_state = time_in_state

        return parse_loadavg(read_virtual_file(self._loadavg_path))

    def report(self) -> dict:
        with self._lock:
            return {
                "time_in_state": dict(self._time_in_state),
                "load_avg": {
                    key.split("-", 1)[1]: list(values) for key, values in self._data.items()
                },
            }


def parse_time_in_state(text: str) -> dict[str, int]:
    """``<kHz> <10ms>`` je Zeile -> ``{MHz: Sekunden}``."""
    out: dict[str, int] = {}
    for line in text.splitlines():
        parts = line.split()
        if len(parts) != 2:
            continue
        frequency_khz, ticks = parts
        out[str(int(frequency_khz) // 1000)] = int(ticks) // 100
    return out


def parse_loadavg(text: str) -> dict[str, int]:
    parts = text.split()
    if len(parts) != 5:
        raise ValueError(f"Ungültiges loadavg-Format: {text!r}")
    return {
        key: round(float(value) * 100)
        for key, value in zip(("load-1m", "load-5m", "load-15m"), parts)
    }


# Erlaubte SMC-Sensoren (alle anderen Labels werden ignoriert)
SMC_SENSORS = {
    "TA0V": "Ambient virtual temperature",
    "TC0C": "CPU core temperature",
    "TCGC": "GPU core temperature",
    "TH1A": "Drive 0 temperature",
    "TM0P": "Memory proximity temperature",
    "TS0V": "Enclosure virtual temperature",
    "TW0P": "Wireless module temperature",
    "Te0T": "PCIe switch diode temperature",
    "Tm0P": "Mainboard proximity temperature",
    "Exhaust": "Exhaust fan speed (RPM)",
    "ThrottleTime": "Core throttle time (ms)",
}

SMC_MAX_INPUTS = 60


class Smc768Reporter(Reporter):
    """Apple-SMC-Sensoren (applesmc.768), gefiltert auf ``SMC_SENSORS``."""

    name = "smc768"
    series = ()

    def __init__(
        self,
        base_path: str = SMC768_PATH,
        throttle_path: str = SMC768_THROTTLE_PATH,
        sensors: Iterable[str] = tuple(SMC_SENSORS),
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self._base_path = base_path
        self._throttle_path = throttle_path
        self._sensors = frozenset(sensors)

    def _read_int(self, path: str) -> int | None:
        try:
            return int(read_virtual_file(path).strip())
        except (OSError, ValueError):
            return None

    def sense(self) -> dict[str, int]:
        data: dict[str, int] = {}
        for index in range(1, SMC_MAX_INPUTS + 1):
            label_path = os.path.join(self._base_path, f"temp{index}_label")
            try:
                label = read_virtual_file(label_path).strip()
            except OSError:
                continue
            if label not in self._sensors:
                continue
            value = self._read_int(os.path.join(self._base_path, f"temp{index}_input"))
            if value is not None:
                data[label] = value

        extras = {
            "Exhaust": os.path.join(self._base_path, "fan1_input"),
            "ThrottleTime": self._throttle_path,
        }
        for label, path in extras.items():
            if label not in self._sensors:
                continue
            value = self._read_int(path)
            if value is not None:
                data[label] = value

        if not data:
            raise CollectError(f"Keine SMC-Sensoren unter {self._base_path} lesbar")
        return data


def load_modules(
    loaders: Iterable[tuple[str, Callable[[], Reporter]]]
) -> tuple[Reporter, ...]:
    """Baut die Modulliste einmalig; Module mit Init-Fehler fallen dauerhaft raus."""
    modules: list[Reporter] = []
    for name, loader in loaders:
        try:
            modules.append(loader())
        except (ReporterInitError, OSError, RuntimeError, ValueError) as exc:
            LOGGER.error("Modul %s konnte nicht initialisiert werden: %s", name, exc)
            continue
        LOGGER.info("Modul %s aktiv", name)
    return tuple(modules)


def module_names(modules: Iterable[Reporter]) -> str:
    return " ".join(module.name for module in modules)

"""Hintergrundschleifen für Messung, Aggregation und Module."""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from config import CPU_TEMP_PATH, MODULE_COLLECT_SECONDS, SAMPLE_INTERVAL_SECONDS
from reporters import CollectError, Reporter
from sensors import read_cpu_temperature_mc
from tachymeter import Tachymeter
from timeseries import TimeSeriesStore

LOGGER = logging.getLogger(__name__)


def run_periodic(
    stop_event: threading.Event,
    interval: float,
    job: Callable[[], object],
    name: str,
    clock: Callable[[], float] = time.monotonic,
) -> int:
    """Ruft ``job`` im festen Takt auf, bis ``stop_event`` gesetzt ist.

    Der Takt hängt an festen Zeitpunkten, nicht am Ende des letzten Laufs.
    Verspätete Takte werden sofort nachgeholt, nie übersprungen. Fehler im Job
    werden geloggt, die Schleife läuft weiter. Liefert die Anzahl der Läufe.
    """
    runs = 0
    next_tick = clock() + interval
    while not stop_event.wait(max(0.0, next_tick - clock())):
        try:
            job()
        except Exception:
            LOGGER.exception("Fehler im Job %s", name)
        runs += 1
        next_tick += interval
    LOGGER.debug("Job %s beendet nach %s Läufen", name, runs)
    return runs


class Sampler:
    """Sekundentakt: CPU-Temperatur und Drehzahl in den Speicher."""

    def __init__(
        self,
        store: TimeSeriesStore,
        tachymeter: Tachymeter | None = None,
        read_temperature: Callable[[], int] | None = None,
        interval: float = SAMPLE_INTERVAL_SECONDS,
    ) -> None:
        self._store = store
        self._tachymeter = tachymeter
        self._read_temperature = read_temperature or (lambda: read_cpu_temperature_mc(CPU_TEMP_PATH))
        self._interval = interval

    def sample(self) -> dict[str, int]:
        try:
            temperature = self._read_temperature()
        except (OSError, ValueError) as exc:
            LOGGER.error("CPU-Temperatur nicht lesbar: %s", exc)
            temperature = 0

        values = {"temp": temperature}
        if self._tachymeter is not None:
            values["rpm"] = self._tachymeter.take_rpm(self._interval)
        LOGGER.debug("Temp: %s m°C | Lüfter: %s U/min", temperature, values.get("rpm"))

        self._store.append_many(values)
        return values

    def run_loop(self, stop_event: threading.Event) -> None:
        run_periodic(stop_event, self._interval, self.sample, "sampler")


def collect_once(reporter: Reporter) -> bool:
    """Eine Messung eines Moduls; Fehler werden nur geloggt."""
    try:
        reporter.collect()
    except CollectError as exc:
        LOGGER.error("Messung %s fehlgeschlagen: %s", reporter.name, exc)
        return False
    return True


def module_loop(
    reporter: Reporter,
    stop_event: threading.Event,
    interval: float = MODULE_COLLECT_SECONDS,
) -> None:
    """Liest ein Modul einmal pro ``interval``."""
    run_periodic(stop_event, interval, lambda: collect_once(reporter), reporter.name)

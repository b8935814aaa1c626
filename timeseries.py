"""Zeitreihenspeicher mit drei Auflösungen je Metrik.

Für jede Metrik gibt es die Rohreihe ``<metrik>``, die Minutenreihe
``<metrik>-m`` und die Stundenreihe ``<metrik>-h``. Nur die Rohreihe wird von
Sensoren beschrieben, Minute und Stunde entstehen ausschließlich durch
Aggregation. Alle Werte sind Ganzzahlen (m°C, hPa, mRH, U/min).

Der Wert 0 steht für "keine Daten". Das ist mit einem echten Messwert von 0
nicht unterscheidbar; die Lüftersteuerung wertet die 0 bewusst als Fehlerfall.
"""
from __future__ import annotations

import copy
import threading
from typing import Iterable, Mapping, Sequence

MINUTE_SUFFIX = "-m"
HOUR_SUFFIX = "-h"


def minute_series(metric: str) -> str:
    return metric + MINUTE_SUFFIX


def hour_series(metric: str) -> str:
    return metric + HOUR_SUFFIX


def average(values: Sequence[int]) -> int:
    """Ganzzahliger Mittelwert (abgerundet), 0 für eine leere Folge."""
    if not values:
        return 0
    return sum(values) // len(values)


def last(values: Sequence[int]) -> int:
    return values[-1] if values else 0


class TimeSeriesStore:
    """Thread-sicherer Speicher; das interne Dict verlässt die Klasse nie."""

    def __init__(self, metrics: Iterable[str]) -> None:
        self._lock = threading.Lock()
        self._metrics = tuple(metrics)
        self._data: dict[str, list[int]] = {}
        for metric in self._metrics:
            self._data[metric] = []
            self._data[minute_series(metric)] = []
            self._data[hour_series(metric)] = []

    @property
    def metrics(self) -> tuple[str, ...]:
        return self._metrics

    def _series(self, name: str) -> list[int]:
        try:
            return self._data[name]
        except KeyError:
            raise KeyError(f"Unbekannte Zeitreihe: {name}") from None

    def append(self, metric: str, value: int) -> None:
        self.append_many({metric: value})

    def append_many(self, values: Mapping[str, int]) -> None:
        """Schreibt alle Rohwerte eines Takts in einem kritischen Abschnitt."""
        for metric in values:
            if metric not in self._metrics:
                raise KeyError(f"Unbekannte Metrik: {metric}")
        with self._lock:
            for metric, value in values.items():
                self._data[metric].append(int(value))

    def last(self, name: str) -> int:
        with self._lock:
            return last(self._series(name))

    def length(self, name: str) -> int:
        with self._lock:
            return len(self._series(name))

    def average(self, name: str, window: int | None = None) -> int:
        """Mittelwert der letzten ``window`` Werte.

        Liegen weniger als ``window`` Werte vor, ist das Ergebnis 0.
        Ohne ``window`` wird die ganze Reihe gemittelt.
        """
        with self._lock:
            values = self._series(name)
            if window is None:
                return average(values)
            if window <= 0 or len(values) < window:
                return 0
            return average(values[-window:])

    def tails(self, *requests: tuple[str, int]) -> tuple[list[int], ...]:
        """Kopien der letzten ``count`` Werte mehrerer Reihen aus einem konsistenten Zustand."""
        with self._lock:
            return tuple(
                list(self._series(name)[-count:]) if count > 0 else []
                for name, count in requests
            )

    def _rollup_minute_locked(self, metric: str, window: int | None) -> int:
        raw = self._series(metric)
        if window is None:
            value = average(raw)
            raw.clear()
        else:
            value = average(raw[-window:])
        self._data[minute_series(metric)].append(value)
        return value

    def _rollup_hour_locked(self, metric: str, window: int) -> int:
        minutes = self._series(minute_series(metric))
        value = average(minutes[-window:]) if window > 0 else 0
        self._data[hour_series(metric)].append(value)
        return value

    def _truncate_locked(self, metric: str, high_water: int, low_water: int) -> bool:
        raw = self._series(metric)
        if len(raw) <= high_water:
            return False
        del raw[: len(raw) - low_water]
        return True

    def rollup_minute(self, metric: str, window: int | None = None) -> int:
        """Hängt den Minutenmittelwert an ``<metrik>-m`` an.

        Ohne ``window`` wird der komplette Rohpuffer gemittelt und danach
        geleert. Mit ``window`` (laufende Reihen wie die CPU-Temperatur) werden
        nur die letzten ``window`` Werte gemittelt und der Puffer bleibt stehen.
        """
        with self._lock:
            return self._rollup_minute_locked(metric, window)

    def rollup_minutes(
        self,
        scrolling: Iterable[str] = (),
        window: int = 60,
        high_water: int = 100,
        low_water: int = 60,
    ) -> tuple[dict[str, int], list[str]]:
        """Minutenwerte aller Metriken in einem kritischen Abschnitt.

        Ein Takt aus ``append_many`` landet damit für alle Metriken in
        derselben Minute. Laufende Reihen werden nach dem Durchlauf gekürzt.
        Liefert die Minutenwerte und die Namen der gekürzten Reihen.
        """
        scrolling = frozenset(scrolling)
        with self._lock:
            rollups = {
                metric: self._rollup_minute_locked(
                    metric, window if metric in scrolling else None
                )
                for metric in self._metrics
            }
            truncated = [
                metric
                for metric in self._metrics
                if metric in scrolling
                and self._truncate_locked(metric, high_water, low_water)
            ]
        return rollups, truncated

    def rollup_hour(self, metric: str, window: int) -> int:
        """Mittelt die letzten ``window`` Minutenwerte (oder weniger)."""
        with self._lock:
            return self._rollup_hour_locked(metric, window)

    def rollup_hours(self, window: int) -> dict[str, int]:
        """Stundenwerte aller Metriken in einem kritischen Abschnitt."""
        with self._lock:
            return {
                metric: self._rollup_hour_locked(metric, window) for metric in self._metrics
            }

    def truncate(self, metric: str, high_water: int, low_water: int) -> bool:
        """Kürzt eine Rohreihe über ``high_water`` auf die letzten ``low_water`` Werte."""
        with self._lock:
            return self._truncate_locked(metric, high_water, low_water)

    def snapshot(self, names: Iterable[str] | None = None) -> dict[str, list[int]]:
        """Tiefe Kopie aller (oder der genannten) Reihen."""
        with self._lock:
            if names is None:
                return copy.deepcopy(self._data)
            return {name: list(self._series(name)) for name in names}

"""Verdichtung der Rohwerte zu Minuten- und Stundenwerten."""
from __future__ import annotations

import logging
from typing import Iterable

from config import HOUR_WINDOW, MINUTE_WINDOW, RAW_HIGH_WATER, RAW_LOW_WATER
from db import StorageError
from timeseries import TimeSeriesStore

LOGGER = logging.getLogger(__name__)

CORE_MODULE = "core"


class Aggregator:
    """Minuten- und Stundenjob für alle Metriken eines ``TimeSeriesStore``.

    Laufende Reihen (``scrolling``) werden über die letzten ``minute_window``
    Werte gemittelt und anschließend gekürzt statt geleert, weil die
    Lüftersteuerung sie sekundengenau braucht.
    """

    def __init__(
        self,
        store: TimeSeriesStore,
        scrolling: Iterable[str] = (),
        storage=None,
        minute_window: int = MINUTE_WINDOW,
        hour_window: int = HOUR_WINDOW,
        high_water: int = RAW_HIGH_WATER,
        low_water: int = RAW_LOW_WATER,
    ) -> None:
        self._store = store
        self._scrolling = frozenset(scrolling)
        self._storage = storage
        self._minute_window = minute_window
        self._hour_window = hour_window
        self._high_water = high_water
        self._low_water = low_water

    def minute_tick(self) -> dict[str, int]:
        rollups, truncated = self._store.rollup_minutes(
            self._scrolling,
            window=self._minute_window,
            high_water=self._high_water,
            low_water=self._low_water,
        )
        for metric in truncated:
            LOGGER.debug("Rohreihe %s auf %s Werte gekürzt", metric, self._low_water)

        LOGGER.info(
            "Minute: CPU %s m°C, Lüfter %s U/min",
            rollups.get("temp", 0),
            rollups.get("rpm", 0),
        )
        self._persist(rollups)
        return rollups

    def hour_tick(self) -> dict[str, int]:
        rollups = self._store.rollup_hours(self._hour_window)
        LOGGER.info(
            "Stunde: %s",
            ", ".join(f"{metric}={value}" for metric, value in rollups.items()),
        )
        return rollups

    def _persist(self, rollups: dict[str, int]) -> None:
        if self._storage is None:
            return
        for metric, value in rollups.items():
            try:
                self._storage.write(CORE_MODULE, metric, value)
            except StorageError:
                LOGGER.exception("Minutenwert %s konnte nicht gespeichert werden", metric)

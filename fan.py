"""Lüftersteuerung mit Hysterese über gleitende Mittelwerte."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass

from config import (
    FAN_CHECK_SECONDS,
    FAN_SHUTDOWN_GRACE_SECONDS,
    FAN_TEMP_HIGH_MC,
    FAN_TEMP_LOW_MC,
)
from timeseries import TimeSeriesStore, average, last, minute_series

LOGGER = logging.getLogger(__name__)

SHORT_WINDOW = 10
MID_WINDOW = 30
MINUTES_WINDOW = 3
SPIKE_MARGIN_MC = 10000
RISE_MARGIN_MC = 5000


@dataclass(frozen=True)
class FanInputs:
    ma_short: int
    ma_mid: int
    ma_1min: int
    ma_3min: int
    # höchster Minutenwert im 3-Minuten-Fenster
    max_3min: int = 0


def windowed_average(values: list[int], window: int) -> int:
    """Mittelwert der letzten ``window`` Werte, 0 wenn es weniger gibt."""
    if len(values) < window:
        return 0
    return average(values[-window:])


def should_turn_on(inputs: FanInputs, high: int) -> bool:
    return (
        inputs.ma_short > high + SPIKE_MARGIN_MC  # plötzliche Spitze
        or inputs.ma_mid > high + RISE_MARGIN_MC  # schneller Anstieg
        or inputs.ma_1min > high
        or inputs.ma_1min == 0  # keine Daten
        or inputs.ma_3min == 0  # keine Daten
    )


def decide(inputs: FanInputs, current: bool, high: int, low: int) -> bool:
    """Neuer Lüfterzustand.

    Einschalten sofort bei jeder Auslösebedingung. Ausschalten nur, wenn der
    3-Minuten-Mittelwert und jeder einzelne Minutenwert darin unter ``low``
    liegen. Dazwischen bleibt der Zustand unverändert.
    """
    if should_turn_on(inputs, high):
        return True
    if inputs.ma_3min < low and inputs.max_3min < low:
        return False
    return current


class FanController:
    """Steuert den Lüfter; Startzustand und Zustand beim Beenden ist EIN."""

    def __init__(
        self,
        store: TimeSeriesStore,
        actuator,
        high: int = FAN_TEMP_HIGH_MC,
        low: int = FAN_TEMP_LOW_MC,
        metric: str = "temp",
        interval: float = FAN_CHECK_SECONDS,
        shutdown_grace: float = FAN_SHUTDOWN_GRACE_SECONDS,
    ) -> None:
        self._store = store
        self._actuator = actuator
        self._high = high
        self._low = low
        self._metric = metric
        self._interval = interval
        self._shutdown_grace = shutdown_grace
        # None = Pin-Zustand unbekannt, der nächste Schreibversuch erzwingt ihn
        self._is_on: bool | None = None
        self.set_fan(True)

    @property
    def is_on(self) -> bool:
        return self._is_on is not False

    def read_inputs(self) -> FanInputs:
        raw, minutes = self._store.tails(
            (self._metric, MID_WINDOW),
            (minute_series(self._metric), MINUTES_WINDOW),
        )
        return FanInputs(
            ma_short=windowed_average(raw, SHORT_WINDOW),
            ma_mid=windowed_average(raw, MID_WINDOW),
            ma_1min=last(minutes),
            ma_3min=windowed_average(minutes, MINUTES_WINDOW),
            max_3min=max(minutes, default=0),
        )

    def set_fan(self, enabled: bool) -> bool:
        """Schaltet den Lüfter; ein Fehler wird geloggt und im nächsten Takt wiederholt."""
        if enabled == self._is_on:
            return True
        try:
            self._actuator.set_level(enabled)
        except (OSError, RuntimeError, ValueError):
            LOGGER.exception("Lüfter konnte nicht auf %s gesetzt werden", "EIN" if enabled else "AUS")
            return False
        self._is_on = enabled
        LOGGER.info(
            "Lüfter %s (CPU %s m°C)",
            "EIN" if enabled else "AUS",
            self._store.last(self._metric),
        )
        return True

    def check(self) -> bool:
        """Ein Regeltakt: Mittelwerte lesen, entscheiden, schalten."""
        inputs = self.read_inputs()
        LOGGER.debug(
            "Mittelwerte: 10s=%s 30s=%s 1min=%s 3min=%s (max %s)",
            inputs.ma_short,
            inputs.ma_mid,
            inputs.ma_1min,
            inputs.ma_3min,
            inputs.max_3min,
        )
        target = decide(inputs, self.is_on, self._high, self._low)
        self.set_fan(target)
        return target

    def shutdown(self) -> None:
        """Lüfter bedingungslos EIN und Pin freigeben."""
        LOGGER.info("Lüfter bleibt beim Beenden EIN")
        try:
            self._actuator.set_level(True)
            self._is_on = True
        except (OSError, RuntimeError, ValueError):
            LOGGER.exception("Lüfter konnte beim Beenden nicht eingeschaltet werden")
        try:
            self._actuator.release()
        except (OSError, RuntimeError):
            LOGGER.exception("Lüfter-Pin konnte nicht freigegeben werden")

    def run_loop(self, stop_event: threading.Event) -> None:
        """Prüft alle ``interval`` Sekunden die Temperatur, bis ``stop_event`` gesetzt ist."""
        while not stop_event.wait(self._interval):
            try:
                self.check()
            except Exception:
                LOGGER.exception("Fehler in der Lüftersteuerung")
        # letzte Tachometer-Runde abwarten, bevor der Lüfter fest EIN geht
        time.sleep(self._shutdown_grace)
        self.shutdown()

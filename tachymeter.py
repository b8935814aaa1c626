"""Drehzahlmessung über den Tacho-Ausgang des Lüfters."""
from __future__ import annotations

import logging
import threading

from config import SAMPLE_INTERVAL_SECONDS, TACH_TIMEOUT_SECONDS

LOGGER = logging.getLogger(__name__)


class Tachymeter:
    """Zählt Flanken und liefert pro Messtakt die Drehzahl in U/min.

    ``edge_input`` braucht ``wait_for_edge(timeout) -> bool`` und ``release()``.
    """

    def __init__(self, edge_input, timeout: float = TACH_TIMEOUT_SECONDS) -> None:
        self._input = edge_input
        self._timeout = timeout
        self._revs = 0
        self._lock = threading.Lock()

    def pulse(self) -> None:
        with self._lock:
            self._revs += 1

    def take_rpm(self, interval_seconds: float = SAMPLE_INTERVAL_SECONDS) -> int:
        """Liest den Zähler aus und setzt ihn zurück."""
        with self._lock:
            revs, self._revs = self._revs, 0
        return int(revs * 60 / interval_seconds)

    def run_loop(self, stop_event: threading.Event) -> None:
        """Wartet mit Zeitlimit auf Flanken, bis ``stop_event`` gesetzt ist."""
        try:
            while not stop_event.is_set():
                try:
                    if self._input.wait_for_edge(self._timeout):
                        self.pulse()
                except (OSError, RuntimeError):
                    LOGGER.exception("Fehler beim Lesen des Tachometers")
                    stop_event.wait(self._timeout)
        finally:
            LOGGER.debug("Tachometer wird angehalten")
            try:
                self._input.release()
            except (OSError, RuntimeError):
                LOGGER.exception("Tachometer konnte nicht freigegeben werden")

"""Momentaufnahmen des Speichers für HTTP und Datenspeicher."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable

from config import TIMEZONE
from timeseries import TimeSeriesStore, last, minute_series

DATE_FORMAT = "%Y-%m-%d %H:%M"
LIVE_METRICS = ("temp", "rpm")


def minute_timestamps(count: int, now: datetime | None = None) -> list[str]:
    """Erzeugt ``count`` Zeitstempel im Minutenabstand, der letzte eine Minute vor ``now``.

    Die Zeitstempel werden nicht gespeichert, sondern aus der Position in der
    Minutenreihe abgeleitet.
    """
    if now is None:
        now = datetime.now(TIMEZONE)
    return [
        (now - timedelta(minutes=offset)).strftime(DATE_FORMAT)
        for offset in range(count, 0, -1)
    ]


def status(store: TimeSeriesStore) -> dict[str, int]:
    """Aktuelle CPU-Temperatur, Drehzahl und die letzten Minutenwerte.

    Alle Werte stammen aus einem Lesevorgang. Ist eine Rohreihe gerade durch
    den Minutenjob geleert, gilt ihr letzter Minutenwert.
    """
    names = [*LIVE_METRICS, *(minute_series(metric) for metric in store.metrics)]
    tails = store.tails(*((name, 1) for name in names))
    latest = dict(zip(names, tails))

    result = {
        metric: last(latest[metric] or latest.get(minute_series(metric), []))
        for metric in LIVE_METRICS
    }
    for metric in store.metrics:
        result[minute_series(metric)] = last(latest[minute_series(metric)])
    return result


def full_snapshot(
    store: TimeSeriesStore,
    modules: Iterable = (),
    now: datetime | None = None,
) -> dict:
    """Alle Reihen, alle Modulberichte und die passenden Zeitstempel."""
    data = store.snapshot()
    return {
        "Data": data,
        "Modules": {module.name: module.report() for module in modules},
        "Dates": minute_timestamps(len(data.get(minute_series("temp"), [])), now),
    }

"""Persistente Ablage der Messwerte (SQLite oder In-Memory).

Jedes Modul bekommt eine eigene Tabelle ``<modul>_data`` mit den Spalten
``ts``, ``topic`` und ``value``. Fehler werden als ``StorageError`` gemeldet;
Aufrufer aus Mess- und Regelschleifen loggen sie nur.
"""
from __future__ import annotations

import logging
import re
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterator

from config import DATA_RETENTION_MONTHS, DB_TIMEOUT_SECONDS, TIMEZONE

LOGGER = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M"
PRUNE_INTERVAL_SECONDS = 60 * 60

_MODULE_NAME = re.compile(r"^[A-Za-z0-9_]+$")


class StorageError(Exception):
    """Schreib- oder Lesefehler im Datenspeicher."""


@dataclass(frozen=True)
class Record:
    module: str
    ts: str
    topic: str
    value: str


def format_timestamp(timestamp: datetime | None = None) -> str:
    if timestamp is None:
        timestamp = datetime.now(TIMEZONE)
    return timestamp.astimezone(TIMEZONE).strftime(TIMESTAMP_FORMAT)


def retention_cutoff(now: datetime, months: int) -> datetime:
    """Zeitpunkt, vor dem Messungen gelöscht werden."""
    cutoff_month = now.month - months
    year = now.year
    while cutoff_month <= 0:
        cutoff_month += 12
        year -= 1
    # 31. März minus ein Monat -> 28./29. Februar
    day = now.day
    while True:
        try:
            return now.replace(year=year, month=cutoff_month, day=day)
        except ValueError:
            day -= 1


def _check_module(module: str) -> None:
    if not module or not _MODULE_NAME.match(module):
        raise StorageError(f"Ungültiger Modulname: {module!r}")


def _rows_to_view(records: list[Record]) -> dict[str, dict[str, str]]:
    view: dict[str, dict[str, str]] = {}
    for record in records:
        view.setdefault(record.topic, {})[record.ts] = record.value
    return view


class SQLiteStorage:
    """SQLite-Ablage; pro Aufruf eine eigene Verbindung (WAL, Zeitlimit)."""

    def __init__(
        self,
        path: str,
        read_only: bool = False,
        retention_months: int = DATA_RETENTION_MONTHS,
    ) -> None:
        self._path = path
        self._read_only = read_only
        self._retention_months = retention_months
        self._active_modules: set[str] = set()
        self._last_prune: dict[str, float] = {}
        self._lock = threading.Lock()

        if not read_only:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        # Verbindung einmal testen, damit Fehler beim Start auffallen
        with self._connection():
            pass

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Verbindung mit Commit bei Erfolg; wird immer geschlossen."""
        try:
            if self._read_only:
                conn = sqlite3.connect(
                    f"file:{self._path}?mode=ro", uri=True, timeout=DB_TIMEOUT_SECONDS
                )
            else:
                conn = sqlite3.connect(self._path, timeout=DB_TIMEOUT_SECONDS)
                conn.execute("PRAGMA journal_mode=WAL;")
        except sqlite3.Error as exc:
            raise StorageError(f"Datenbank {self._path} nicht verfügbar: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _ensure_table(self, conn: sqlite3.Connection, module: str) -> None:
        with self._lock:
            if module in self._active_modules:
                return
        conn.execute(
            f"CREATE TABLE IF NOT EXISTS {module}_data "
            "(ts TEXT NOT NULL, topic TEXT NOT NULL, value TEXT NOT NULL)"
        )
        conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{module}_ts ON {module}_data (ts)")
        with self._lock:
            self._active_modules.add(module)

    def write(self, module: str, topic: str, value, timestamp: datetime | None = None) -> None:
        """Speichert einen Wert; ohne Zeitstempel gilt die aktuelle Minute."""
        _check_module(module)
        if not topic:
            raise StorageError("Topic darf nicht leer sein")
        if self._read_only:
            return

        ts = format_timestamp(timestamp)
        try:
            with self._connection() as conn:
                self._ensure_table(conn, module)
                conn.execute(
                    f"INSERT INTO {module}_data (ts, topic, value) VALUES (?, ?, ?)",
                    (ts, topic, "" if value is None else str(value)),
                )
                self._maybe_prune(conn, module)
        except sqlite3.Error as exc:
            raise StorageError(f"Schreiben nach {module} fehlgeschlagen: {exc}") from exc

    def _maybe_prune(self, conn: sqlite3.Connection, module: str) -> None:
        now = time.monotonic()
        with self._lock:
            last_prune = self._last_prune.get(module)
            if last_prune is not None and now - last_prune < PRUNE_INTERVAL_SECONDS:
                return
            self._last_prune[module] = now
        self._delete_expired(conn, module)

    def _delete_expired(self, conn: sqlite3.Connection, module: str) -> None:
        cutoff = format_timestamp(
            retention_cutoff(datetime.now(TIMEZONE), self._retention_months)
        )
        deleted = conn.execute(f"DELETE FROM {module}_data WHERE ts < ?", (cutoff,)).rowcount
        if deleted:
            LOGGER.info("%s alte Einträge aus %s entfernt", deleted, module)

    def prune_old(self, module: str) -> None:
        """Entfernt Messungen, die älter als ``retention_months`` sind."""
        _check_module(module)
        try:
            with self._connection() as conn:
                self._delete_expired(conn, module)
        except sqlite3.Error as exc:
            raise StorageError(f"Bereinigen von {module} fehlgeschlagen: {exc}") from exc

    def read(self, module: str) -> list[Record]:
        _check_module(module)
        try:
            with self._connection() as conn:
                rows = conn.execute(
                    f"SELECT ts, topic, value FROM {module}_data ORDER BY rowid ASC"
                ).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"Lesen von {module} fehlgeschlagen: {exc}") from exc
        return [Record(module, row["ts"], row["topic"], row["value"]) for row in rows]

    def view(self, module: str) -> dict[str, dict[str, str]]:
        """Werte eines Moduls als ``{topic: {ts: value}}``."""
        return _rows_to_view(self.read(module))

    def cleanup(self, module: str) -> None:
        """Löscht die Tabelle eines Moduls (für Tests und Neuaufsetzen)."""
        _check_module(module)
        try:
            with self._connection() as conn:
                conn.execute(f"DROP TABLE IF EXISTS {module}_data")
        except sqlite3.Error as exc:
            raise StorageError(f"Löschen von {module} fehlgeschlagen: {exc}") from exc
        with self._lock:
            self._active_modules.discard(module)
            self._last_prune.pop(module, None)


class MemoryStorage:
    """Flüchtige Ablage mit derselben Schnittstelle wie ``SQLiteStorage``."""

    def __init__(self) -> None:
        self._records: dict[str, list[Record]] = {}
        self._lock = threading.Lock()

    def write(self, module: str, topic: str, value, timestamp: datetime | None = None) -> None:
        _check_module(module)
        if not topic:
            raise StorageError("Topic darf nicht leer sein")
        record = Record(
            module, format_timestamp(timestamp), topic, "" if value is None else str(value)
        )
        with self._lock:
            self._records.setdefault(module, []).append(record)

    def read(self, module: str) -> list[Record]:
        _check_module(module)
        with self._lock:
            if module not in self._records:
                raise StorageError(f"Unbekanntes Modul: {module}")
            return list(self._records[module])

    def view(self, module: str) -> dict[str, dict[str, str]]:
        return _rows_to_view(self.read(module))

    def cleanup(self, module: str) -> None:
        with self._lock:
            self._records.pop(module, None)


def open_storage(settings) -> SQLiteStorage | MemoryStorage | None:
    """Wählt den Datenspeicher laut ``StorageSettings``."""
    kind = (settings.type or "none").lower()
    if kind == "sqlite":
        LOGGER.info("Datenspeicher: SQLite unter %s", settings.path)
        return SQLiteStorage(
            settings.path,
            read_only=settings.read_only,
            retention_months=settings.retention_months,
        )
    if kind == "memory":
        LOGGER.info("Datenspeicher: Arbeitsspeicher")
        return MemoryStorage()
    if kind == "none":
        LOGGER.info("Kein Datenspeicher konfiguriert")
        return None
    raise StorageError(f"Unbekannter Speichertyp: {settings.type}")

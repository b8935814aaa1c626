"""Startpunkt des Klimaserver-Dienstes."""
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path

from werkzeug.serving import make_server

import hardware
from aggregator import Aggregator
from app import create_app
from config import (
    CPU_TEMP_PATH,
    FAN_SHUTDOWN_GRACE_SECONDS,
    HOUR_SECONDS,
    LOG_BACKUP_COUNT,
    LOG_MAX_BYTES,
    METRICS,
    MINUTE_SECONDS,
    MODULE_RELEASE_TIMEOUT_SECONDS,
    SCROLLING_METRICS,
    ConfigError,
    Settings,
    load_settings,
)
from db import StorageError, open_storage
from fan import FanController
from reporters import (
    Bmp280Reporter,
    Dht22Reporter,
    Htu21Reporter,
    Smc768Reporter,
    SystemReporter,
    load_modules,
    module_names,
)
from sensors import read_cpu_temperature_mc
from tachymeter import Tachymeter
from tasks import Sampler, module_loop, run_periodic
from timeseries import TimeSeriesStore

LOGGER = logging.getLogger(__name__)


def setup_logging(log_path: str, level: str) -> None:
    """Konfiguriert rotierendes Dateilogging plus Konsole."""
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root_logger.addHandler(console)

    try:
        Path(log_path).parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            log_path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT
        )
    except OSError as exc:
        LOGGER.warning("Logdatei %s nicht nutzbar, nur Konsole: %s", log_path, exc)
        return
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)


def build_loaders(settings: Settings, i2c, store: TimeSeriesStore, storage) -> list:
    """Ladefunktionen für alle aktivierten Module."""
    modules = settings.modules
    loaders = []
    if modules.bmp280.enabled:
        loaders.append(
            (
                "bmp280",
                lambda: Bmp280Reporter(
                    hardware.open_bmp280(i2c, modules.bmp280.addr), store=store, storage=storage
                ),
            )
        )
    if modules.htu21.enabled:
        loaders.append(
            (
                "htu21",
                lambda: Htu21Reporter(
                    hardware.open_htu21(i2c, modules.htu21.addr), store=store, storage=storage
                ),
            )
        )
    if modules.dht22.enabled:
        loaders.append(
            ("dht22", lambda: Dht22Reporter(hardware.open_dht22(modules.dht22.pin), storage=storage))
        )
    if modules.system.enabled:
        loaders.append(("system", lambda: SystemReporter(storage=storage)))
    if modules.smc768.enabled:
        loaders.append(("smc768", lambda: Smc768Reporter(storage=storage)))
    return loaders


def _start(target, *args, name: str) -> threading.Thread:
    thread = threading.Thread(target=target, args=args, name=name, daemon=True)
    thread.start()
    return thread


def run(settings: Settings) -> int:
    stop_event = threading.Event()

    try:
        storage = open_storage(settings.storage)
    except StorageError:
        LOGGER.exception("Datenspeicher konnte nicht geöffnet werden")
        return 1

    i2c = None
    if settings.modules.bmp280.enabled or settings.modules.htu21.enabled:
        try:
            i2c = hardware.open_i2c(settings.modules.i2c)
        except (OSError, RuntimeError, ValueError):
            LOGGER.exception("I²C-Bus %s konnte nicht geöffnet werden", settings.modules.i2c)
            return 1

    try:
        fan_pin = hardware.GpioFan(settings.fan.control_pin)
        tach_input = hardware.TachInput(settings.fan.tach_pin)
    except (AttributeError, OSError, RuntimeError, ValueError):
        LOGGER.exception("GPIO für den Lüfter nicht verfügbar")
        return 1

    store = TimeSeriesStore(METRICS)
    modules = load_modules(build_loaders(settings, i2c, store, storage))
    tachymeter = Tachymeter(tach_input)
    sampler = Sampler(store, tachymeter, lambda: read_cpu_temperature_mc(CPU_TEMP_PATH))
    aggregator = Aggregator(store, scrolling=SCROLLING_METRICS, storage=storage)
    fan = FanController(
        store,
        fan_pin,
        high=settings.fan.high,
        low=settings.fan.low,
        interval=settings.fan.check_seconds,
    )

    _start(tachymeter.run_loop, stop_event, name="tachymeter")
    _start(sampler.run_loop, stop_event, name="sampler")
    _start(run_periodic, stop_event, MINUTE_SECONDS, aggregator.minute_tick, "minute", name="minute")
    _start(run_periodic, stop_event, HOUR_SECONDS, aggregator.hour_tick, "hour", name="hour")
    module_threads = [
        _start(module_loop, module, stop_event, name=f"module-{module.name}")
        for module in modules
    ]
    fan_thread = _start(fan.run_loop, stop_event, name="fan")

    server = make_server(
        settings.server.host, settings.server.port, create_app(store, modules, storage), threaded=True
    )
    _start(server.serve_forever, name="http")

    def handle_signal(signum, _frame):
        LOGGER.info("Signal %s empfangen, beende Dienst", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    LOGGER.info(
        "Dienst gestartet. Tacho an GPIO%s, Lüfter an GPIO%s, HTTP auf %s:%s",
        settings.fan.tach_pin,
        settings.fan.control_pin,
        settings.server.host,
        settings.server.port,
    )
    LOGGER.info("Temperaturen: low=%s m°C, high=%s m°C", settings.fan.low, settings.fan.high)
    LOGGER.info("Aktive Module: %s", module_names(modules) or "keine")

    stop_event.wait()

    server.shutdown()
    fan_thread.join(timeout=FAN_SHUTDOWN_GRACE_SECONDS + settings.fan.check_seconds)
    for module, thread in zip(modules, module_threads):
        thread.join(timeout=MODULE_RELEASE_TIMEOUT_SECONDS)
        module.release()
    if i2c is not None:
        LOGGER.debug("Schließe I²C-Bus")
        try:
            i2c.deinit()
        except (OSError, RuntimeError):
            LOGGER.exception("I²C-Bus konnte nicht geschlossen werden")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Klimaserver: Sensoren, Lüfter, HTTP")
    parser.add_argument("--config", help="Pfad zur YAML-Konfiguration")
    parser.add_argument("--debug", action="store_true", help="Debug-Ausgaben aktivieren")
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.config)
    except ConfigError as exc:
        print(f"Konfigurationsfehler: {exc}", file=sys.stderr)
        return 2

    level = "DEBUG" if args.debug or settings.server.debug else settings.log_level
    setup_logging(settings.log_path, level)
    return run(settings)


if __name__ == "__main__":
    sys.exit(main())

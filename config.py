"""Zentrale Konfiguration für den Klimaserver.

Die Konstanten sind die dokumentierten Standardwerte. Eine optionale YAML-Datei
überschreibt sie beim Start (siehe ``load_settings``). Alle Temperaturen sind
Ganzzahlen in Milligrad Celsius, genau wie die Messwerte selbst.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

import yaml

LOGGER = logging.getLogger(__name__)

# Zeitzone für Zeitstempel
TIMEZONE = ZoneInfo("Europe/Berlin")

# Konfigurationsdatei
CONFIG_PATH = "/etc/piklima/config.yml"
CONFIG_PATH_ENV = "PIKLIMA_CONFIG"

# Server
HTTP_HOST = "0.0.0.0"
HTTP_PORT = 8095

# Lüfter (BCM-Nummern)
FAN_TACH_PIN = 15
FAN_CONTROL_PIN = 18
FAN_TEMP_HIGH_MC = 45000
FAN_TEMP_LOW_MC = 40000
FAN_CHECK_SECONDS = 10.0
# Tachometer wartet max. 1 s auf eine Flanke, danach 2 s Gnadenfrist
TACH_TIMEOUT_SECONDS = 1.0
FAN_SHUTDOWN_GRACE_SECONDS = 2.0

# Messungen / Aggregation
CPU_TEMP_PATH = "/sys/class/thermal/thermal_zone0/temp"
SAMPLE_INTERVAL_SECONDS = 1
MINUTE_SECONDS = 60
HOUR_SECONDS = 60 * 60
MINUTE_WINDOW = 60
HOUR_WINDOW = 60
RAW_HIGH_WATER = 100
RAW_LOW_WATER = 60
MODULE_COLLECT_SECONDS = 60
# DHT22: bis zu 3 Versuche mit je 2 s Pause
MODULE_RELEASE_TIMEOUT_SECONDS = 10
REPORTER_HISTORY_LIMIT = 24 * 60

# Metriken im Zeitreihenspeicher
METRICS = ("temp", "rpm", "amb-temp", "pressure", "humidity")
SCROLLING_METRICS = ("temp",)

# Module
I2C_BUS = 4
BMP280_ADDR = 0x76
HTU21_ADDR = 0x40
DHT_PIN = 23
MEASUREMENT_RETRIES = 3
MEASUREMENT_RETRY_DELAY_SECONDS = 2
SYSTEM_TIME_IN_STATE_PATH = "/sys/devices/system/cpu/cpu0/cpufreq/stats/time_in_state"
SYSTEM_LOADAVG_PATH = "/proc/loadavg"
SMC768_PATH = "/sys/devices/platform/applesmc.768"
SMC768_THROTTLE_PATH = (
    "/sys/devices/system/cpu/cpu0/thermal_throttle/core_throttle_total_time_ms"
)

# Datenspeicher
STORAGE_TYPE = "sqlite"
DB_PATH = "/var/lib/piklima/piklima.db"
DB_TIMEOUT_SECONDS = 10
DATA_RETENTION_MONTHS = 6

# Logging
LOG_PATH = "/var/log/piklima/piklima.log"
LOG_LEVEL = "INFO"
LOG_MAX_BYTES = 5 * 1024 * 1024
LOG_BACKUP_COUNT = 3


class ConfigError(Exception):
    """Konfigurationsdatei fehlt, ist kaputt oder enthält ungültige Werte."""


@dataclass(frozen=True)
class ServerSettings:
    host: str = HTTP_HOST
    port: int = HTTP_PORT
    debug: bool = False


@dataclass(frozen=True)
class FanSettings:
    tach_pin: int = FAN_TACH_PIN
    control_pin: int = FAN_CONTROL_PIN
    high: int = FAN_TEMP_HIGH_MC
    low: int = FAN_TEMP_LOW_MC
    check_seconds: float = FAN_CHECK_SECONDS


@dataclass(frozen=True)
class ModuleSettings:
    enabled: bool = False
    addr: int | None = None
    pin: int | None = None


@dataclass(frozen=True)
class ModulesSettings:
    i2c: int = I2C_BUS
    bmp280: ModuleSettings = field(default_factory=lambda: ModuleSettings(addr=BMP280_ADDR))
    htu21: ModuleSettings = field(default_factory=lambda: ModuleSettings(addr=HTU21_ADDR))
    dht22: ModuleSettings = field(default_factory=lambda: ModuleSettings(pin=DHT_PIN))
    system: ModuleSettings = field(default_factory=ModuleSettings)
    smc768: ModuleSettings = field(default_factory=ModuleSettings)


@dataclass(frozen=True)
class StorageSettings:
    type: str = STORAGE_TYPE
    path: str = DB_PATH
    read_only: bool = False
    retention_months: int = DATA_RETENTION_MONTHS


@dataclass(frozen=True)
class Settings:
    server: ServerSettings = field(default_factory=ServerSettings)
    fan: FanSettings = field(default_factory=FanSettings)
    modules: ModulesSettings = field(default_factory=ModulesSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    log_level: str = LOG_LEVEL
    log_path: str = LOG_PATH


_YAML_ALIASES = {
    "listen": None,
    "tachPin": "tach_pin",
    "controlPin": "control_pin",
    "readOnly": "read_only",
    "retentionMonths": "retention_months",
    "checkSeconds": "check_seconds",
    "logLevel": "log_level",
    "logPath": "log_path",
}


def _overlay(defaults: Any, raw: dict, section: str) -> Any:
    """Überträgt Werte aus einem YAML-Abschnitt auf eine Dataclass."""
    if not isinstance(raw, dict):
        raise ConfigError(f"Abschnitt '{section}' muss ein Mapping sein")

    known = {f.name: f for f in fields(defaults)}
    changes: dict[str, Any] = {}
    for key, value in raw.items():
        name = _YAML_ALIASES.get(key, key)
        if name is None:
            continue
        if name not in known:
            raise ConfigError(f"Unbekannte Option '{section}.{key}'")
        current = getattr(defaults, name)
        if hasattr(current, "__dataclass_fields__"):
            changes[name] = _overlay(current, value or {}, f"{section}.{key}")
        elif isinstance(current, bool):
            if not isinstance(value, bool):
                raise ConfigError(f"'{section}.{key}' muss true/false sein")
            changes[name] = value
        elif isinstance(current, float) and not isinstance(value, bool):
            try:
                changes[name] = float(value)
            except (TypeError, ValueError) as exc:
                raise ConfigError(f"'{section}.{key}' ist keine Zahl: {value!r}") from exc
        elif isinstance(current, int) and not isinstance(value, bool):
            try:
                changes[name] = int(value, 0) if isinstance(value, str) else int(value)
            except (TypeError, ValueError) as exc:
                raise ConfigError(f"'{section}.{key}' ist keine Zahl: {value!r}") from exc
        else:
            changes[name] = value
    return replace(defaults, **changes)


def _parse_listen(listen: str) -> tuple[str, int]:
    host, _, port = str(listen).rpartition(":")
    try:
        return host or HTTP_HOST, int(port)
    except ValueError as exc:
        raise ConfigError(f"Ungültige Listen-Adresse: {listen!r}") from exc


def load_settings(path: str | None = None) -> Settings:
    """Lädt die Einstellungen; ohne Datei gelten die Standardwerte.

    Module ohne ``enabled: true`` bleiben deaktiviert.
    """
    explicit = path is not None or CONFIG_PATH_ENV in os.environ
    config_path = Path(path or os.environ.get(CONFIG_PATH_ENV, CONFIG_PATH))

    if not config_path.exists():
        if explicit:
            raise ConfigError(f"Konfiguration {config_path} nicht gefunden")
        LOGGER.info("Keine Konfiguration unter %s, nutze Standardwerte", config_path)
        return Settings()

    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Konfiguration {config_path} nicht lesbar: {exc}") from exc

    settings = _overlay(Settings(), raw, "config")

    server_raw = raw.get("server") or {}
    if "listen" in server_raw:
        host, port = _parse_listen(server_raw["listen"])
        settings = replace(settings, server=replace(settings.server, host=host, port=port))

    level = str(settings.log_level).upper()
    if not isinstance(logging.getLevelName(level), int):
        raise ConfigError(f"Unbekannter Loglevel: {settings.log_level!r}")
    settings = replace(settings, log_level=level)

    if settings.fan.low >= settings.fan.high:
        raise ConfigError(
            f"fan.low ({settings.fan.low}) muss kleiner als fan.high ({settings.fan.high}) sein"
        )

    LOGGER.debug("Konfiguration: %s", settings)
    return settings

"""Sensorfunktionen ohne Bus-Zugriff (virtuelle Dateien, Umrechnungen)."""
from __future__ import annotations

import math

from config import CPU_TEMP_PATH


def read_virtual_file(path: str) -> str:
    """Liest eine Datei aus /sys oder /proc als Text."""
    with open(path, "r", encoding="utf-8") as file:
        return file.read()


def read_cpu_temperature_mc(path: str = CPU_TEMP_PATH) -> int:
    """Liest die CPU-Temperatur vom Raspberry Pi in m°C."""
    raw = read_virtual_file(path).strip()
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Ungültiger Temperaturwert in {path}: {raw!r}") from None


def to_milli(value: float | None, label: str) -> int:
    """Rechnet einen Treiberwert (°C, %RH) in Tausendstel um."""
    try:
        return round(float(value) * 1000)
    except (TypeError, ValueError):
        raise ValueError(f"Ungültiger Messwert für {label}: {value}") from None


def calculate_dew_point_mc(temperature_mc: int, humidity_mrh: int) -> int:
    """Berechnet den Taupunkt in m°C (Magnus-Formel).

    Bei 0 %RH ist der Taupunkt nicht definiert, dann wird 0 geliefert.
    """
    if humidity_mrh <= 0:
        return 0
    a = 17.62
    b = 243.12
    temperature_c = temperature_mc / 1000.0
    gamma = (a * temperature_c / (b + temperature_c)) + math.log(
        humidity_mrh / 100000.0
    )
    dew_point = (b * gamma) / (a - gamma)
    return round(dew_point * 1000)

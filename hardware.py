"""Anbindung der echten Hardware (GPIO, I²C-Sensoren) am Raspberry Pi."""
from __future__ import annotations

import logging

import adafruit_bmp280
import adafruit_dht
import adafruit_htu21d
import board
import digitalio
import RPi.GPIO as GPIO
from adafruit_extended_bus import ExtendedI2C

from reporters import ReporterInitError

LOGGER = logging.getLogger(__name__)


class GpioFan:
    """Lüfter-Relais bzw. Transistor an einem GPIO-Ausgang."""

    def __init__(self, pin: int) -> None:
        self._pin = digitalio.DigitalInOut(getattr(board, f"D{pin}"))
        self._pin.direction = digitalio.Direction.OUTPUT

    def set_level(self, enabled: bool) -> None:
        self._pin.value = enabled

    def release(self) -> None:
        self._pin.deinit()


class TachInput:
    """Tacho-Eingang mit Pull-up, gezählt werden steigende Flanken."""

    def __init__(self, pin: int) -> None:
        self._pin = pin
        GPIO.setmode(GPIO.BCM)
        GPIO.setup(pin, GPIO.IN, pull_up_down=GPIO.PUD_UP)

    def wait_for_edge(self, timeout: float) -> bool:
        channel = GPIO.wait_for_edge(self._pin, GPIO.RISING, timeout=int(timeout * 1000))
        return channel is not None

    def release(self) -> None:
        GPIO.cleanup(self._pin)


def open_i2c(bus: int) -> ExtendedI2C:
    """Öffnet /dev/i2c-<bus>; ein Fehler hier ist beim Start fatal."""
    LOGGER.debug("Öffne I²C-Bus %s", bus)
    return ExtendedI2C(bus)


def open_bmp280(i2c, address: int):
    try:
        return adafruit_bmp280.Adafruit_BMP280_I2C(i2c, address=address)
    except (OSError, RuntimeError, ValueError) as exc:
        raise ReporterInitError(f"BMP280 an 0x{address:02x} nicht gefunden: {exc}") from exc


def open_htu21(i2c, address: int):
    try:
        return adafruit_htu21d.HTU21D(i2c, address=address)
    except (OSError, RuntimeError, ValueError) as exc:
        raise ReporterInitError(f"HTU21 an 0x{address:02x} nicht gefunden: {exc}") from exc


def open_dht22(pin: int):
    try:
        return adafruit_dht.DHT22(getattr(board, f"D{pin}"))
    except (AttributeError, OSError, RuntimeError) as exc:
        raise ReporterInitError(f"DHT22 an D{pin} nicht verfügbar: {exc}") from exc

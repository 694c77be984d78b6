# Copyright (C) 2022-2025, Pyronear.

# This program is licensed under the Apache License 2.0.
# See LICENSE or go to <https://opensource.org/licenses/Apache-2.0> for full license details.

import logging
import time
from abc import ABC, abstractmethod
from typing import List, Optional

from .config import Settings

__all__ = ["GPIORelay", "NoopRelay", "RelayActuator", "RelayCloseError", "RelayInitError", "create_relay"]

logger = logging.getLogger(__name__)


class RelayInitError(Exception):
    pass


class RelayCloseError(Exception):
    pass


class RelayActuator(ABC):
    """
    Abstract relay driving the power of the monitored device.

    The check loop only ever calls trigger, close is left to whoever created the relay.
    """

    @abstractmethod
    def trigger(self, duration: float) -> None:
        """
        Drive the output active, hold it for `duration` seconds, then release it.

        Blocks for the whole duration.
        """
        ...

    @abstractmethod
    def close(self) -> None:
        """Release the underlying resources, raises RelayCloseError on failure"""
        ...


class GPIORelay(RelayActuator):
    """
    Relay wired to the GPIO header of a Raspberry Pi.

    Pin numbers are BCM numbers, not board pinout. The high pin is driven to 3.3V during a bounce,
    the optional low pin is held low to provide a ground reference.

    Args:
        high_pin: GPIO pin triggered high during a bounce
        low_pin: optional GPIO pin used for a low/ground signal, None or a negative value disables it
    """

    def __init__(self, high_pin: int, low_pin: Optional[int] = None) -> None:
        try:
            import RPi.GPIO as GPIO
        except (ImportError, RuntimeError) as e:
            raise RelayInitError(f"could not load RPi.GPIO: {e}") from e

        self._gpio = GPIO
        self.high_pin = high_pin
        self.low_pin = low_pin if low_pin is not None and low_pin >= 0 else None

        try:
            GPIO.setmode(GPIO.BCM)
            GPIO.setwarnings(False)
            if self.low_pin is not None:
                GPIO.setup(self.low_pin, GPIO.OUT, initial=GPIO.LOW)
            GPIO.setup(self.high_pin, GPIO.OUT, initial=GPIO.LOW)
        except Exception as e:
            raise RelayInitError(f"could not set up GPIO pins high={high_pin} low={low_pin}: {e}") from e

    @property
    def pins(self) -> List[int]:
        return [pin for pin in (self.high_pin, self.low_pin) if pin is not None]

    def trigger(self, duration: float) -> None:
        logger.warning(f"bouncing relay pin={self.high_pin} duration={duration}s")
        self._gpio.output(self.high_pin, self._gpio.HIGH)
        try:
            time.sleep(duration)
        finally:
            self._gpio.output(self.high_pin, self._gpio.LOW)
        logger.info(f"relay released pin={self.high_pin}")

    def close(self) -> None:
        try:
            self._gpio.cleanup(self.pins)
        except Exception as e:
            raise RelayCloseError(f"could not release GPIO pins {self.pins}: {e}") from e


class NoopRelay(RelayActuator):
    """
    Simulated relay for machines without a GPIO header.

    Bounces are only logged, the call still blocks for the bounce duration.
    """

    def __init__(self) -> None:
        self.triggers = 0

    def trigger(self, duration: float) -> None:
        self.triggers += 1
        logger.warning(f"bouncing simulated relay duration={duration}s (no op)")
        time.sleep(duration)
        logger.info("simulated relay released")

    def close(self) -> None:
        logger.debug("simulated relay closed")


def create_relay(settings: Settings) -> RelayActuator:
    """Pick the relay backend named in the settings, raises RelayInitError if it cannot be brought up"""
    if settings.relay == "noop":
        logger.info("Using simulated relay, no hardware will be driven")
        return NoopRelay()
    logger.info(f"Initializing GPIO highPin={settings.high_pin} lowPin={settings.low_pin}")
    return GPIORelay(settings.high_pin, settings.low_pin)

# Copyright (C) 2022-2025, Pyronear.

# This program is licensed under the Apache License 2.0.
# See LICENSE or go to <https://opensource.org/licenses/Apache-2.0> for full license details.

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .config import Settings
from .jitter import Jitter
from .probe import ConnectivityProbe, ProbeFailed
from .relay import RelayActuator

__all__ = ["CheckLoop", "CheckState"]

logger = logging.getLogger(__name__)


@dataclass
class CheckState:
    """In-memory failure bookkeeping of the check loop, lost when the process stops"""

    consecutive_failures: int = 0
    total_failures: int = 0
    last_failure: Optional[datetime] = None
    next_site: int = 0
    bounces: int = 0


class CheckLoop:
    """This implements the watchdog loop: probe the sites in turn and bounce the relay once
    enough consecutive probes have failed.

    Args:
        settings: validated settings
        relay: relay to trigger, already initialized
        probe: object exposing `probe(site, timeout)` that raises ProbeFailed, defaults to ConnectivityProbe
        jitter: jitter source, defaults to an unseeded Jitter
        clock: returns the current time, used to stamp failures

    Examples:
        >>> from threading import Event
        >>> from bouncer import CheckLoop, NoopRelay, Settings
        >>> stop = Event()
        >>> loop = CheckLoop(Settings(sites=("https://example.com",)), NoopRelay())
        >>> loop.run(stop)  # returns once stop.set() is called
    """

    def __init__(
        self,
        settings: Settings,
        relay: RelayActuator,
        probe: Optional[ConnectivityProbe] = None,
        jitter: Optional[Jitter] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.settings = settings
        self.relay = relay
        self.probe = probe if probe is not None else ConnectivityProbe()
        self.jitter = jitter if jitter is not None else Jitter()
        self._clock = clock
        self.state = CheckState()

    def check_once(self) -> float:
        """Probe the next site, update the state and return the number of seconds to sleep"""
        cfg = self.settings
        site = cfg.sites[self.state.next_site]

        start_ts = time.monotonic()
        try:
            self.probe.probe(site, cfg.check_timeout)
        except ProbeFailed as e:
            delay = self._on_failure(site, e, time.monotonic() - start_ts)
        else:
            logger.debug(
                f"website check completed successfully site={site} duration={time.monotonic() - start_ts:.3f}s "
                f"totalFailures={self.state.total_failures}"
            )
            self.state.consecutive_failures = 0
            delay = cfg.check_interval + self.jitter(cfg.check_jitter)

        self.state.next_site = (self.state.next_site + 1) % len(cfg.sites)
        return max(delay, 0.0)

    def _on_failure(self, site: str, error: ProbeFailed, duration: float) -> float:
        cfg = self.settings
        self.state.last_failure = self._clock()
        self.state.total_failures += 1
        self.state.consecutive_failures += 1
        logger.error(
            f"check failed site={site} reason={error.reason.value} duration={duration:.3f}s err={error.error} "
            f"totalFailures={self.state.total_failures} consecutiveFailures={self.state.consecutive_failures}"
        )

        if self.state.consecutive_failures < cfg.failures:
            return cfg.retry_interval + self.jitter(cfg.retry_jitter)

        self._bounce()
        self.state.consecutive_failures = 0
        return cfg.bounce_timeout

    def _bounce(self) -> None:
        cfg = self.settings
        self.state.bounces += 1
        logger.warning(
            f"failure threshold reached, bouncing relay failures={cfg.failures} duration={cfg.bounce_duration}s "
            f"bounces={self.state.bounces}"
        )
        try:
            self.relay.trigger(cfg.bounce_duration)
        except Exception as e:
            logger.error(f"Relay trigger failed, carrying on: {e!r}")
        logger.info(f"Waiting {cfg.bounce_timeout}s before resuming normal checks")

    def run(self, stop_event: Optional[threading.Event] = None, max_iterations: Optional[int] = None) -> None:
        """
        Run the check loop until `stop_event` is set.

        The event is looked at before every check and interrupts the sleep between two checks.

        Args:
            stop_event: cancellation signal, the loop never stops on its own without one
            max_iterations: optional number of checks after which the loop returns
        """
        stop_event = stop_event if stop_event is not None else threading.Event()
        logger.info(f"Starting check loop on {len(self.settings.sites)} site(s)")

        iterations = 0
        while not stop_event.is_set():
            if max_iterations is not None and iterations >= max_iterations:
                break
            delay = self.check_once()
            iterations += 1
            logger.debug(f"sleeping until next check sleep={delay:.3f}s")
            if stop_event.wait(delay):
                break

        logger.info(
            f"Check loop stopped after {iterations} check(s), totalFailures={self.state.total_failures}, "
            f"bounces={self.state.bounces}"
        )

# Copyright (C) 2022-2025, Pyronear.

# This program is licensed under the Apache License 2.0.
# See LICENSE or go to <https://opensource.org/licenses/Apache-2.0> for full license details.

import argparse
import logging
import signal
import sys
import threading

from dotenv import load_dotenv

from bouncer import CheckLoop, ConfigError, RelayCloseError, RelayInitError, __version__, create_relay, load_settings
from bouncer.logger_config import setup_logging

EXIT_CONFIG = 127
EXIT_GPIO = 3


def main(args):
    # .env loading
    load_dotenv(".env")

    if args.version:
        print(__version__)
        return 0

    overrides = {
        "sites": args.sites,
        "check_interval": args.check_interval,
        "check_jitter": args.check_jitter,
        "check_timeout": args.check_timeout,
        "retry_interval": args.retry_interval,
        "retry_jitter": args.retry_jitter,
        "failures": args.failures,
        "bounce_duration": args.bounce_duration,
        "bounce_timeout": args.bounce_timeout,
        "high_pin": args.high_pin,
        "low_pin": args.low_pin,
        "relay": args.relay,
        "debug": True if args.debug else None,
    }
    try:
        settings = load_settings(args.config, overrides=overrides)
    except ConfigError as e:
        setup_logging()
        logging.error(f"could not load configuration: {e}")
        return EXIT_CONFIG

    setup_logging(settings.debug)
    logging.debug(f"Config: {settings}")

    try:
        relay = create_relay(settings)
    except RelayInitError as e:
        logging.error(f"could not initialize GPIO: {e}")
        return EXIT_GPIO

    stop_event = threading.Event()

    def _stop(signum, frame):
        logging.info(f"Received signal {signum}, stopping")
        # The interrupted frame may hold the event lock inside Event.wait
        threading.Thread(target=stop_event.set, daemon=True).start()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    try:
        CheckLoop(settings, relay).run(stop_event)
    finally:
        try:
            relay.close()
        except RelayCloseError as e:
            logging.error(f"could not release relay: {e}")
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Network connectivity watchdog bouncing a relay", formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument("--config", type=str, default=None, help="path to YAML config (or BOUNCER_CONFIG)")
    # Checks
    parser.add_argument(
        "--sites", type=str, action="append", default=None, help="website(s) to check, repeatable or comma separated"
    )
    parser.add_argument("--check-interval", type=str, default=None, help="duration between checks, e.g. 2m")
    parser.add_argument(
        "--check-jitter", type=str, default=None, help="amount of time, plus or minus, by which to skew the check interval"
    )
    parser.add_argument("--check-timeout", type=str, default=None, help="the total time allowed for a check to succeed")
    parser.add_argument(
        "--retry-interval", type=str, default=None, help="after a check has failed, duration between retries"
    )
    parser.add_argument("--retry-jitter", type=str, default=None, help="amount of time, plus or minus, by which to skew retries")
    parser.add_argument("--failures", type=int, default=None, help="number of failures before triggering a bounce")
    # Relay
    parser.add_argument("--bounce-duration", type=str, default=None, help="how long the relay is held active, e.g. 10s")
    parser.add_argument(
        "--bounce-timeout",
        type=str,
        default=None,
        help="how long to wait after triggering a bounce to resume the normal check interval",
    )
    parser.add_argument("--high-pin", type=int, default=None, help="GPIO pin (BCM) that will be triggered high/3.3V")
    parser.add_argument("--low-pin", type=int, default=None, help="optional GPIO pin (BCM) used for a low/ground signal")
    parser.add_argument("--relay", type=str, choices=["gpio", "noop"], default=None, help="relay backend")
    # Process
    parser.add_argument("--debug", action="store_true", help="enable debug-level logging")
    parser.add_argument("--version", action="store_true", help="print version and exit")
    args = parser.parse_args()

    sys.exit(main(args))

import sys
from unittest.mock import call, patch

import pytest

from bouncer.relay import GPIORelay, NoopRelay, RelayCloseError, RelayInitError, create_relay


def test_gpio_relay_setup(fake_gpio):
    gpio = fake_gpio["RPi.GPIO"]
    with patch.dict(sys.modules, fake_gpio):
        relay = GPIORelay(21, 20)

    gpio.setmode.assert_called_once_with(gpio.BCM)
    assert gpio.setup.call_args_list == [
        call(20, gpio.OUT, initial=gpio.LOW),
        call(21, gpio.OUT, initial=gpio.LOW),
    ]
    assert relay.pins == [21, 20]


@pytest.mark.parametrize("low_pin", [None, -1])
def test_gpio_relay_without_low_pin(fake_gpio, low_pin):
    gpio = fake_gpio["RPi.GPIO"]
    with patch.dict(sys.modules, fake_gpio):
        relay = GPIORelay(21, low_pin)

    gpio.setup.assert_called_once_with(21, gpio.OUT, initial=gpio.LOW)
    assert relay.low_pin is None
    assert relay.pins == [21]


def test_gpio_relay_trigger_holds_pin_high(fake_gpio):
    gpio = fake_gpio["RPi.GPIO"]
    with patch.dict(sys.modules, fake_gpio):
        relay = GPIORelay(21)

    with patch("bouncer.relay.time") as mock_time:
        relay.trigger(10.0)

    mock_time.sleep.assert_called_once_with(10.0)
    assert gpio.output.call_args_list == [call(21, gpio.HIGH), call(21, gpio.LOW)]


def test_gpio_relay_trigger_always_releases_pin(fake_gpio):
    gpio = fake_gpio["RPi.GPIO"]
    with patch.dict(sys.modules, fake_gpio):
        relay = GPIORelay(21)

    with patch("bouncer.relay.time") as mock_time:
        mock_time.sleep.side_effect = KeyboardInterrupt
        with pytest.raises(KeyboardInterrupt):
            relay.trigger(10.0)

    assert gpio.output.call_args_list[-1] == call(21, gpio.LOW)


def test_gpio_relay_missing_library():
    with patch.dict(sys.modules, {"RPi": None, "RPi.GPIO": None}):
        with pytest.raises(RelayInitError):
            GPIORelay(21)


def test_gpio_relay_setup_failure(fake_gpio):
    fake_gpio["RPi.GPIO"].setup.side_effect = RuntimeError("No access to /dev/mem")
    with patch.dict(sys.modules, fake_gpio):
        with pytest.raises(RelayInitError):
            GPIORelay(21)


def test_gpio_relay_close(fake_gpio):
    gpio = fake_gpio["RPi.GPIO"]
    with patch.dict(sys.modules, fake_gpio):
        relay = GPIORelay(21, 20)

    relay.close()
    gpio.cleanup.assert_called_once_with([21, 20])

    gpio.cleanup.side_effect = RuntimeError("already released")
    with pytest.raises(RelayCloseError):
        relay.close()


def test_noop_relay_blocks_for_duration():
    relay = NoopRelay()
    with patch("bouncer.relay.time") as mock_time:
        relay.trigger(2.5)
    mock_time.sleep.assert_called_once_with(2.5)
    assert relay.triggers == 1
    relay.close()


def test_create_relay_noop(make_settings):
    assert isinstance(create_relay(make_settings(relay="noop")), NoopRelay)


def test_create_relay_gpio(make_settings, fake_gpio):
    with patch.dict(sys.modules, fake_gpio):
        relay = create_relay(make_settings(relay="gpio", high_pin=17, low_pin=27))
    assert isinstance(relay, GPIORelay)
    assert relay.pins == [17, 27]

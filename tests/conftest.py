"""Shared fixtures for watt checker tests."""

from unittest.mock import patch

import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import serial

from wattchecker import (
    WattChecker,
    SessionState,
    build_frame,
    CMD_SET_CLOCK,
    CMD_START_MEASURE,
    CMD_READ_MEASURE,
)


def response_frame(command: int, status: int = 0x00, data: bytes = b"") -> bytes:
    """A device response: AA len code status data crc."""
    return build_frame(bytes([command, status]) + data)


def measurement_data(current=128, voltage=3300, power=2000,
                     clock=(30, 15, 10, 5, 6, 23)) -> bytes:
    """15 measurement bytes: current, voltage, power (24-bit LE), then
    sec, min, hour, day, month, yy."""
    return (
        current.to_bytes(3, "little")
        + voltage.to_bytes(3, "little")
        + power.to_bytes(3, "little")
        + bytes(clock)
    )


def measurement_frame(status: int = 0x00, **kwargs) -> bytes:
    return response_frame(CMD_READ_MEASURE, status, measurement_data(**kwargs))


class FakeSerial:
    """Scripted stand-in for serial.Serial.

    ``responses`` is a queue of byte strings the device will send back;
    each entry is consumed as the host reads. ``writes`` records every
    write. ``max_chunk`` limits how many bytes a single read or write
    transfers, to exercise short I/O. Setting ``fail_read``/``fail_write``
    makes the next operation raise SerialException. ``inject`` places
    bytes straight into the input buffer, as if they arrived late.
    """

    def __init__(self, responses=None, max_chunk=None):
        self.responses = list(responses or [])
        self.writes = []
        self.max_chunk = max_chunk
        self.is_open = True
        self.fail_read = False
        self.fail_write = False
        self.flushed = 0
        self._pending = b""

    def queue(self, *frames):
        self.responses.extend(frames)

    def inject(self, data):
        self._pending += data

    def reset_input_buffer(self):
        self.flushed += len(self._pending)
        self._pending = b""

    def write(self, data):
        if self.fail_write:
            raise serial.SerialException("write failed")
        n = len(data) if self.max_chunk is None else min(len(data), self.max_chunk)
        self.writes.append(bytes(data[:n]))
        return n

    def read(self, size=1):
        if self.fail_read:
            raise serial.SerialException("read failed")
        if not self._pending and self.responses:
            self._pending = self.responses.pop(0)
        n = size if self.max_chunk is None else min(size, self.max_chunk)
        chunk, self._pending = self._pending[:n], self._pending[n:]
        return chunk

    def close(self):
        self.is_open = False

    @property
    def sent(self) -> bytes:
        return b"".join(self.writes)


@pytest.fixture
def fake_serial():
    return FakeSerial()


@pytest.fixture
def checker(fake_serial):
    """A WattChecker whose port is a FakeSerial, not yet initialized."""
    with patch("wattchecker.serial.Serial", return_value=fake_serial):
        wc = WattChecker("/dev/fake", name="desk")
        wc.open()
    return wc


@pytest.fixture
def measuring_checker(checker, fake_serial):
    """A WattChecker that has completed clock-set and start-measurement."""
    fake_serial.queue(
        response_frame(CMD_SET_CLOCK),
        response_frame(CMD_START_MEASURE),
    )
    checker.set_clock()
    checker.start_measurement()
    assert checker.state is SessionState.MEASURING
    fake_serial.writes.clear()
    return checker

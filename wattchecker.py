#!/usr/bin/env python3
"""
REX-BTWATTCH1 Watt Checker — Python API

Talks to the watt checker over its serial / Bluetooth SPP link using the
framed binary protocol: AA | len(LE16) | payload | CRC-8.

Requires: pyserial (`pip install pyserial`)
"""

import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import serial

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants — frame layout
# ---------------------------------------------------------------------------
HEADER = 0xAA
FRAME_OVERHEAD = 4  # header + 2 length bytes + checksum
STATUS_OK = 0x00

# Command codes
CMD_SET_CLOCK = 0x01
CMD_START_MEASURE = 0x02
CMD_READ_MEASURE = 0x08

# Start-measurement mode flag
MODE_NORMAL = 0x00
MODE_FAST = 0xFF  # accelerated test mode

# Frame lengths (request / response) per command
SET_CLOCK_TX_LENGTH = 8 + FRAME_OVERHEAD
SET_CLOCK_RX_LENGTH = 2 + FRAME_OVERHEAD
START_MEASURE_TX_LENGTH = 2 + FRAME_OVERHEAD
START_MEASURE_RX_LENGTH = 2 + FRAME_OVERHEAD
READ_MEASURE_TX_LENGTH = 1 + FRAME_OVERHEAD
READ_MEASURE_RX_LENGTH = 17 + FRAME_OVERHEAD

RESPONSE_DATA_OFFSET = 5  # first byte after the status byte
BUF_SIZE = 256

# Measurement scale factors
VOLTAGE_STEP = 1.0  # mV
CURRENT_STEP = 1.0 / 128  # mA
POWER_STEP = 5.0  # mW

# CRC-8 parameters (non-standard, the device checks them bit for bit)
CRC8_POLY = 0x85
CRC8_INIT = 0x00

# Serial defaults
DEFAULT_BAUD = 19200
DEFAULT_TIMEOUT = 10.0  # seconds

# Minimum interval between two device polls
POLL_INTERVAL = 0.5  # 500 ms


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class WattCheckerError(Exception):
    """Base class for all watt checker errors."""


class TransportError(WattCheckerError, IOError):
    """A read or write on the serial link failed or timed out."""


class BoundsError(WattCheckerError):
    """A read would have run outside the receive buffer."""


class ProtocolError(WattCheckerError):
    """The device answered with a frame that cannot be accepted."""


class ProtocolStatusError(ProtocolError):
    """The device reported a nonzero status byte."""

    def __init__(self, command: int, status: int):
        super().__init__(
            f"Command 0x{command:02X} failed with device status 0x{status:02X}"
        )
        self.command = command
        self.status = status


class ShortResponseError(ProtocolError):
    """Fewer bytes arrived than the command's response length."""


class UnexpectedResponseError(ProtocolError):
    """The response echoes a different command or fails its checksum."""


class SessionStateError(WattCheckerError):
    """A command was issued out of order or on a closed/failed session."""


# ---------------------------------------------------------------------------
# Frame codec
# ---------------------------------------------------------------------------
def _make_crc8_table(poly: int) -> tuple:
    table = []
    for i in range(256):
        crc = i
        for _ in range(8):
            if crc & 0x80:
                crc = ((crc << 1) ^ poly) & 0xFF
            else:
                crc = (crc << 1) & 0xFF
        table.append(crc)
    return tuple(table)


_CRC8_TABLE = _make_crc8_table(CRC8_POLY)


def crc8(data: bytes, crc: int = CRC8_INIT) -> int:
    """CRC-8 with poly 0x85, init 0x00, no reflection, xorout 0x00."""
    for b in data:
        crc = _CRC8_TABLE[crc ^ b]
    return crc


def build_frame(payload: bytes) -> bytes:
    """Build a wire frame: header | length LE16 | payload | crc8(payload)."""
    length = len(payload)
    return (
        bytes([HEADER, length & 0xFF, (length >> 8) & 0xFF])
        + payload
        + bytes([crc8(payload)])
    )


def build_command(command: int, data: bytes = b"") -> bytes:
    """Build a command frame whose payload is the command code followed by data."""
    return build_frame(bytes([command]) + data)


def validate_response(buf: bytes, expected_length: int) -> tuple[bool, Optional[int]]:
    """Check a response frame's header, length and status byte.

    Returns ``(ok, status)``. ``status`` is None when fewer than 5 bytes
    were received.
    """
    if len(buf) < 5:
        return False, None
    status = buf[4]
    ok = (
        status == STATUS_OK
        and len(buf) == expected_length
        and frame_well_formed(buf, expected_length)
    )
    return ok, status


def frame_well_formed(buf: bytes, expected_length: int) -> bool:
    """True if ``buf`` starts with the header and declares the expected payload length."""
    if len(buf) < 3 or buf[0] != HEADER:
        return False
    return buf[1] | (buf[2] << 8) == expected_length - FRAME_OVERHEAD


def verify_checksum(buf: bytes) -> bool:
    """Recompute the CRC over a response frame's payload and compare."""
    if len(buf) < FRAME_OVERHEAD:
        return False
    length = buf[1] | (buf[2] << 8)
    if len(buf) != length + FRAME_OVERHEAD:
        return False
    return crc8(buf[3:3 + length]) == buf[3 + length]


# ---------------------------------------------------------------------------
# Transport driver
# ---------------------------------------------------------------------------
def write_exact(port, data: bytes) -> int:
    """Write all of ``data``, looping over short writes.

    Raises:
        TransportError: on a serial error, a write timeout, or a write
            that makes no progress.
    """
    written = 0
    while written < len(data):
        try:
            n = port.write(data[written:])
        except serial.SerialException as e:
            raise TransportError(f"Write failed: {e}") from e
        if not n:
            raise TransportError(
                f"Write made no progress after {written}/{len(data)} bytes"
            )
        written += n
    return written


def read_exact(port, buf: bytearray, count: int) -> int:
    """Read exactly ``count`` bytes into ``buf``, looping over short reads.

    Raises:
        BoundsError: if the read would run outside ``buf``.
        TransportError: on a serial error or a read timeout.
    """
    length = 0
    while length < count:
        remaining = count - length
        if length < 0 or length >= len(buf):
            raise BoundsError(f"Read offset {length} outside buffer of {len(buf)}")
        if remaining < 0 or length + remaining > len(buf):
            raise BoundsError(
                f"Read of {remaining} bytes at offset {length} overruns "
                f"buffer of {len(buf)}"
            )
        try:
            chunk = port.read(remaining)
        except serial.SerialException as e:
            raise TransportError(f"Read failed: {e}") from e
        if not chunk:
            raise TransportError(f"Read timed out after {length}/{count} bytes")
        buf[length:length + len(chunk)] = chunk
        length += len(chunk)
    return length


# ---------------------------------------------------------------------------
# Telemetry decoder
# ---------------------------------------------------------------------------
def raw24(data: bytes, offset: int = 0) -> int:
    """Extract a 3-byte little-endian unsigned raw value."""
    return int.from_bytes(data[offset:offset + 3], "little")


def to_volts(raw: int) -> float:
    return raw * VOLTAGE_STEP / 1000


def to_milliamps(raw: int) -> float:
    return raw * CURRENT_STEP


def to_watts(raw: int) -> float:
    return raw * POWER_STEP / 1000


class ReadingStatus(enum.Enum):
    OK = "ok"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class DeviceClock:
    """Calendar fields as reported by the device, not validated."""

    year: int = 0
    month: int = 0
    day: int = 0
    hour: int = 0
    minute: int = 0
    second: int = 0

    def to_datetime(self) -> Optional[datetime]:
        """Local naive datetime, or None when the fields are not a real date."""
        try:
            return datetime(self.year, self.month, self.day,
                            self.hour, self.minute, self.second)
        except ValueError:
            return None


@dataclass(frozen=True)
class Reading:
    """One measurement snapshot.

    ``voltage`` is in volts, ``current`` in milliamps, ``power`` in watts.
    A reading with ``status == ReadingStatus.UNAVAILABLE`` is the zero-valued
    placeholder returned when a poll failed.
    """

    voltage: float = 0.0
    current: float = 0.0
    power: float = 0.0
    clock: Optional[DeviceClock] = None
    status: ReadingStatus = ReadingStatus.OK

    @classmethod
    def unavailable(cls) -> "Reading":
        return cls(status=ReadingStatus.UNAVAILABLE)

    @property
    def ok(self) -> bool:
        return self.status is ReadingStatus.OK

    @property
    def timestamp(self) -> Optional[datetime]:
        if self.clock is None:
            return None
        return self.clock.to_datetime()

    def as_dict(self) -> dict:
        ts = self.timestamp
        return {
            "status": self.status.value,
            "timestamp": ts.isoformat() if ts else None,
            "voltage": self.voltage,
            "current": self.current,
            "power": self.power,
        }


def decode_reading(data: bytes) -> Reading:
    """Decode the 15 measurement bytes that follow a response's status byte.

    Layout: current[0:3], voltage[3:6], power[6:9] (all 24-bit LE), then
    sec, min, hour, day, month, 2-digit year.
    """
    clock = DeviceClock(
        year=2000 + data[14],
        month=data[13],
        day=data[12],
        hour=data[11],
        minute=data[10],
        second=data[9],
    )
    return Reading(
        voltage=to_volts(raw24(data, 3)),
        current=to_milliamps(raw24(data, 0)),
        power=to_watts(raw24(data, 6)),
        clock=clock,
    )


def clock_payload(now: datetime) -> bytes:
    """Clock-set arguments: sec, min, hour, day, month, yy, weekday (Sunday=0)."""
    return bytes([
        now.second,
        now.minute,
        now.hour,
        now.day,
        now.month,
        now.year % 100,
        now.isoweekday() % 7,
    ])


# ---------------------------------------------------------------------------
# WattChecker session
# ---------------------------------------------------------------------------
class SessionState(enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    CLOCK_SET = "clock_set"
    MEASURING = "measuring"
    FAILED = "failed"


@dataclass
class PollState:
    polled_at: Optional[float] = None
    reading: Reading = field(default_factory=Reading.unavailable)


class WattChecker:
    """Python API for one REX-BTWATTCH1 watt checker.

    Usage::

        with WattChecker("/dev/rfcomm0", name="desk") as wc:
            print(wc.collect())
    """

    def __init__(self, port: str, name: Optional[str] = None,
                 baud: int = DEFAULT_BAUD, timeout: float = DEFAULT_TIMEOUT,
                 poll_interval: float = POLL_INTERVAL,
                 verify_checksum: bool = False):
        self._port = port
        self._name = name or port
        self._baud = baud
        self._timeout = timeout
        self._poll_interval = poll_interval
        self._verify_checksum = verify_checksum
        self._ser: Optional[serial.Serial] = None

        self._state = SessionState.CLOSED
        self._poll = PollState()
        self._lock = threading.RLock()
        self._clock = time.monotonic

    # -- Properties ----------------------------------------------------------

    @property
    def port(self) -> str:
        return self._port

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def last_reading(self) -> Reading:
        return self._poll.reading

    # -- Context manager -----------------------------------------------------

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # -- Connection lifecycle ------------------------------------------------

    def open(self):
        """Open the serial port without initializing the device."""
        with self._lock:
            if self._state is not SessionState.CLOSED:
                raise SessionStateError(
                    f"{self._name}: cannot open a session in state {self._state.value}"
                )
            logger.info("Opening serial port %s", self._port)
            try:
                self._ser = serial.Serial(
                    self._port, self._baud,
                    bytesize=serial.EIGHTBITS, parity=serial.PARITY_EVEN,
                    stopbits=serial.STOPBITS_ONE,
                    timeout=self._timeout, write_timeout=self._timeout,
                )
            except (serial.SerialException, ValueError) as e:
                # pyserial raises ValueError for out-of-range line settings
                self._state = SessionState.FAILED
                raise TransportError(f"Could not open {self._port}: {e}") from e
            self._state = SessionState.OPEN

    def connect(self, fast: bool = False):
        """Open the port and run the initialization sequence.

        1. Open serial port
        2. Set the device clock to host time
        3. Start measurement

        Any failure closes the port and leaves the session FAILED.
        """
        self.open()
        try:
            self.set_clock()
            self.start_measurement(fast=fast)
        except WattCheckerError:
            logger.error("Initialization of %s (%s) failed", self._name, self._port)
            self._close_port()
            self._state = SessionState.FAILED
            raise

    def close(self):
        """Close the serial port."""
        with self._lock:
            self._close_port()
            self._state = SessionState.CLOSED

    disconnect = close

    def _close_port(self):
        if self._ser is not None:
            if self._ser.is_open:
                self._ser.close()
            logger.info("Closed serial port %s", self._port)
        self._ser = None

    # -- Low-level exchange --------------------------------------------------

    def _exchange(self, command: int, data: bytes, response_length: int) -> bytes:
        """Send one command frame and read its full response.

        Raises:
            TransportError, BoundsError: from the transport.
            ShortResponseError: fewer bytes than ``response_length``.
            ProtocolStatusError: nonzero status byte.
            UnexpectedResponseError: bad header, length field, echo or checksum.
        """
        with self._lock:
            if self._ser is None:
                raise SessionStateError(f"{self._name}: port is not open")
            frame = build_command(command, data)
            # Drop stale bytes, e.g. the late tail of a response that timed out
            try:
                self._ser.reset_input_buffer()
            except serial.SerialException as e:
                raise TransportError(f"Flush failed: {e}") from e
            logger.debug("%s >> %s", self._name, frame.hex(" "))
            write_exact(self._ser, frame)

            buf = bytearray(BUF_SIZE)
            n = read_exact(self._ser, buf, response_length)
            resp = bytes(buf[:n])
            logger.debug("%s << %s", self._name, resp.hex(" "))

        ok, status = validate_response(resp, response_length)
        if status is None or len(resp) < response_length:
            raise ShortResponseError(
                f"Expected {response_length} bytes for command 0x{command:02X}, "
                f"got {len(resp)}"
            )
        if not frame_well_formed(resp, response_length):
            raise UnexpectedResponseError(
                f"Malformed response to command 0x{command:02X}: {resp[:3].hex(' ')}"
            )
        if status != STATUS_OK:
            raise ProtocolStatusError(command, status)
        if not ok:
            raise ShortResponseError(
                f"Response length {len(resp)} does not match {response_length}"
            )
        if resp[3] != command:
            raise UnexpectedResponseError(
                f"Response echoes command 0x{resp[3]:02X}, sent 0x{command:02X}"
            )
        if self._verify_checksum and not verify_checksum(resp):
            raise UnexpectedResponseError(
                f"Checksum mismatch in response to command 0x{command:02X}"
            )
        return resp

    def _require(self, *states: SessionState):
        if self._state not in states:
            raise SessionStateError(
                f"{self._name}: command not allowed in state {self._state.value}"
            )

    # -- Commands ------------------------------------------------------------

    def set_clock(self, now: Optional[datetime] = None):
        """Synchronize the device real-time clock to ``now`` (host time by default)."""
        with self._lock:
            self._require(SessionState.OPEN, SessionState.CLOCK_SET,
                          SessionState.MEASURING)
            now = now or datetime.now()
            self._exchange(CMD_SET_CLOCK, clock_payload(now), SET_CLOCK_RX_LENGTH)
            if self._state is SessionState.OPEN:
                self._state = SessionState.CLOCK_SET
            logger.info("%s: clock set to %s", self._name, now.isoformat(timespec="seconds"))

    def start_measurement(self, fast: bool = False):
        """Arm the device's measurement loop. Requires the clock to be set."""
        with self._lock:
            self._require(SessionState.CLOCK_SET, SessionState.MEASURING)
            mode = MODE_FAST if fast else MODE_NORMAL
            self._exchange(CMD_START_MEASURE, bytes([mode]), START_MEASURE_RX_LENGTH)
            self._state = SessionState.MEASURING
            logger.info("%s: measurement started", self._name)

    def request_measurement(self) -> Reading:
        """Pull one fresh snapshot from the device. Bypasses the poll cache."""
        with self._lock:
            self._require(SessionState.MEASURING)
            resp = self._exchange(CMD_READ_MEASURE, b"", READ_MEASURE_RX_LENGTH)
        return decode_reading(resp[RESPONSE_DATA_OFFSET:])

    # -- Polling cache -------------------------------------------------------

    def collect(self) -> Reading:
        """Return the latest reading, polling the device at most every 500 ms.

        A failed poll returns ``Reading.unavailable()`` and leaves the cache
        untouched, so the next call polls again.
        """
        with self._lock:
            if self._poll.polled_at is not None:
                if self._clock() - self._poll.polled_at < self._poll_interval:
                    return self._poll.reading
            try:
                reading = self.request_measurement()
            except (TransportError, BoundsError, ProtocolError) as e:
                logger.warning("%s: measurement failed: %s", self._name, e)
                return Reading.unavailable()
            self._poll = PollState(polled_at=self._clock(), reading=reading)
            return reading

    def read_power(self) -> float:
        """Measured power in watts."""
        return self.collect().power

    def read_voltage(self) -> float:
        """Measured voltage in volts."""
        return self.collect().voltage

    def read_current(self) -> float:
        """Measured current in milliamps."""
        return self.collect().current


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------
def format_reading(reading: Reading) -> str:
    if not reading.ok:
        return "measurement unavailable"
    ts = reading.timestamp
    when = ts.isoformat() if ts else "invalid device clock"
    return (
        f"{when}  voltage = {reading.voltage:6.2f} V, "
        f"current = {reading.current:8.2f} mA, power = {reading.power:7.2f} W"
    )


def _cli(argv=None):
    import argparse
    import json as _json
    import sys

    parser = argparse.ArgumentParser(
        prog="wattchecker",
        description="REX-BTWATTCH1 watt checker command-line interface",
    )
    parser.add_argument(
        "-p", "--port",
        default="/dev/rfcomm0",
        help="serial port (default: %(default)s)",
    )
    parser.add_argument(
        "-b", "--baud", type=int, default=DEFAULT_BAUD,
        help="baud rate (default: %(default)s)",
    )
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="log frame dumps")
    sub = parser.add_subparsers(dest="command", required=True)

    # -- read ----------------------------------------------------------------
    p = sub.add_parser("read", help="read one measurement")
    p.add_argument("--json", action="store_true", help="print JSON")

    # -- watch ---------------------------------------------------------------
    p = sub.add_parser("watch", help="print measurements repeatedly")
    p.add_argument("--interval", type=float, default=1.0,
                   help="seconds between readings (default: %(default)s)")
    p.add_argument("--count", type=int, default=0,
                   help="number of readings, 0 = forever (default: %(default)s)")

    # -- set-clock -----------------------------------------------------------
    sub.add_parser("set-clock", help="sync the device clock to host time")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    wc = WattChecker(args.port, baud=args.baud)

    try:
        if args.command == "set-clock":
            wc.open()
            wc.set_clock()
            print("Clock set")
        else:
            wc.connect()

        if args.command == "read":
            reading = wc.request_measurement()
            if args.json:
                print(_json.dumps(reading.as_dict(), indent=2))
            else:
                print(format_reading(reading))

        elif args.command == "watch":
            n = 0
            while args.count == 0 or n < args.count:
                print(format_reading(wc.collect()), flush=True)
                n += 1
                if args.count == 0 or n < args.count:
                    time.sleep(args.interval)

    except KeyboardInterrupt:
        pass
    except WattCheckerError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        wc.close()


if __name__ == "__main__":
    _cli()

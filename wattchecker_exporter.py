#!/usr/bin/env python3
"""
REX-BTWATTCH1 Prometheus exporter

Reads the device list from a YAML settings file, initializes every watt
checker, and publishes power / voltage / current gauges on /metrics.

Requires: prometheus-client, pyyaml, pyserial

Run:
    python wattchecker_exporter.py --config setting.yml --listen-address :4351

Settings file::

    Devices:
      - DevicePath: /dev/rfcomm0
        DeviceName: desk
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

import yaml
from prometheus_client import REGISTRY, start_http_server
from prometheus_client.core import GaugeMetricFamily

from wattchecker import DEFAULT_BAUD, WattChecker, WattCheckerError

logger = logging.getLogger(__name__)

DEFAULT_LISTEN_ADDRESS = ":4351"
DEFAULT_CONFIG = "setting.yml"

METRIC_PREFIX = "REXBTWATTCH"
METRIC_HELP = "REX-BTWATTCH"
NAME_LABEL = "Name"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------
class ConfigError(Exception):
    """The settings file is missing or malformed."""


@dataclass
class DeviceConfig:
    path: str
    name: str
    baud: int = DEFAULT_BAUD


@dataclass
class Settings:
    devices: list[DeviceConfig] = field(default_factory=list)


def parse_settings(data) -> Settings:
    """Build Settings from the decoded YAML document."""
    if not isinstance(data, dict) or "Devices" not in data:
        raise ConfigError("Settings must contain a 'Devices' list")
    entries = data["Devices"]
    if not isinstance(entries, list) or not entries:
        raise ConfigError("'Devices' must be a non-empty list")

    devices = []
    for i, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ConfigError(f"Device #{i} must be a mapping")
        missing = [k for k in ("DevicePath", "DeviceName") if not entry.get(k)]
        if missing:
            raise ConfigError(f"Device #{i} is missing {', '.join(missing)}")
        try:
            baud = int(entry.get("BaudRate", DEFAULT_BAUD))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Device #{i} has an invalid BaudRate") from e
        if baud <= 0:
            raise ConfigError(f"Device #{i} has an invalid BaudRate: {baud}")
        devices.append(DeviceConfig(
            path=str(entry["DevicePath"]),
            name=str(entry["DeviceName"]),
            baud=baud,
        ))
    return Settings(devices=devices)


def load_settings(path) -> Settings:
    """Load and validate the YAML settings file."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read settings file {path}: {e}") from e
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Cannot parse settings file {path}: {e}") from e
    return parse_settings(data)


def parse_listen_address(address: str) -> tuple[str, int]:
    """Split ``host:port`` (host may be empty, as in ``:4351``)."""
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"Listen address must be host:port, got {address!r}")
    try:
        return host.strip("[]"), int(port)
    except ValueError:
        raise ValueError(f"Invalid port in listen address {address!r}") from None


# ---------------------------------------------------------------------------
# Collector
# ---------------------------------------------------------------------------
class WattCheckerCollector:
    """Custom collector: one ``collect()`` per device per scrape."""

    def __init__(self, checkers: Iterable[WattChecker]):
        self._checkers = list(checkers)

    def describe(self):
        return self._families()

    def _families(self):
        return [
            GaugeMetricFamily(f"{METRIC_PREFIX}_Watt", METRIC_HELP, labels=[NAME_LABEL]),
            GaugeMetricFamily(f"{METRIC_PREFIX}_Voltage", METRIC_HELP, labels=[NAME_LABEL]),
            GaugeMetricFamily(f"{METRIC_PREFIX}_Ampere", METRIC_HELP, labels=[NAME_LABEL]),
            GaugeMetricFamily(
                f"{METRIC_PREFIX}_Up",
                "Whether the last poll of the watt checker succeeded",
                labels=[NAME_LABEL],
            ),
        ]

    def collect(self):
        watt, voltage, ampere, up = self._families()
        for wc in self._checkers:
            reading = wc.collect()
            labels = [wc.name]
            watt.add_metric(labels, reading.power)
            voltage.add_metric(labels, reading.voltage)
            ampere.add_metric(labels, reading.current)
            up.add_metric(labels, 1.0 if reading.ok else 0.0)
        yield watt
        yield voltage
        yield ampere
        yield up


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def connect_all(settings: Settings) -> list[WattChecker]:
    """Connect every configured device in order.

    If one fails, the ones already connected are closed and the error is
    re-raised.
    """
    checkers = []
    try:
        for dev in settings.devices:
            wc = WattChecker(dev.path, name=dev.name, baud=dev.baud)
            wc.connect()
            checkers.append(wc)
    except WattCheckerError:
        for wc in checkers:
            wc.close()
        raise
    return checkers


def main(argv: Optional[list] = None) -> int:
    import argparse

    parser = argparse.ArgumentParser(
        prog="wattchecker-exporter",
        description="Prometheus exporter for REX-BTWATTCH1 watt checkers",
    )
    parser.add_argument(
        "--listen-address", default=DEFAULT_LISTEN_ADDRESS,
        help="the address to listen on for HTTP requests (default: %(default)s)",
    )
    parser.add_argument(
        "--config", default=DEFAULT_CONFIG,
        help="settings file with the device list (default: %(default)s)",
    )
    parser.add_argument(
        "--log-level", default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="log level (default: %(default)s)",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        host, port = parse_listen_address(args.listen_address)
        settings = load_settings(args.config)
    except (ConfigError, ValueError) as e:
        logger.error("%s", e)
        return 1

    try:
        checkers = connect_all(settings)
    except WattCheckerError as e:
        logger.error("Device initialization failed: %s", e)
        return 1

    collector = WattCheckerCollector(checkers)
    REGISTRY.register(collector)
    try:
        start_http_server(port, addr=host or "0.0.0.0")
        logger.info("Serving metrics on %s", args.listen_address)
        while True:
            time.sleep(1)
    except OSError as e:
        logger.error("Could not listen on %s: %s", args.listen_address, e)
        return 1
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        REGISTRY.unregister(collector)
        for wc in checkers:
            wc.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

#!/usr/bin/env python3
"""
REX-BTWATTCH1 Watt Checker MCP Server

Exposes a watt checker as read-only MCP tools for LLM-driven monitoring.

Requires: Python 3.10+, fastmcp (`pip install fastmcp`), pyserial

Run:
    python wattchecker_mcp.py                      # stdio transport (default)
"""

import json
from typing import Optional

from fastmcp import FastMCP

from wattchecker import WattChecker

mcp = FastMCP(
    "REX-BTWATTCH1 Watt Checker",
    instructions=(
        "Reads power consumption from a REX-BTWATTCH1 watt checker over a "
        "serial or Bluetooth SPP port. Always connect() first. Readings are "
        "voltage in volts, current in milliamps and power in watts. The device "
        "is polled at most every 500 ms; faster calls return the cached reading."
    ),
)

# Global device handle — one connection at a time
_checker: Optional[WattChecker] = None


def _require_connection() -> WattChecker:
    if _checker is None:
        raise RuntimeError("Not connected. Call connect() first.")
    return _checker


def _fmt(value: float, decimals: int = 3) -> float:
    """Round a float for clean JSON output."""
    return round(value, decimals)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool()
def connect(port: str, name: Optional[str] = None) -> str:
    """Connect to the watt checker.

    Opens the serial port, sets the device clock to host time and starts
    measurement.

    Args:
        port: Serial port path, e.g. "/dev/rfcomm0" (Linux) or "COM5" (Windows).
        name: Optional display name for the device.
    """
    global _checker
    if _checker is not None:
        return json.dumps({"error": "Already connected. disconnect() first."})

    wc = WattChecker(port, name=name)
    wc.connect()
    _checker = wc

    return json.dumps({
        "status": "connected",
        "port": wc.port,
        "name": wc.name,
        "state": wc.state.value,
    })


@mcp.tool()
def disconnect() -> str:
    """Disconnect from the watt checker and close the serial port."""
    global _checker
    if _checker is None:
        return json.dumps({"status": "already disconnected"})

    _checker.close()
    _checker = None
    return json.dumps({"status": "disconnected"})


@mcp.tool()
def read_measurement() -> str:
    """Read the current voltage, current and power.

    Returns a JSON object with ``voltage`` (V), ``current`` (mA), ``power``
    (W), the device ``timestamp`` and a ``status`` of "ok" or "unavailable".
    An unavailable reading means the poll failed; all values are then 0.
    """
    wc = _require_connection()
    result = wc.collect().as_dict()
    result["voltage"] = _fmt(result["voltage"], 2)
    result["current"] = _fmt(result["current"], 2)
    result["power"] = _fmt(result["power"], 3)
    return json.dumps(result)


@mcp.tool()
def set_clock() -> str:
    """Synchronize the device clock to the host's local time."""
    wc = _require_connection()
    wc.set_clock()
    return json.dumps({"status": "ok"})


@mcp.tool()
def status() -> str:
    """Report the connection state and the last cached reading."""
    if _checker is None:
        return json.dumps({"connected": False})
    return json.dumps({
        "connected": True,
        "port": _checker.port,
        "name": _checker.name,
        "state": _checker.state.value,
        "last_reading": _checker.last_reading.as_dict(),
    })


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    mcp.run()

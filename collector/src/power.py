"""
INA219 power monitor reader over I2C.

Reads bus voltage, current and power from one or more INA219 devices on
shared I2C buses and returns them as :class:`PowerSample` objects.

Each :meth:`PowerReader.read` call opens the bus, runs the full transfer
sequence for one rail and closes the bus again, so no file descriptor is
held between fast-loop ticks. Rails that share a bus are serialised by a
per-bus lock.

Transfer sequence per read:

1. Write the calibration register (the INA219 forgets it on power-on reset).
2. Wake the device from power-down mode and wait one conversion
   (only when ``power_down`` is enabled).
3. Read bus voltage (0x02), current (0x04) and power (0x03).
4. Put the device back into power-down mode (only when ``power_down``).

There is no retry here; a failed read raises :class:`SensorError` and the
caller decides what to do with the cycle.

CHANGELOG:
- 2026-10-16: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from smbus2 import SMBus

from collector.src.models import PowerSample

if TYPE_CHECKING:
    from collector.src.config import RailConfig

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# INA219 register map and constants
# ---------------------------------------------------------------------------

REG_CONFIG: int = 0x00
REG_BUS_VOLTAGE: int = 0x02
REG_POWER: int = 0x03
REG_CURRENT: int = 0x04
REG_CALIBRATION: int = 0x05

MODE_MASK: int = 0x0007
"""Operating-mode bits of the configuration register."""

MODE_CONTINUOUS: int = 0x0007
"""Shunt and bus voltage, continuous conversion."""

BUS_VOLTAGE_LSB_V: float = 0.004
BUS_VOLTAGE_OVF: int = 0x0001
"""Math overflow flag in the bus voltage register."""

CALIBRATION_SCALE: float = 0.04096
CURRENT_LSB_STEPS: int = 32768
POWER_LSB_RATIO: int = 20

WAKE_SETTLE_S: float = 0.0006
"""Wake-up plus one 12-bit conversion (532 us)."""


class SensorError(Exception):
    """A power source could not be read (bus unavailable, no ACK, bad data).

    Attributes:
        rail_id: Label of the rail or plug that failed.
    """

    def __init__(self, rail_id: str, message: str, *, kind: str = "rail") -> None:
        super().__init__(f"{kind} '{rail_id}': {message}")
        self.rail_id = rail_id


# ---------------------------------------------------------------------------
# Pure conversion helpers
# ---------------------------------------------------------------------------


def _convert_s16(raw: int) -> int:
    """Interpret a raw 16-bit value as signed (two's complement)."""
    val = raw & 0xFFFF
    if val >= 0x8000:
        val -= 0x10000
    return val


def current_lsb_for(expected_amps: float) -> float:
    """Return the current LSB in amps for the expected maximum current."""
    return expected_amps / CURRENT_LSB_STEPS


def calibration_for(expected_amps: float, shunt_ohms: float) -> int:
    """Return the calibration register value for a rail.

    Raises:
        ValueError: If the value does not fit the 16-bit register.
    """
    value = int(CALIBRATION_SCALE / (current_lsb_for(expected_amps) * shunt_ohms))
    if value < 1 or value > 0xFFFF:
        raise ValueError(
            f"calibration {value} out of range for expected_amps={expected_amps}, "
            f"shunt_ohms={shunt_ohms}"
        )
    return value


def decode_bus_voltage(raw: int) -> float:
    """Convert the bus voltage register to volts.

    Raises:
        ValueError: If the math overflow flag is set.
    """
    if raw & BUS_VOLTAGE_OVF:
        raise ValueError(f"bus voltage register 0x{raw:04x} has overflow flag set")
    return (raw >> 3) * BUS_VOLTAGE_LSB_V


def decode_current(raw: int, current_lsb: float) -> float:
    """Convert the current register to milliamps."""
    return _convert_s16(raw) * current_lsb * 1000.0


def decode_power(raw: int, current_lsb: float) -> float:
    """Convert the power register to milliwatts."""
    return (raw & 0xFFFF) * POWER_LSB_RATIO * current_lsb * 1000.0


# ---------------------------------------------------------------------------
# Reader
# ---------------------------------------------------------------------------


class PowerReader:
    """Reads INA219 power monitors, one rail per call.

    Args:
        rails: Rail definitions; labels must be unique.
        power_down: Put devices into power-down mode between reads.
        clock: Returns the timestamp stored in each sample.

    Raises:
        ValueError: If a rail's calibration does not fit the register.
    """

    def __init__(
        self,
        rails: Sequence[RailConfig],
        *,
        power_down: bool = True,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._rails = {rail.label: rail for rail in rails}
        self._calibration = {
            rail.label: calibration_for(rail.expected_amps, rail.shunt_ohms)
            for rail in rails
        }
        self._bus_locks: dict[str | int, threading.Lock] = {
            rail.bus: threading.Lock() for rail in rails
        }
        self._power_down = power_down
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    @property
    def rail_ids(self) -> list[str]:
        return list(self._rails)

    def read(self, rail_id: str) -> PowerSample:
        """Read voltage, current and power for one rail.

        Args:
            rail_id: Label of a configured rail.

        Returns:
            A :class:`PowerSample` with the measured values.

        Raises:
            KeyError: If *rail_id* is not configured.
            SensorError: If the bus cannot be opened, the device does not
                respond, or the register data is malformed.
        """
        rail = self._rails[rail_id]
        current_lsb = current_lsb_for(rail.expected_amps)

        with self._bus_locks[rail.bus]:
            try:
                bus = SMBus(rail.bus)
            except OSError as exc:
                raise SensorError(rail_id, f"bus {rail.bus} unavailable: {exc}") from exc
            try:
                raw = self._transfer(bus, rail.address, self._calibration[rail_id])
            except OSError as exc:
                raise SensorError(
                    rail_id,
                    f"device 0x{rail.address:02x} on {rail.bus} not responding: {exc}",
                ) from exc
            except ValueError as exc:
                raise SensorError(rail_id, f"malformed register data: {exc}") from exc
            finally:
                bus.close()

        try:
            voltage = decode_bus_voltage(raw[REG_BUS_VOLTAGE])
        except ValueError as exc:
            raise SensorError(rail_id, f"malformed register data: {exc}") from exc

        sample = PowerSample(
            rail_id=rail_id,
            voltage=voltage,
            current=decode_current(raw[REG_CURRENT], current_lsb),
            power=decode_power(raw[REG_POWER], current_lsb),
            sampled_at=self._clock(),
        )
        logger.debug(
            "Rail %s: %.3f V, %.1f mA, %.1f mW",
            rail_id,
            sample.voltage,
            sample.current,
            sample.power,
        )
        return sample

    def probe(self) -> None:
        """Check that every configured rail answers on its bus.

        Intended for startup: reads the configuration register of each
        device once.

        Raises:
            SensorError: For the first rail that cannot be reached.
        """
        for rail_id, rail in self._rails.items():
            with self._bus_locks[rail.bus]:
                try:
                    with SMBus(rail.bus) as bus:
                        _read_word(bus, rail.address, REG_CONFIG)
                except (OSError, ValueError) as exc:
                    raise SensorError(
                        rail_id,
                        f"probe of 0x{rail.address:02x} on {rail.bus} failed: {exc}",
                    ) from exc
            logger.info(
                "Rail %s: INA219 found at 0x%02x on %s", rail_id, rail.address, rail.bus
            )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _transfer(self, bus: SMBus, address: int, calibration: int) -> dict[int, int]:
        """Run the register sequence and return ``{register: raw_word}``."""
        _write_word(bus, address, REG_CALIBRATION, calibration)

        config = 0
        if self._power_down:
            config = _read_word(bus, address, REG_CONFIG)
            _write_word(bus, address, REG_CONFIG, config | MODE_CONTINUOUS)
            time.sleep(WAKE_SETTLE_S)

        raw = {
            register: _read_word(bus, address, register)
            for register in (REG_BUS_VOLTAGE, REG_CURRENT, REG_POWER)
        }

        if self._power_down:
            _write_word(bus, address, REG_CONFIG, config & ~MODE_MASK & 0xFFFF)
        return raw


def _read_word(bus: SMBus, address: int, register: int) -> int:
    """Read a big-endian 16-bit register."""
    data = bus.read_i2c_block_data(address, register, 2)
    if len(data) != 2:
        raise ValueError(f"register 0x{register:02x}: expected 2 bytes, got {len(data)}")
    return (data[0] << 8) | data[1]


def _write_word(bus: SMBus, address: int, register: int, value: int) -> None:
    """Write a big-endian 16-bit register."""
    bus.write_i2c_block_data(address, register, [(value >> 8) & 0xFF, value & 0xFF])

"""
Brewslave serial protocol.

Every transaction is one request frame followed by a fixed-size response,
all little-endian:

    0x01                 read state  -> f32 current, f32 target, u8 flags
    0x02 <f32 target>    set target  -> u8 status
    0x03 / 0x04          stirrer on/off -> u8 status

Flags: bit0 stirrer on, bit1 heater on. Status: 0x80 ACK, 0x40 NACK.
A NaN temperature means the sensor value is unavailable.
"""

import asyncio
import logging
import math
import struct
from typing import Optional

import serial
import serial_asyncio

from brewmeister.domain.errors import DeviceIoError, DeviceTimeout, Nack, UnexpectedData
from brewmeister.domain.models import DeviceState
from brewmeister.hardware.device import Device
from brewmeister.infra.config import SerialConfig

logger = logging.getLogger(__name__)

READ_STATE = 0x01
SET_TEMPERATURE = 0x02
TURN_STIRRER_ON = 0x03
TURN_STIRRER_OFF = 0x04

RESPONSE_ACK = 0x80
RESPONSE_NACK = 0x40

STIRRER_BIT = 0x01
HEATER_BIT = 0x02

_STATE_FRAME = struct.Struct("<ffB")
_SET_FRAME = struct.Struct("<Bf")


def check_status(status: int) -> None:
    """Raise unless the status byte carries the ACK bit."""
    if status & RESPONSE_ACK != 0:
        return
    if status & RESPONSE_NACK != 0:
        raise Nack()
    raise UnexpectedData(status)


def _temperature(raw: float) -> Optional[float]:
    return None if math.isnan(raw) else raw


def encode_set_temperature(temperature: float) -> bytes:
    try:
        return _SET_FRAME.pack(SET_TEMPERATURE, temperature)
    except (struct.error, OverflowError) as exc:
        raise ValueError(f"Temperature {temperature!r} does not fit a 32-bit float") from exc


def decode_state(payload: bytes) -> DeviceState:
    current, target, flags = _STATE_FRAME.unpack(payload)
    return DeviceState(
        current_temperature=_temperature(current),
        target_temperature=_temperature(target),
        stirrer_on=bool(flags & STIRRER_BIT),
        heater_on=bool(flags & HEATER_BIT),
    )


class BrewslaveClient:
    """Request/response client over an asyncio byte stream."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        timeout: float = 1.0,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self.timeout = timeout
        # One transaction at a time on the stream
        self._lock = asyncio.Lock()
        self._stale_input = False

    @classmethod
    async def open(
        cls, port: str, baudrate: int = 115200, timeout: float = 1.0
    ) -> "BrewslaveClient":
        try:
            reader, writer = await serial_asyncio.open_serial_connection(
                url=port,
                baudrate=baudrate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                xonxoff=False,
                rtscts=False,
                dsrdtr=False,
            )
        except (serial.SerialException, OSError) as exc:
            raise DeviceIoError(f"Cannot open {port}: {exc}") from exc
        logger.info("Opened %s at %d baud", port, baudrate)
        return cls(reader, writer, timeout)

    # Public API -------------------------------------------------
    async def read_state(self) -> DeviceState:
        payload = await self._transaction(bytes([READ_STATE]), _STATE_FRAME.size)
        state = decode_state(payload)
        logger.debug("read %s", state)
        return state

    async def set_temperature(self, temperature: float) -> None:
        frame = encode_set_temperature(temperature)
        response = await self._transaction(frame, 1)
        check_status(response[0])

    async def set_stirrer(self, on: bool) -> None:
        opcode = TURN_STIRRER_ON if on else TURN_STIRRER_OFF
        response = await self._transaction(bytes([opcode]), 1)
        check_status(response[0])

    async def turn_stirrer_on(self) -> None:
        await self.set_stirrer(True)

    async def turn_stirrer_off(self) -> None:
        await self.set_stirrer(False)

    async def close(self) -> None:
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (serial.SerialException, OSError):
            pass

    # Internals --------------------------------------------------
    async def _transaction(self, request: bytes, response_size: int) -> bytes:
        async with self._lock:
            if self._stale_input:
                await self._discard_input()
            await self._write(request)
            return await self._read(response_size)

    async def _write(self, payload: bytes) -> None:
        try:
            self._writer.write(payload)
            await asyncio.wait_for(self._writer.drain(), self.timeout)
        except asyncio.TimeoutError as exc:
            raise DeviceTimeout(f"Write of {len(payload)} bytes timed out") from exc
        except (serial.SerialException, OSError, ConnectionError) as exc:
            raise DeviceIoError(str(exc)) from exc

    async def _read(self, size: int) -> bytes:
        try:
            return await asyncio.wait_for(self._reader.readexactly(size), self.timeout)
        except asyncio.TimeoutError as exc:
            # A late response would otherwise be taken as the answer to the next request.
            self._stale_input = True
            raise DeviceTimeout(f"No {size}-byte response within {self.timeout}s") from exc
        except asyncio.IncompleteReadError as exc:
            raise DeviceIoError("Serial link closed") from exc
        except (serial.SerialException, OSError) as exc:
            raise DeviceIoError(str(exc)) from exc

    async def _discard_input(self, quiet_period: float = 0.05) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                # Line never went quiet; leave the flag set and try again next time.
                raise DeviceTimeout(f"Input did not settle within {self.timeout}s")
            try:
                chunk = await asyncio.wait_for(self._reader.read(256), min(quiet_period, remaining))
            except asyncio.TimeoutError:
                break
            if not chunk:
                break
            logger.debug("discarded %d stale bytes", len(chunk))
        self._stale_input = False


class Brewslave(Device):
    """The Arduino rig behind a serial link."""

    def __init__(self, client: BrewslaveClient) -> None:
        self.client = client

    @classmethod
    async def connect(cls, config: SerialConfig) -> "Brewslave":
        client = await BrewslaveClient.open(config.port, config.baudrate, config.timeout)
        return cls(client)

    async def read(self) -> DeviceState:
        return await self.client.read_state()

    async def set_temperature(self, temperature: float) -> None:
        await self.client.set_temperature(temperature)

    async def close(self) -> None:
        await self.client.close()

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, Union

from brewmeister.domain.errors import ActorClosed, DeviceError
from brewmeister.domain.models import DeviceState
from brewmeister.hardware.brewslave import Brewslave
from brewmeister.hardware.device import Device
from brewmeister.hardware.mock import MockDevice
from brewmeister.infra.config import AppConfig

logger = logging.getLogger(__name__)


def _new_reply() -> asyncio.Future:
    return asyncio.get_running_loop().create_future()


@dataclass
class Read:
    reply: asyncio.Future = field(default_factory=_new_reply)


@dataclass
class SetTemperature:
    value: float
    reply: asyncio.Future = field(default_factory=_new_reply)


DeviceCommand = Union[Read, SetTemperature]


async def open_device(config: AppConfig) -> Device:
    """Select the device implementation once at startup."""
    if config.device.use_mock:
        logger.info("Using mock device")
        return MockDevice.from_config(config.mock)
    return await Brewslave.connect(config.serial)


class DeviceActor:
    """
    Sole owner of the device.

    Commands are processed strictly one at a time in arrival order; each
    result or error goes back through the command's reply future. Device
    errors never stop the loop.
    """

    def __init__(self, device: Device, queue_size: int = 32) -> None:
        self.device = device
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    # ---------------------------------------------------
    # Caller side
    # ---------------------------------------------------
    async def send(self, command: DeviceCommand) -> None:
        if self._closed:
            raise ActorClosed("Device actor is closed")
        await self._queue.put(command)

    async def read(self) -> DeviceState:
        command = Read()
        await self.send(command)
        return await command.reply

    async def set_temperature(self, value: float) -> None:
        command = SetTemperature(float(value))
        await self.send(command)
        await command.reply

    async def close(self) -> None:
        """Stop accepting commands; queued ones are still processed."""
        if self._closed:
            return
        self._closed = True
        await self._queue.put(None)

    # ---------------------------------------------------
    # Loop
    # ---------------------------------------------------
    async def run(self) -> None:
        logger.info("Device actor started with %s", type(self.device).__name__)
        command: Optional[DeviceCommand] = None
        try:
            while True:
                command = await self._queue.get()
                if command is None:
                    break
                await self._handle(command)
                command = None
        finally:
            self._closed = True
            # Cancelled mid-transaction: the caller must not wait forever.
            if command is not None:
                _reply_error(command.reply, ActorClosed("Device actor stopped"))
            self._reject_pending()
            logger.info("Device actor stopped")

    async def _handle(self, command: DeviceCommand) -> None:
        try:
            if isinstance(command, Read):
                result: Optional[DeviceState] = await self.device.read()
            elif isinstance(command, SetTemperature):
                await self.device.set_temperature(command.value)
                result = None
            else:
                raise TypeError(f"Unknown device command {command!r}")
        except DeviceError as exc:
            logger.warning("%s failed: %s", type(command).__name__, exc)
            _reply_error(command.reply, exc)
        except Exception as exc:
            logger.exception("%s raised unexpectedly", type(command).__name__)
            _reply_error(command.reply, exc)
        else:
            _reply(command.reply, result)

    def _reject_pending(self) -> None:
        while not self._queue.empty():
            command = self._queue.get_nowait()
            if command is not None:
                _reply_error(command.reply, ActorClosed("Device actor is closed"))


def _reply(reply: asyncio.Future, result) -> None:
    # The caller may have given up; that is not an error here.
    if not reply.done():
        reply.set_result(result)


def _reply_error(reply: asyncio.Future, exc: BaseException) -> None:
    if not reply.done():
        reply.set_exception(exc)

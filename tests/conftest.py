"""Shared fixtures: fake serial streams, scripted devices and sample recorders.

Nothing here needs hardware; the serial link is an ``asyncio.StreamReader``
fed by a writer that answers each request from a script.
"""

from __future__ import annotations

import asyncio
from collections import deque
from datetime import datetime
from typing import Deque, List, Optional, Tuple, Union

import pytest

from brewmeister.domain.device_actor import DeviceActor
from brewmeister.domain.models import DeviceState
from brewmeister.hardware.brewslave import BrewslaveClient
from brewmeister.hardware.device import Device
from brewmeister.hardware.mock import MockDevice
from brewmeister.infra.config import ProgramConfig


# ---------------------------------------------------------------------------
# Serial link
# ---------------------------------------------------------------------------


class FakeSerial:
    """Writer half of a fake link. Each write pops the next scripted response.

    A ``None`` response means the device stays silent.
    """

    def __init__(self, reader: asyncio.StreamReader, responses: List[Optional[bytes]]) -> None:
        self.reader = reader
        self.responses: Deque[Optional[bytes]] = deque(responses)
        self.written: List[bytes] = []
        self.fail_writes = False
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.fail_writes:
            raise OSError("device disconnected")
        self.written.append(bytes(data))
        if self.responses:
            response = self.responses.popleft()
            if response is not None:
                self.reader.feed_data(response)

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        return None


def make_client(
    responses: List[Optional[bytes]], timeout: float = 0.05
) -> Tuple[BrewslaveClient, FakeSerial]:
    """Build a client on a fake link. Call from inside a running event loop."""
    reader = asyncio.StreamReader()
    link = FakeSerial(reader, responses)
    return BrewslaveClient(reader, link, timeout=timeout), link  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------


Outcome = Union[DeviceState, Exception]


class ScriptedDevice(Device):
    """Returns scripted read outcomes; repeats the last one when the script runs out."""

    def __init__(self, reads: List[Outcome], set_error: Optional[Exception] = None) -> None:
        self.reads: Deque[Outcome] = deque(reads)
        self.set_error = set_error
        self.set_calls: List[float] = []
        self.read_calls = 0
        self.closed = False

    async def read(self) -> DeviceState:
        self.read_calls += 1
        outcome = self.reads.popleft() if len(self.reads) > 1 else self.reads[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def set_temperature(self, temperature: float) -> None:
        self.set_calls.append(temperature)
        if self.set_error is not None:
            raise self.set_error

    async def close(self) -> None:
        self.closed = True


def reading(current: Optional[float], target: Optional[float] = None) -> DeviceState:
    return DeviceState(current_temperature=current, target_temperature=target)


class ListRecorder:
    def __init__(self) -> None:
        self.samples: List[Tuple[int, datetime, float]] = []

    def record_sample(self, brew_id: int, timestamp: datetime, temperature: float) -> None:
        self.samples.append((brew_id, timestamp, temperature))

    def temperatures(self, brew_id: Optional[int] = None) -> List[float]:
        return [t for b, _, t in self.samples if brew_id is None or b == brew_id]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def fast_program() -> ProgramConfig:
    """Program settings with millisecond polling."""

    return ProgramConfig(poll_interval=0.001, tolerance=0.5, read_error_backoff=0.001)


@pytest.fixture()
def recorder() -> ListRecorder:
    return ListRecorder()


@pytest.fixture()
def mock_device() -> MockDevice:
    return MockDevice(initial_temperature=20.0, approach_rate=0.5)


async def start_actor(device: Device) -> Tuple[DeviceActor, asyncio.Task]:
    actor = DeviceActor(device, queue_size=8)
    return actor, asyncio.create_task(actor.run())


async def stop_actor(actor: DeviceActor, task: asyncio.Task) -> None:
    await actor.close()
    await asyncio.wait_for(task, 1.0)


@pytest.fixture()
async def mock_actor(mock_device: MockDevice):
    actor, task = await start_actor(mock_device)
    yield actor
    await stop_actor(actor, task)

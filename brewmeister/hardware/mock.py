"""
Software stand-in for the Brewslave.

The reported temperature closes a fixed fraction of the gap to the target on
every read, so convergence depends only on the number of reads.
"""

import asyncio
from typing import List

from brewmeister.domain.models import DeviceState
from brewmeister.hardware.device import Device
from brewmeister.infra.config import MockConfig


class MockDevice(Device):
    def __init__(
        self,
        initial_temperature: float = 20.0,
        approach_rate: float = 0.5,
        latency: float = 0.0,
    ) -> None:
        if not 0.0 <= approach_rate <= 1.0:
            raise ValueError("approach_rate must be within [0, 1]")
        self.temperature = float(initial_temperature)
        self.target = float(initial_temperature)
        self.approach_rate = approach_rate
        self.latency = latency
        self.set_calls: List[float] = []
        self.transactions = 0
        self.max_in_flight = 0
        self._in_flight = 0

    @classmethod
    def from_config(cls, config: MockConfig) -> "MockDevice":
        return cls(config.initial_temperature, config.approach_rate, config.latency)

    async def read(self) -> DeviceState:
        async with self._transaction():
            self.temperature += (self.target - self.temperature) * self.approach_rate
            return DeviceState(
                current_temperature=self.temperature,
                target_temperature=self.target,
                stirrer_on=False,
                heater_on=self.temperature < self.target,
            )

    async def set_temperature(self, temperature: float) -> None:
        async with self._transaction():
            self.set_calls.append(float(temperature))
            self.target = float(temperature)

    def _transaction(self) -> "_Transaction":
        return _Transaction(self)


class _Transaction:
    """Counts overlapping calls and simulates link latency."""

    def __init__(self, device: MockDevice) -> None:
        self.device = device

    async def __aenter__(self) -> None:
        device = self.device
        device._in_flight += 1
        device.transactions += 1
        device.max_in_flight = max(device.max_in_flight, device._in_flight)
        if device.latency > 0:
            await asyncio.sleep(device.latency)

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.device._in_flight -= 1

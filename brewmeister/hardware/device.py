from abc import ABC, abstractmethod

from brewmeister.domain.models import DeviceState


class Device(ABC):
    """
    Anything that can report rig state and accept a target temperature.

    Implementations are not safe for overlapping calls; the DeviceActor is
    the only caller in the running system.
    """

    @abstractmethod
    async def read(self) -> DeviceState:
        ...

    @abstractmethod
    async def set_temperature(self, temperature: float) -> None:
        ...

    async def close(self) -> None:
        return None

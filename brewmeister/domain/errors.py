class BrewmeisterError(Exception):
    """Base class for everything raised by the brew rig backend."""


class DeviceError(BrewmeisterError):
    """A hardware transaction failed."""


class DeviceIoError(DeviceError):
    """The serial link itself failed (disconnect, OS error, EOF)."""


class DeviceTimeout(DeviceError):
    """A read or write step did not finish within its deadline."""


class Nack(DeviceError):
    """The Brewslave rejected the command."""

    def __init__(self, message: str = "Received NACK") -> None:
        super().__init__(message)


class UnexpectedData(DeviceError):
    """The Brewslave answered with a status byte that is neither ACK nor NACK."""

    def __init__(self, status: int) -> None:
        super().__init__(f"Unexpected response 0x{status:02x}")
        self.status = status


class ActorClosed(BrewmeisterError):
    """The command channel is closed, no further commands are processed."""


class BrewOngoing(BrewmeisterError):
    def __init__(self) -> None:
        super().__init__("Brew is ongoing")


class SensorUnavailable(BrewmeisterError):
    def __init__(self, attempts: int) -> None:
        super().__init__(f"No temperature received from the device after {attempts} polls")
        self.attempts = attempts


class RecipeNotFound(BrewmeisterError):
    def __init__(self, recipe_id: int) -> None:
        super().__init__(f"Recipe {recipe_id} not found")
        self.recipe_id = recipe_id

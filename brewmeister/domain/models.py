from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

# Range the rig can hold; the firmware accepts any f32.
MIN_TEMPERATURE = 20.0
MAX_TEMPERATURE = 99.0


@dataclass(frozen=True)
class DeviceState:
    """Snapshot of the rig. Temperatures are None when the sensor reading is undefined."""

    current_temperature: Optional[float] = None
    target_temperature: Optional[float] = None
    stirrer_on: bool = False
    heater_on: bool = False
    serial_problem: bool = False


@dataclass(frozen=True)
class RecipeStep:
    target_temperature: float
    duration: float  # seconds to hold once the target is reached
    description: str = ""


@dataclass(frozen=True)
class Recipe:
    id: int
    name: str
    description: str
    steps: Tuple[RecipeStep, ...] = ()


@dataclass(frozen=True)
class Sample:
    brew_id: int
    timestamp: datetime
    temperature: float


class RunPhase(str, Enum):
    IDLE = "IDLE"
    SETTING_TEMPERATURE = "SETTING_TEMPERATURE"
    CONVERGING = "CONVERGING"
    HOLDING = "HOLDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class BrewRun:
    id: int
    steps: List[RecipeStep]
    recipe_id: Optional[int] = None
    phase: RunPhase = RunPhase.IDLE
    step_index: Optional[int] = None
    samples_recorded: int = 0
    error: Optional[str] = None
    history: List[RunPhase] = field(default_factory=list)

    def enter(self, phase: RunPhase, step_index: Optional[int] = None) -> None:
        self.phase = phase
        if step_index is not None:
            self.step_index = step_index
        self.history.append(phase)


@dataclass(frozen=True)
class Brew:
    """Stored record of a run."""

    id: int
    recipe_id: Optional[int]
    started_at: datetime
    status: str  # running, completed, failed
    finished_at: Optional[datetime] = None
    error: Optional[str] = None

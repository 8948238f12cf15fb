"""
Executes a brew program: set each step's target temperature, poll until it
is reached, then hold it for the step's duration.

Only one program runs at a time. ``Start`` is answered as soon as the run is
accepted; how the run ends is only visible through the recorded samples,
the log and the optional completion callback.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Callable, List, Optional, Protocol, Sequence, Set

from brewmeister.domain.device_actor import DeviceActor
from brewmeister.domain.errors import ActorClosed, BrewOngoing, DeviceError, SensorUnavailable
from brewmeister.domain.models import BrewRun, RecipeStep, RunPhase
from brewmeister.infra.config import ProgramConfig

logger = logging.getLogger(__name__)


class SampleRecorder(Protocol):
    def record_sample(self, brew_id: int, timestamp: datetime, temperature: float) -> None:
        ...


FinishedCallback = Callable[[int, Optional[BaseException]], None]


def _new_reply() -> asyncio.Future:
    return asyncio.get_running_loop().create_future()


@dataclass
class Start:
    run_id: int
    steps: List[RecipeStep]
    recipe_id: Optional[int] = None
    reply: asyncio.Future = field(default_factory=_new_reply)


class RunningFlag:
    """The single 'a brew is running' flag, shared by the command loop and run tasks."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def try_set(self) -> bool:
        return self._lock.acquire(blocking=False)

    def clear(self) -> None:
        if self._lock.locked():
            self._lock.release()

    def is_set(self) -> bool:
        return self._lock.locked()


class ProgramExecutor:
    def __init__(
        self,
        actor: DeviceActor,
        recorder: SampleRecorder,
        config: Optional[ProgramConfig] = None,
        running: Optional[RunningFlag] = None,
        on_finished: Optional[FinishedCallback] = None,
    ) -> None:
        self.actor = actor
        self.recorder = recorder
        self.config = config or ProgramConfig()
        self.running = running or RunningFlag()
        self.on_finished = on_finished
        self.current: Optional[BrewRun] = None
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=self.config.queue_size)
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    # ---------------------------------------------------
    # Caller side
    # ---------------------------------------------------
    async def start(
        self, run_id: int, steps: Sequence[RecipeStep], recipe_id: Optional[int] = None
    ) -> None:
        """Ask for a run. Returns once it has started; raises BrewOngoing otherwise."""
        if self._closed:
            raise ActorClosed("Program executor is closed")
        command = Start(run_id, list(steps), recipe_id)
        await self._queue.put(command)
        await command.reply

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._queue.put(None)

    async def wait_idle(self) -> None:
        """Wait for spawned runs to end."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ---------------------------------------------------
    # Command loop
    # ---------------------------------------------------
    async def run(self) -> None:
        logger.info("Program executor started")
        try:
            while True:
                command = await self._queue.get()
                if command is None:
                    break
                self._handle_start(command)
        finally:
            self._closed = True
            while not self._queue.empty():
                command = self._queue.get_nowait()
                if command is not None and not command.reply.done():
                    command.reply.set_exception(ActorClosed("Program executor is closed"))
            for task in list(self._tasks):
                task.cancel()
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            logger.info("Program executor stopped")

    def _handle_start(self, command: Start) -> None:
        if not self.running.try_set():
            logger.warning("Brew is ongoing, rejecting brew %d", command.run_id)
            if not command.reply.done():
                command.reply.set_exception(BrewOngoing())
            return

        brew = BrewRun(id=command.run_id, steps=command.steps, recipe_id=command.recipe_id)
        self.current = brew
        task = asyncio.create_task(self._run_task(brew), name=f"brew-{brew.id}")
        self._tasks.add(task)
        task.add_done_callback(partial(self._run_done, brew))
        logger.info("Started brew %d with %d steps", brew.id, len(brew.steps))

        if not command.reply.done():
            command.reply.set_result(None)

    async def _run_task(self, brew: BrewRun) -> None:
        error: Optional[BaseException] = None
        try:
            await self.run_program(brew)
        except Exception as exc:
            error = exc
            brew.enter(RunPhase.FAILED)
            brew.error = str(exc)
            logger.error("Brew %d failed: %s", brew.id, exc)
        else:
            brew.enter(RunPhase.COMPLETED)
            logger.info("Brew %d completed", brew.id)

        await self._notify_finished(brew, error)

    def _run_done(self, brew: BrewRun, task: asyncio.Task) -> None:
        # Runs even when the task was cancelled before its first step.
        self._tasks.discard(task)
        self.running.clear()
        if task.cancelled() and brew.phase not in (RunPhase.COMPLETED, RunPhase.FAILED):
            brew.enter(RunPhase.FAILED)
            brew.error = "cancelled"
            logger.warning("Brew %d cancelled", brew.id)

    async def _notify_finished(self, brew: BrewRun, error: Optional[BaseException]) -> None:
        if self.on_finished is None:
            return
        try:
            await asyncio.to_thread(self.on_finished, brew.id, error)
        except Exception:
            logger.exception("Completion callback failed for brew %d", brew.id)

    # ---------------------------------------------------
    # Program
    # ---------------------------------------------------
    async def run_program(self, brew: BrewRun) -> None:
        for index, step in enumerate(brew.steps):
            brew.enter(RunPhase.SETTING_TEMPERATURE, index)
            logger.info("Set target temperature to %.1fC and wait", step.target_temperature)
            await self.actor.set_temperature(step.target_temperature)

            brew.enter(RunPhase.CONVERGING)
            await self.wait_for(brew, step.target_temperature)

            brew.enter(RunPhase.HOLDING)
            logger.info("Target temperature reached, waiting %.0fs", step.duration)
            await asyncio.sleep(max(step.duration, 0.0))

    async def wait_for(self, brew: BrewRun, temperature: float) -> float:
        """Poll until the reading is within tolerance of ``temperature``."""
        cfg = self.config
        missing = 0
        errors = 0

        while True:
            try:
                state = await self.actor.read()
            except DeviceError as exc:
                errors += 1
                if errors > cfg.max_read_errors:
                    raise
                backoff = cfg.read_error_backoff * 2 ** (errors - 1)
                logger.warning(
                    "Read failed (%s), retry %d/%d in %.1fs",
                    exc, errors, cfg.max_read_errors, cfg.poll_interval + backoff,
                )
                await asyncio.sleep(backoff)
            else:
                errors = 0
                current = state.current_temperature
                if current is None:
                    missing += 1
                    logger.warning("No temperature received from the device")
                    if cfg.max_missing_readings and missing >= cfg.max_missing_readings:
                        raise SensorUnavailable(missing)
                else:
                    missing = 0
                    await self._record(brew, current)
                    if abs(current - temperature) < cfg.tolerance:
                        logger.info("Reached %.2fC", current)
                        return current

            await asyncio.sleep(cfg.poll_interval)

    async def _record(self, brew: BrewRun, temperature: float) -> None:
        timestamp = datetime.now(timezone.utc)
        await asyncio.to_thread(self.recorder.record_sample, brew.id, timestamp, temperature)
        brew.samples_recorded += 1

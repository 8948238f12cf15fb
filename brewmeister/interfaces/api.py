import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict, replace
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from brewmeister.domain.device_actor import DeviceActor, open_device
from brewmeister.domain.errors import BrewOngoing, DeviceError, DeviceTimeout, RecipeNotFound
from brewmeister.domain.models import MAX_TEMPERATURE, MIN_TEMPERATURE, DeviceState, Recipe, RecipeStep
from brewmeister.domain.program import ProgramExecutor
from brewmeister.hardware.device import Device
from brewmeister.infra.config import AppConfig, load_config
from brewmeister.infra.database import Database

logger = logging.getLogger(__name__)


class TargetTemperature(BaseModel):
    target_temperature: float = Field(
        ..., ge=MIN_TEMPERATURE, le=MAX_TEMPERATURE, description="Target temperature in degree Celsius"
    )


class StepIn(BaseModel):
    target_temperature: float = Field(..., ge=MIN_TEMPERATURE, le=MAX_TEMPERATURE)
    duration: float = Field(..., ge=0, description="Hold time in seconds once the target is reached")
    description: str = ""


class NewRecipe(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    steps: List[StepIn] = Field(..., min_length=1)


class NewBrew(BaseModel):
    recipe_id: int


def _recipe_json(recipe: Recipe) -> dict:
    return {
        "id": recipe.id,
        "name": recipe.name,
        "description": recipe.description,
        "steps": [asdict(step) for step in recipe.steps],
    }


def create_app(
    config: Optional[AppConfig] = None,
    config_path: Optional[str] = None,
    device: Optional[Device] = None,
) -> FastAPI:
    cfg = config if config is not None else load_config(config_path)
    db = Database(cfg.database.path)
    db.init()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        dev = device if device is not None else await open_device(cfg)
        actor = DeviceActor(dev, queue_size=cfg.device.queue_size)
        executor = ProgramExecutor(actor, db, cfg.program, on_finished=db.finish_brew)
        tasks = [
            asyncio.create_task(actor.run(), name="device-actor"),
            asyncio.create_task(executor.run(), name="program-executor"),
        ]
        app.state.actor = actor
        app.state.executor = executor
        app.state.last_state = DeviceState()
        try:
            yield
        finally:
            await executor.close()
            await tasks[1]
            await actor.close()
            await tasks[0]
            await dev.close()

    app = FastAPI(title="Brewmeister", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.network.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )
    app.state.db = db

    @app.get("/api/state")
    async def state(request: Request):
        actor: DeviceActor = request.app.state.actor
        last_exc: Optional[DeviceError] = None
        for _ in range(cfg.api.read_retries + 1):
            try:
                current = await actor.read()
            except DeviceTimeout as exc:
                last_exc = exc
                continue
            except DeviceError as exc:
                last_exc = exc
                break
            request.app.state.last_state = current
            return asdict(current)

        logger.warning("State read failed: %s", last_exc)
        return asdict(replace(request.app.state.last_state, serial_problem=True))

    @app.post("/api/temperature")
    async def set_temperature(payload: TargetTemperature, request: Request):
        try:
            await request.app.state.actor.set_temperature(payload.target_temperature)
        except DeviceError as exc:
            raise HTTPException(status_code=503, detail=str(exc))
        return {"ok": True}

    @app.get("/api/recipes")
    def recipes():
        return {"recipes": [_recipe_json(r) for r in db.recipes()]}

    @app.post("/api/recipes", status_code=201)
    def add_recipe(payload: NewRecipe):
        steps = [RecipeStep(**step.model_dump()) for step in payload.steps]
        recipe = db.add_recipe(payload.name, payload.description, steps)
        return _recipe_json(recipe)

    @app.get("/api/recipes/{recipe_id}")
    def recipe(recipe_id: int):
        try:
            return _recipe_json(db.recipe(recipe_id))
        except RecipeNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc))

    @app.delete("/api/recipes/{recipe_id}")
    def delete_recipe(recipe_id: int):
        try:
            db.delete_recipe(recipe_id)
        except RecipeNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc))
        return {"ok": True}

    @app.post("/api/brews", status_code=202)
    async def start_brew(payload: NewBrew, request: Request):
        try:
            recipe = await asyncio.to_thread(db.recipe, payload.recipe_id)
        except RecipeNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc))

        brew_id = await asyncio.to_thread(db.create_brew, recipe.id)
        try:
            await request.app.state.executor.start(brew_id, recipe.steps, recipe_id=recipe.id)
        except BrewOngoing as exc:
            await asyncio.to_thread(db.finish_brew, brew_id, exc)
            raise HTTPException(status_code=409, detail=str(exc))
        return {"id": brew_id}

    @app.get("/api/brews/{brew_id}")
    def brew(brew_id: int):
        record = db.brew(brew_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"Brew {brew_id} not found")
        return asdict(record)

    @app.get("/api/brews/{brew_id}/samples")
    def samples(brew_id: int):
        if db.brew(brew_id) is None:
            raise HTTPException(status_code=404, detail=f"Brew {brew_id} not found")
        return {
            "samples": [
                {"timestamp": s.timestamp.isoformat(), "temperature": s.temperature}
                for s in db.samples(brew_id)
            ]
        }

    return app

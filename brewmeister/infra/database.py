import logging
import sqlite3
from contextlib import closing
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from brewmeister.domain.errors import RecipeNotFound
from brewmeister.domain.models import Brew, Recipe, RecipeStep, Sample

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS recipes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT ''
);
CREATE TABLE IF NOT EXISTS steps (
    recipe_id INTEGER NOT NULL REFERENCES recipes(id) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    target_temperature REAL NOT NULL,
    duration REAL NOT NULL,
    PRIMARY KEY (recipe_id, position)
);
CREATE TABLE IF NOT EXISTS brews (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    recipe_id INTEGER REFERENCES recipes(id) ON DELETE SET NULL,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    status TEXT NOT NULL DEFAULT 'running',
    error TEXT
);
CREATE TABLE IF NOT EXISTS samples (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    brew_id INTEGER NOT NULL REFERENCES brews(id) ON DELETE CASCADE,
    timestamp TEXT NOT NULL,
    temperature REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS samples_brew ON samples (brew_id, timestamp);
"""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class Database:
    """
    Recipes, brews and temperature samples in a SQLite file.

    A connection is opened per call so the API threads and the brew
    program can use the same instance.
    """

    def __init__(self, path: str) -> None:
        self.path = path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def init(self) -> None:
        with closing(self._connect()) as conn:
            conn.executescript(_SCHEMA)
        logger.info("Database %s initialized", self.path)

    # ---------------------------------------------------
    # Recipes
    # ---------------------------------------------------
    def recipes(self) -> List[Recipe]:
        with closing(self._connect()) as conn:
            rows = conn.execute("SELECT id FROM recipes ORDER BY id").fetchall()
            return [self._load_recipe(conn, row["id"]) for row in rows]

    def recipe(self, recipe_id: int) -> Recipe:
        with closing(self._connect()) as conn:
            return self._load_recipe(conn, recipe_id)

    def add_recipe(self, name: str, description: str, steps: Sequence[RecipeStep]) -> Recipe:
        logger.info("Add new recipe %s", name)
        with closing(self._connect()) as conn, conn:
            cursor = conn.execute(
                "INSERT INTO recipes (name, description) VALUES (?, ?)", (name, description)
            )
            recipe_id = cursor.lastrowid
            conn.executemany(
                "INSERT INTO steps (recipe_id, position, description, target_temperature, duration)"
                " VALUES (?, ?, ?, ?, ?)",
                [
                    (recipe_id, i, s.description, s.target_temperature, s.duration)
                    for i, s in enumerate(steps)
                ],
            )
        return Recipe(id=recipe_id, name=name, description=description, steps=tuple(steps))

    def delete_recipe(self, recipe_id: int) -> None:
        with closing(self._connect()) as conn, conn:
            cursor = conn.execute("DELETE FROM recipes WHERE id = ?", (recipe_id,))
            if cursor.rowcount == 0:
                raise RecipeNotFound(recipe_id)

    def _load_recipe(self, conn: sqlite3.Connection, recipe_id: int) -> Recipe:
        row = conn.execute(
            "SELECT id, name, description FROM recipes WHERE id = ?", (recipe_id,)
        ).fetchone()
        if row is None:
            raise RecipeNotFound(recipe_id)
        steps = conn.execute(
            "SELECT description, target_temperature, duration FROM steps"
            " WHERE recipe_id = ? ORDER BY position",
            (recipe_id,),
        ).fetchall()
        return Recipe(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            steps=tuple(
                RecipeStep(
                    target_temperature=s["target_temperature"],
                    duration=s["duration"],
                    description=s["description"],
                )
                for s in steps
            ),
        )

    # ---------------------------------------------------
    # Brews and samples
    # ---------------------------------------------------
    def create_brew(self, recipe_id: Optional[int]) -> int:
        with closing(self._connect()) as conn, conn:
            cursor = conn.execute(
                "INSERT INTO brews (recipe_id, started_at) VALUES (?, ?)",
                (recipe_id, _now().isoformat()),
            )
            return cursor.lastrowid

    def finish_brew(self, brew_id: int, error: Optional[BaseException] = None) -> None:
        status = "completed" if error is None else "failed"
        with closing(self._connect()) as conn, conn:
            conn.execute(
                "UPDATE brews SET finished_at = ?, status = ?, error = ? WHERE id = ?",
                (_now().isoformat(), status, None if error is None else str(error), brew_id),
            )

    def brew(self, brew_id: int) -> Optional[Brew]:
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT * FROM brews WHERE id = ?", (brew_id,)).fetchone()
        if row is None:
            return None
        return Brew(
            id=row["id"],
            recipe_id=row["recipe_id"],
            started_at=_parse(row["started_at"]),
            status=row["status"],
            finished_at=_parse(row["finished_at"]),
            error=row["error"],
        )

    def record_sample(self, brew_id: int, timestamp: datetime, temperature: float) -> None:
        with closing(self._connect()) as conn, conn:
            conn.execute(
                "INSERT INTO samples (brew_id, timestamp, temperature) VALUES (?, ?, ?)",
                (brew_id, timestamp.isoformat(), temperature),
            )

    def samples(self, brew_id: int) -> List[Sample]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT brew_id, timestamp, temperature FROM samples"
                " WHERE brew_id = ? ORDER BY timestamp, id",
                (brew_id,),
            ).fetchall()
        return [
            Sample(brew_id=r["brew_id"], timestamp=_parse(r["timestamp"]), temperature=r["temperature"])
            for r in rows
        ]

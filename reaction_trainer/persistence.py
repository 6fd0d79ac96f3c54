from __future__ import annotations

import json
import logging
import os
import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path

from .results import SessionKind, TestResult

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

DB_PATH_ENV = "REACTION_TRAINER_DB_PATH"
USER_ENV = "REACTION_TRAINER_USER"
DEFAULT_USER_ID = "local"


class PersistenceError(RuntimeError):
    """Saving or loading a result failed. The message is shown to the user as-is."""


@dataclass(frozen=True, slots=True)
class StoredResult:
    row_id: int
    user_id: str
    kind: SessionKind
    reaction_times_ms: tuple[float, ...]
    average_ms: float
    condition: str | None
    notes: str | None
    app_version: str
    created_at_utc: str


def default_db_path() -> Path:
    explicit = os.environ.get(DB_PATH_ENV)
    if explicit:
        return Path(explicit).expanduser()
    return Path.home() / ".reaction_trainer.sqlite3"


def default_user_id() -> str:
    return os.environ.get(USER_ENV, "").strip() or DEFAULT_USER_ID


def open_db(path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(path)
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    _migrate(conn)
    return conn


def _utc_now_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(time.time()))


def _migrate(conn: sqlite3.Connection) -> None:
    row = conn.execute("PRAGMA user_version;").fetchone()
    ver = int(row[0]) if row else 0
    if ver >= SCHEMA_VERSION:
        return

    with conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS profile (
                id TEXT PRIMARY KEY,
                display_name TEXT,
                created_at_utc TEXT NOT NULL
            );
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS reaction_test (
                id INTEGER PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES profile(id) ON DELETE CASCADE,
                test_type TEXT NOT NULL,
                reaction_times_ms TEXT NOT NULL,
                average_ms REAL NOT NULL,
                trials INTEGER NOT NULL,
                best_ms REAL NOT NULL,
                condition TEXT,
                notes TEXT,
                app_version TEXT NOT NULL,
                created_at_utc TEXT NOT NULL
            );
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_reaction_test_user_created ON reaction_test(user_id, created_at_utc);"
        )
        conn.execute(f"PRAGMA user_version={SCHEMA_VERSION};")


def _blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


class ResultStore:
    """SQLite-backed sink for finished sessions.

    Only full tests are stored. Errors are raised as PersistenceError and never
    retried here; the caller still holds the TestResult and may try again.
    """

    def __init__(self, db_path: Path, *, app_version: str = "0.1.0") -> None:
        self._db_path = db_path
        self._app_version = app_version

    @property
    def db_path(self) -> Path:
        return self._db_path

    def save(
        self,
        result: TestResult,
        *,
        user_id: str,
        condition: str | None = None,
        notes: str | None = None,
        display_name: str | None = None,
    ) -> int:
        if result.kind is not SessionKind.FULL:
            raise PersistenceError("Only full test results can be saved.")
        if not user_id:
            raise PersistenceError("A user id is required to save results.")

        try:
            conn = open_db(self._db_path)
        except sqlite3.Error as exc:
            logger.exception("could not open results database %s", self._db_path)
            raise PersistenceError(f"Failed to save test results: {exc}") from exc
        try:
            row_id = self._insert(
                conn,
                result=result,
                user_id=user_id,
                condition=_blank_to_none(condition),
                notes=_blank_to_none(notes),
                display_name=display_name,
            )
        except sqlite3.Error as exc:
            logger.exception("saving result for user %s failed", user_id)
            raise PersistenceError(f"Failed to save test results: {exc}") from exc
        finally:
            conn.close()

        logger.info("saved %s result %d for user %s", result.kind.value, row_id, user_id)
        return row_id

    def load(self, row_id: int) -> StoredResult | None:
        try:
            conn = open_db(self._db_path)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to load test result: {exc}") from exc
        try:
            row = conn.execute(
                """
                SELECT id, user_id, test_type, reaction_times_ms, average_ms,
                       condition, notes, app_version, created_at_utc
                FROM reaction_test WHERE id = ?
                """,
                (int(row_id),),
            ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to load test result: {exc}") from exc
        finally:
            conn.close()

        if row is None:
            return None
        return StoredResult(
            row_id=int(row[0]),
            user_id=str(row[1]),
            kind=SessionKind(row[2]),
            reaction_times_ms=tuple(float(v) for v in json.loads(row[3])),
            average_ms=float(row[4]),
            condition=row[5],
            notes=row[6],
            app_version=str(row[7]),
            created_at_utc=str(row[8]),
        )

    def _insert(
        self,
        conn: sqlite3.Connection,
        *,
        result: TestResult,
        user_id: str,
        condition: str | None,
        notes: str | None,
        display_name: str | None,
    ) -> int:
        now = _utc_now_iso()

        with conn:
            # Profile is created on first save.
            conn.execute(
                "INSERT OR IGNORE INTO profile(id, display_name, created_at_utc) VALUES (?, ?, ?)",
                (user_id, display_name, now),
            )
            cur = conn.execute(
                """
                INSERT INTO reaction_test(
                    user_id, test_type, reaction_times_ms, average_ms, trials,
                    best_ms, condition, notes, app_version, created_at_utc
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    result.kind.value,
                    json.dumps([round(rt, 3) for rt in result.reaction_times_ms]),
                    float(result.average_ms),
                    int(result.trials),
                    float(result.best_ms),
                    condition,
                    notes,
                    self._app_version,
                    now,
                ),
            )
            return int(cur.lastrowid)

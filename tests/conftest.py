"""
Shared fixtures: a small SQLite database, a configuration file pointing at
it, an isolated history store, and scriptable stand-ins for the input
strategy and the database client.
"""

from pathlib import Path
import sqlite3
import textwrap
from typing import Any, Iterable

import pytest

from dbcli.clients import DatabaseClient, QueryResult
from dbcli.config import ConnectionProfile, EngineType, load_configuration
from dbcli.errors import InputCancelled, QueryError
from dbcli.history import QueryHistory
from dbcli.prompts import QueryInput

USERS = [(1, "alice", 34), (2, "bob", 27), (3, "carol", None)]


@pytest.fixture
def sqlite_db(tmp_path: Path) -> Path:
    path = tmp_path / "test.db"
    with sqlite3.connect(path) as conn:
        conn.execute(
            "CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT, age INTEGER)"
        )
        conn.execute("CREATE TABLE orders (id INTEGER PRIMARY KEY, user_id INTEGER)")
        conn.executemany("INSERT INTO users VALUES (?, ?, ?)", USERS)
    conn.close()
    return path


@pytest.fixture
def config_file(tmp_path: Path, sqlite_db: Path) -> Path:
    path = tmp_path / "connections.toml"
    path.write_text(
        textwrap.dedent(
            f"""
            [local]
            name = "Local SQLite"
            type = "sqlite"
            filename = "{sqlite_db.as_posix()}"
            created_at = 2024-05-01T12:00:00Z

            [missing]
            name = "Missing File"
            type = "sqlite"
            filename = "{(tmp_path / 'nope.db').as_posix()}"

            [events]
            name = "Events"
            type = "mongodb"
            uri = "mongodb://localhost:27017/events"
            """
        ),
        encoding="utf-8",
    )
    return path


@pytest.fixture
def store(config_file: Path):
    return load_configuration(config_file)


@pytest.fixture
def history_path(tmp_path: Path) -> Path:
    return tmp_path / "history" / "query_history.json"


@pytest.fixture
def history(history_path: Path) -> QueryHistory:
    return QueryHistory(history_path)


@pytest.fixture
def sqlite_profile(sqlite_db: Path) -> ConnectionProfile:
    return ConnectionProfile(
        id="local", name="Local SQLite", engine=EngineType.SQLITE, filename=sqlite_db
    )


class ScriptedInput(QueryInput):
    """
    Returns canned lines, then cancels.
    """

    def __init__(self, lines: Iterable[str]) -> None:
        super().__init__()
        self.lines = list(lines)
        self.prompts: list[str] = []
        self.recent: list[list[str]] = []
        self.attached = False

    def attach(self, profile, client) -> None:
        super().attach(profile, client)
        self.attached = True

    def get_input(self, prompt: str, recent: list[str]) -> str:
        self.prompts.append(prompt)
        self.recent.append(list(recent))
        if len(self.lines) == 0:
            raise InputCancelled("done")
        line = self.lines.pop(0)
        if isinstance(line, BaseException):
            raise line
        return line


class FakeClient(DatabaseClient):
    """
    A client that answers from a dictionary of query -> rows, and records
    what happened to it.
    """

    def __init__(
        self,
        profile: ConnectionProfile,
        answers: dict[str, list[dict[str, Any]]] | None = None,
        fail_connect: Exception | None = None,
    ) -> None:
        super().__init__(profile)
        self.answers = answers or {}
        self.fail_connect = fail_connect
        self.connected = False
        self.disconnects = 0
        self.queries: list[str] = []

    def connect(self) -> None:
        if self.fail_connect is not None:
            raise self.fail_connect
        self.connected = True

    def disconnect(self) -> None:
        self.connected = False
        self.disconnects += 1

    def query(self, text: str) -> QueryResult:
        self.queries.append(text)
        if text not in self.answers:
            raise QueryError(f"unknown query: {text}")
        rows = self.answers[text]
        return QueryResult(rows=rows, row_count=len(rows), execution_time=1)

from datetime import datetime, timezone
import logging
from pathlib import Path
import textwrap

import pytest

from dbcli.config import (
    ConfigurationError,
    ConnectionStore,
    EngineFamily,
    EngineType,
    load_configuration,
)
from dbcli.errors import TooManyMatchesError


def write_config(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "connections.toml"
    path.write_text(textwrap.dedent(text), encoding="utf-8")
    return path


def test_load(store: ConnectionStore, sqlite_db: Path) -> None:
    assert [p.id for p in store.connections()] == ["local", "missing", "events"]

    local = store.get("local")
    assert local is not None
    assert local.name == "Local SQLite"
    assert local.engine == EngineType.SQLITE
    assert local.engine.family == EngineFamily.FILE_BASED
    assert local.filename == sqlite_db
    assert local.address == str(sqlite_db)
    assert local.created_at == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    events = store.get("events")
    assert events is not None
    assert events.engine.family == EngineFamily.DOCUMENT
    assert events.uri == "mongodb://localhost:27017/events"
    assert events.created_at is None


def test_relational_defaults(tmp_path: Path) -> None:
    path = write_config(
        tmp_path,
        """
        [pg]
        type = "postgresql"
        database = "app"

        [my]
        type = "MySQL"
        host = "db"
        port = 3307
        ssl = true
        """,
    )
    store = load_configuration(path)

    pg = store.get("pg")
    assert pg.name == "pg"
    assert pg.host == "localhost"
    assert pg.port == 5432
    assert pg.address == "localhost:5432/app"

    my = store.get("my")
    assert my.engine == EngineType.MYSQL
    assert my.port == 3307
    assert my.ssl is True
    assert my.address == "db:3307"


def test_environment_substitution(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("DBCLI_TEST_PASSWORD", "hunter2")
    monkeypatch.delenv("DBCLI_TEST_UNSET", raising=False)
    path = write_config(
        tmp_path,
        """
        [pg]
        type = "postgresql"
        username = "me${DBCLI_TEST_UNSET}"
        password = "${DBCLI_TEST_PASSWORD}"
        """,
    )
    pg = load_configuration(path).get("pg")
    assert pg.password == "hunter2"
    assert pg.username == "me"


def test_filename_is_expanded(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HOME", str(tmp_path))
    path = write_config(
        tmp_path,
        """
        [notes]
        type = "sqlite"
        filename = "~/notes.db"
        """,
    )
    assert load_configuration(path).get("notes").filename == tmp_path / "notes.db"


def test_missing_file_gives_empty_store(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    with caplog.at_level(logging.WARNING, logger="dbcli.config"):
        store = load_configuration(tmp_path / "nope.toml")

    assert store.connections() == []
    assert "does not exist" in caplog.text


@pytest.mark.parametrize(
    "text, message",
    [
        ("[a]\nname = 'x'\n", 'no "type"'),
        ("[a]\ntype = 'oracle'\n", "unsupported type"),
        ("[a]\ntype = 'sqlite'\n", 'no "filename"'),
        ("[a]\ntype = 'mongodb'\n", 'no "uri"'),
        ("[a]\ntype = 'mysql'\nport = 'x'\n", "must be an integer"),
        ("[a]\ntype = 'mongodb'\nuri = 'm'\ncreated_at = 'soon'\n", "created_at"),
        ("a = 1\n", "not a section"),
        ("[a\n", "Unable to read"),
    ],
)
def test_bad_configuration(tmp_path: Path, text: str, message: str) -> None:
    path = tmp_path / "bad.toml"
    path.write_text(text, encoding="utf-8")

    with pytest.raises(ConfigurationError, match=message):
        load_configuration(path)


def test_directory_is_not_a_config_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="not a file"):
        load_configuration(tmp_path)


def test_resolve(store: ConnectionStore) -> None:
    assert store.resolve("local").id == "local"
    assert store.resolve("ev").id == "events"
    assert store.resolve("Local S").id == "local"
    assert store.resolve("m").id == "missing"
    assert store.resolve("nothing") is None

    with pytest.raises(TooManyMatchesError):
        store.resolve("")


def test_exact_id_beats_prefix(tmp_path: Path) -> None:
    path = write_config(
        tmp_path,
        """
        [app]
        type = "mongodb"
        uri = "mongodb://a"

        [app2]
        type = "mongodb"
        uri = "mongodb://b"
        """,
    )
    store = load_configuration(path)
    assert store.resolve("app").uri == "mongodb://a"
    with pytest.raises(TooManyMatchesError, match="app, app2"):
        store.resolve("ap")

from pathlib import Path
from types import SimpleNamespace

import pytest

from conftest import FakeClient, ScriptedInput
from dbcli.config import ConnectionProfile, ConnectionStore, EngineType
from dbcli.console import run_console
from dbcli.errors import InputCancelled
from dbcli.history import QueryHistory
from dbcli.prompts import (
    LineInput,
    keep_multiline_sql_line,
    make_prompt,
    sql_statement_is_complete,
    truncate_query,
)


class FakeFactory:
    """
    Hands out FakeClients and remembers them.
    """

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.clients: list[FakeClient] = []

    def __call__(self, profile):
        client = FakeClient(profile, **self.kwargs)
        self.clients.append(client)
        return client


def test_session(
    store: ConnectionStore,
    history: QueryHistory,
    capsys: pytest.CaptureFixture,
) -> None:
    inp = ScriptedInput(
        [
            "SELECT name FROM users ORDER BY id;",
            ".tables",
            "",
            "SELECT * FROM nope;",
            ".exit",
            "SELECT 'never run';",
        ]
    )
    run_console("local", store, history, inp)
    out, err = capsys.readouterr()

    assert inp.attached
    assert inp.prompts[0] == "(Local SQLite) > "
    assert "Connected." in out
    assert "alice" in out
    assert "3 rows" in out
    assert "orders" in out
    assert "no such table" in err
    assert "Goodbye!" in out

    # Console commands aren't recorded; queries are, failed or not.
    entries = history.get_history()
    assert [e.query for e in entries] == [
        "SELECT * FROM nope;",
        "SELECT name FROM users ORDER BY id;",
    ]
    assert [e.success for e in entries] == [False, True]
    assert entries[0].error is not None
    assert {e.connection_id for e in entries} == {"local"}
    assert inp.recent[1] == ["SELECT name FROM users ORDER BY id;"]
    assert inp.lines == ["SELECT 'never run';"]


def test_connection_failure(
    store: ConnectionStore,
    history: QueryHistory,
    capsys: pytest.CaptureFixture,
    tmp_path: Path,
) -> None:
    inp = ScriptedInput(["SELECT 1;"])
    run_console("missing", store, history, inp)
    out, err = capsys.readouterr()

    assert "Unable to connect" in err
    assert "Connected." not in out
    assert not inp.attached
    assert len(history) == 0
    assert not (tmp_path / "nope.db").exists()


def test_unknown_and_ambiguous_connection(
    store: ConnectionStore, history: QueryHistory, capsys: pytest.CaptureFixture
) -> None:
    factory = FakeFactory()
    run_console("zzz", store, history, ScriptedInput([]), factory)
    assert 'Connection "zzz" not found.' in capsys.readouterr().err

    run_console("", store, history, ScriptedInput([]), factory)
    assert "matches more than one connection" in capsys.readouterr().err
    assert factory.clients == []


def test_document_store_has_no_table_listing(
    store: ConnectionStore, history: QueryHistory, capsys: pytest.CaptureFixture
) -> None:
    factory = FakeFactory()
    run_console("events", store, history, ScriptedInput([".tables"]), factory)

    assert "Table listing is not supported for mongodb." in capsys.readouterr().out
    (client,) = factory.clients
    assert client.queries == []
    assert client.disconnects == 1


def test_disconnect_on_unexpected_error(
    store: ConnectionStore, history: QueryHistory
) -> None:
    factory = FakeFactory()
    with pytest.raises(RuntimeError):
        run_console(
            "local", store, history, ScriptedInput([RuntimeError("boom")]), factory
        )

    assert factory.clients[0].disconnects == 1


def test_long_results_are_truncated(
    store: ConnectionStore, history: QueryHistory, capsys: pytest.CaptureFixture
) -> None:
    factory = FakeFactory(answers={"q": [{"n": i} for i in range(60)]})
    run_console("local", store, history, ScriptedInput(["q"]), factory)
    out = capsys.readouterr().out

    assert "50 of 60 rows" in out
    assert "Showing first 50 rows; 10 more not displayed." in out
    assert "| 49 " in out
    assert "| 50 " not in out


def test_statement_without_rows(
    store: ConnectionStore, history: QueryHistory, capsys: pytest.CaptureFixture
) -> None:
    run_console(
        "local",
        store,
        history,
        ScriptedInput(["UPDATE users SET age = age + 1 WHERE id = 1;"]),
    )
    assert "Query OK, 1 row affected" in capsys.readouterr().out
    assert history.get_history()[0].success


def test_history_commands(
    store: ConnectionStore, history: QueryHistory, capsys: pytest.CaptureFixture
) -> None:
    history.add_query("SELECT * FROM users", "local", "Local SQLite", True, 3)
    history.add_query("SELECT * FROM orders", "local", "Local SQLite", True, 4)
    history.add_query("SELECT * FROM users", "other", "Other", True, 5)

    run_console(
        "local",
        store,
        history,
        ScriptedInput(
            [
                ".history 1",
                ".history search USERS",
                ".history search zzz",
                ".history x y",
            ]
        ),
        FakeFactory(),
    )
    out = capsys.readouterr().out

    assert "1. [" in out
    assert "SELECT * FROM orders" in out
    assert "SELECT * FROM users" in out
    assert "Total: 2 | Success: 2 | Failed: 0 | Average: 4ms" in out
    assert 'No queries contain "zzz".' in out
    assert "Usage: .history" in out


@pytest.mark.parametrize(
    "answer, remaining", [(True, ["other"]), (False, ["other", "local"])]
)
def test_history_clear(
    store: ConnectionStore,
    history: QueryHistory,
    monkeypatch: pytest.MonkeyPatch,
    answer: bool,
    remaining: list[str],
) -> None:
    history.add_query("q1", "local", "Local SQLite", True)
    history.add_query("q2", "other", "Other", True)
    monkeypatch.setattr("click.confirm", lambda *args, **kwargs: answer)

    run_console(
        "local", store, history, ScriptedInput([".history clear"]), FakeFactory()
    )

    assert [e.connection_id for e in history.get_history()] == remaining


def test_columns_and_unknown_commands(
    store: ConnectionStore, history: QueryHistory, capsys: pytest.CaptureFixture
) -> None:
    run_console(
        "local",
        store,
        history,
        ScriptedInput([".columns users", ".columns", ".frob", "?"]),
    )
    out, err = capsys.readouterr()

    assert "1. id" in out
    assert "3. age" in out
    assert "Usage: .columns <table>" in out
    assert '".frob" is an unknown "." command.' in err
    assert ".exit or .quit" in out
    assert len(history) == 0


class StubMongoClient:
    """
    Answers the connection ping; queries never get as far as the server.
    """

    def __init__(self, uri, **options):
        self.admin = SimpleNamespace(command=lambda name: {"ok": 1})

    def get_default_database(self, default):
        return SimpleNamespace(name=default)

    def close(self):
        pass


@pytest.mark.parametrize(
    "text", ['db.users.find().limit("x")', "db.users.find().skip(-1)"]
)
def test_bad_cursor_arguments_keep_the_console_running(
    store: ConnectionStore,
    history: QueryHistory,
    capsys: pytest.CaptureFixture,
    monkeypatch: pytest.MonkeyPatch,
    text: str,
) -> None:
    monkeypatch.setattr("dbcli.mongo.MongoClient", StubMongoClient)

    run_console("events", store, history, ScriptedInput([text, ".exit"]))
    out, err = capsys.readouterr()

    assert "takes a non-negative integer" in err
    assert "Goodbye!" in out
    (entry,) = history.get_history()
    assert entry.query == text
    assert not entry.success


def test_recall_list_size(store: ConnectionStore, history: QueryHistory) -> None:
    for i in range(20):
        history.add_query(f"SELECT {i}", "local", "Local SQLite", True, 1)
    inp = ScriptedInput([])

    run_console("local", store, history, inp, FakeFactory())

    assert inp.recent[0] == [f"SELECT {i}" for i in range(19, 4, -1)]


@pytest.fixture
def scripted_stdin(monkeypatch: pytest.MonkeyPatch):
    lines: list[str] = []

    def fake_input(prompt=""):
        if len(lines) == 0:
            raise EOFError()
        return lines.pop(0)

    monkeypatch.setattr("builtins.input", fake_input)
    return lines


def test_line_input_multi_line(
    scripted_stdin, sqlite_profile: ConnectionProfile
) -> None:
    scripted_stdin.extend(
        ["SELECT *", "-- a comment", "", "FROM users", "WHERE name = 'a;", "b';"]
    )
    inp = LineInput()
    inp.attach(sqlite_profile, None)

    assert inp.get_input("> ", []) == "SELECT * FROM users WHERE name = 'a;b';"


def test_line_input_end_of_file(
    scripted_stdin, sqlite_profile: ConnectionProfile
) -> None:
    scripted_stdin.extend(["SELECT 1"])
    inp = LineInput()
    inp.attach(sqlite_profile, None)

    assert inp.get_input("> ", []) == "SELECT 1"
    with pytest.raises(InputCancelled):
        inp.get_input("> ", [])


def test_line_input_single_lines(
    scripted_stdin, sqlite_profile: ConnectionProfile
) -> None:
    mongo = ConnectionProfile(
        id="m", name="m", engine=EngineType.MONGODB, uri="mongodb://x"
    )
    scripted_stdin.extend([".tables", "db.users.find()"])
    inp = LineInput()
    inp.attach(sqlite_profile, None)
    assert inp.get_input("> ", []) == ".tables"

    inp.attach(mongo, None)
    assert inp.get_input("> ", []) == "db.users.find()"


def test_sql_statement_is_complete() -> None:
    assert sql_statement_is_complete("SELECT 1;") == (True, None)
    assert sql_statement_is_complete("SELECT 1;  ") == (True, None)
    assert sql_statement_is_complete("SELECT 1") == (False, None)
    assert sql_statement_is_complete("SELECT 'a;") == (False, "'")
    assert sql_statement_is_complete('SELECT "a";') == (True, None)


def test_keep_multiline_sql_line() -> None:
    assert not keep_multiline_sql_line("  -- comment", False)
    assert not keep_multiline_sql_line("   ", False)
    assert keep_multiline_sql_line("", True)
    assert keep_multiline_sql_line("FROM t", False)


def test_prompt_and_preview(sqlite_profile: ConnectionProfile) -> None:
    assert make_prompt(sqlite_profile) == "(Local SQLite) > "
    assert make_prompt(sqlite_profile, primary=False) == "(Local SQLite) ? "
    assert truncate_query("SELECT  *\n FROM t") == "SELECT * FROM t"
    assert truncate_query("x" * 100, 10) == "xxxxxxx..."

import logging
from pathlib import Path

from click.testing import CliRunner
import pytest

from dbcli import VERSION, main
from dbcli.history import QueryHistory


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    logging.getLogger("dbcli").handlers = []


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def test_help(runner: CliRunner) -> None:
    result = runner.invoke(main, ["--help"])
    assert result.exit_code == 0
    for command in ("query", "connections", "test", "databases", "history"):
        assert command in result.output


def test_version(runner: CliRunner) -> None:
    result = runner.invoke(main, ["--version"])
    assert result.exit_code == 0
    assert VERSION in result.output


def test_connections(runner: CliRunner, config_file: Path) -> None:
    result = runner.invoke(main, ["-c", str(config_file), "connections"])

    assert result.exit_code == 0
    assert "Local SQLite" in result.output
    assert "2024-05-01" in result.output
    assert "mongodb://localhost:27017/events" in result.output
    assert "3 rows" in result.output


def test_connections_without_config(runner: CliRunner, tmp_path: Path) -> None:
    result = runner.invoke(main, ["-c", str(tmp_path / "none.toml"), "connections"])

    assert result.exit_code == 0
    assert "No connections are configured" in result.output


def test_bad_config(runner: CliRunner, tmp_path: Path) -> None:
    path = tmp_path / "bad.toml"
    path.write_text("[a\n", encoding="utf-8")

    result = runner.invoke(main, ["-c", str(path), "connections"])

    assert result.exit_code == 1
    assert "Unable to read" in result.output


@pytest.mark.parametrize(
    "connection, exit_code, message",
    [
        ("local", 0, "Connection successful."),
        ("Local S", 0, "Connection successful."),
        ("missing", 1, "Unable to connect"),
        ("zzz", 1, 'Connection "zzz" not found'),
    ],
)
def test_test_command(
    runner: CliRunner,
    config_file: Path,
    connection: str,
    exit_code: int,
    message: str,
) -> None:
    result = runner.invoke(main, ["-c", str(config_file), "test", connection])

    assert result.exit_code == exit_code
    assert message in result.output


def test_databases_for_sqlite(
    runner: CliRunner, config_file: Path, sqlite_db: Path
) -> None:
    result = runner.invoke(main, ["-c", str(config_file), "databases", "local"])

    assert result.exit_code == 0
    assert "Databases in Local SQLite" in result.output
    assert str(sqlite_db) in result.output


@pytest.mark.parametrize(
    "connection, message",
    [("missing", "Unable to connect"), ("zzz", 'Connection "zzz" not found')],
)
def test_databases_failures(
    runner: CliRunner, config_file: Path, connection: str, message: str
) -> None:
    result = runner.invoke(main, ["-c", str(config_file), "databases", connection])

    assert result.exit_code == 1
    assert message in result.output


def test_history_stats(
    runner: CliRunner, config_file: Path, history_path: Path
) -> None:
    history = QueryHistory(history_path)
    history.add_query("SELECT 1", "local", "Local SQLite", True, 10)
    history.add_query("SELECT x", "local", "Local SQLite", False, 20, "no x")
    history.add_query("db.c.find()", "events", "Events", True, 3)

    result = runner.invoke(main, ["-H", str(history_path), "history"])
    assert result.exit_code == 0
    assert "All connections" in result.output
    assert "Total queries:          3" in result.output

    result = runner.invoke(
        main, ["-c", str(config_file), "-H", str(history_path), "history", "local"]
    )
    assert result.exit_code == 0
    assert "Local SQLite" in result.output
    assert "Success rate:           50.0%" in result.output
    assert "Average execution time: 15ms" in result.output


def test_query(runner: CliRunner, config_file: Path, history_path: Path) -> None:
    result = runner.invoke(
        main,
        ["-c", str(config_file), "-H", str(history_path), "query", "local"],
        input="SELECT name\nFROM users;\n.exit\n",
    )

    assert result.exit_code == 0
    assert "alice" in result.output
    assert "Goodbye!" in result.output
    (entry,) = QueryHistory(history_path).get_history()
    assert entry.query == "SELECT name FROM users;"
    assert entry.success


def test_query_end_of_input(
    runner: CliRunner, config_file: Path, history_path: Path
) -> None:
    result = runner.invoke(
        main,
        ["-c", str(config_file), "-H", str(history_path), "query", "local"],
        input="",
    )

    assert result.exit_code == 0
    assert "Goodbye!" in result.output


def test_query_picks_the_only_connection(
    runner: CliRunner, tmp_path: Path, sqlite_db: Path, history_path: Path
) -> None:
    path = tmp_path / "one.toml"
    path.write_text(
        f'[only]\ntype = "sqlite"\nfilename = "{sqlite_db.as_posix()}"\n',
        encoding="utf-8",
    )
    result = runner.invoke(
        main,
        ["-c", str(path), "-H", str(history_path), "query"],
        input="SELECT COUNT(*) AS n FROM users;\n",
    )

    assert result.exit_code == 0
    assert "Connection: only" in result.output
    assert QueryHistory(history_path).get_history()[0].connection_id == "only"


def test_query_without_connections(runner: CliRunner, tmp_path: Path) -> None:
    result = runner.invoke(
        main,
        ["-c", str(tmp_path / "none.toml"), "-H", str(tmp_path / "h.json"), "query"],
    )

    assert result.exit_code == 1
    assert "No connections are configured" in result.output

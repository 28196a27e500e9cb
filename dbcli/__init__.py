"""
dbcli is an interactive command-line client for MySQL, PostgreSQL, SQLite
and MongoDB. Connections are stored in a TOML configuration file; every
query run from the console is kept in a JSON history file.

Run with -h or --help for an extended usage message.
"""

from dataclasses import dataclass
import logging
from pathlib import Path
import sys

import click
from termcolor import colored

from dbcli.clients import (
    check_connection,
    create_database_client,
    database_listing_query,
)
from dbcli.config import (
    ConfigurationError,
    ConnectionProfile,
    ConnectionStore,
    EngineType,
    load_configuration,
)
from dbcli.console import list_names, run_console
from dbcli.errors import (
    AbortError,
    DatabaseConnectionError,
    QueryError,
    TooManyMatchesError,
    UnsupportedEngineError,
)
from dbcli.history import QueryHistory
from dbcli.prompts import InputMode, make_query_input
from dbcli.render import display_results, error

NAME = "dbcli"
VERSION = "1.0.0"
CLICK_CONTEXT_SETTINGS = {"help_option_names": ["-h", "--help"]}
DEFAULT_CONFIG_FILE = Path("~/.dbcli/connections.toml").expanduser()
DEFAULT_HISTORY_FILE = Path("~/.dbcli/query_history.json").expanduser()
LOG_FORMAT = "%(levelname)s: %(message)s"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    """
    The global options, passed to the subcommands.
    """

    config: Path
    history: Path


def configure_logging(verbose: bool) -> None:
    """
    Send the package's log messages to standard error.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    package_logger = logging.getLogger(NAME)
    package_logger.handlers = [handler]
    package_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


def resolve_profile(store: ConnectionStore, spec: str) -> ConnectionProfile:
    """
    Resolve a connection specification, or abort.
    """
    if (profile := store.resolve(spec)) is None:
        raise AbortError(f'Connection "{spec}" not found in "{store.path}".')
    return profile


def choose_connection(store: ConnectionStore) -> str:
    """
    Pick a connection when none was given on the command line: the only
    one, if there is just one; otherwise ask.
    """
    match store.connections():
        case []:
            raise AbortError(f'No connections are configured in "{store.path}".')
        case [profile]:
            return profile.id
        case profiles:
            click.echo(colored("Available connections:", "cyan", attrs=["bold"]))
            for i, p in enumerate(profiles, start=1):
                click.echo(f"{i:3d}. {p.name} ({p.engine.value}, {p.address})")
            n = click.prompt("Connection", type=click.IntRange(1, len(profiles)))
            return profiles[n - 1].id


@click.group(name=NAME, context_settings=CLICK_CONTEXT_SETTINGS)
@click.option(
    "-c",
    "--config",
    is_flag=False,
    default=str(DEFAULT_CONFIG_FILE),
    show_default=True,
    envvar="DBCLI_CONFIG",
    type=click.Path(dir_okay=False),
    help="The location of the connection configuration file.",
)
@click.option(
    "-H",
    "--history",
    is_flag=False,
    default=str(DEFAULT_HISTORY_FILE),
    show_default=True,
    envvar="DBCLI_HISTORY",
    type=click.Path(dir_okay=False),
    help="The location of the query history file.",
)
@click.option(
    "-v", "--verbose", is_flag=True, default=False, help="Show debug logging."
)
@click.version_option(VERSION)
@click.pass_context
def main(ctx: click.Context, config: str, history: str, verbose: bool) -> None:
    """
    Query MySQL, PostgreSQL, SQLite and MongoDB databases from one console.

    Connections are defined in a TOML file, one section per connection:

    \b
        [local-pg]
        type = "postgresql"
        host = "localhost"
        username = "me"
        password = "${PGPASSWORD}"
        database = "app"

    \b
        [notes]
        type = "sqlite"
        filename = "~/notes.db"

    \b
        [events]
        type = "mongodb"
        uri = "mongodb://localhost:27017/events"

    Environment variable references ($VAR or ${VAR}) in the file are
    replaced with their values.
    """
    configure_logging(verbose)
    ctx.obj = Settings(config=Path(config), history=Path(history))


@main.command()
@click.argument("connection", required=False)
@click.option(
    "--input",
    "input_mode",
    type=click.Choice([m.value for m in InputMode]),
    default=None,
    help="How to enter queries. Defaults to the line editor on a terminal, "
    "and plain lines otherwise.",
)
@click.pass_obj
def query(settings: Settings, connection: str | None, input_mode: str | None) -> None:
    """
    Open a query console on a stored connection. CONNECTION is a
    connection id, or enough of an id or name to be unique.
    """
    try:
        store = load_configuration(settings.config)
        history = QueryHistory(settings.history)
        if connection is None:
            connection = choose_connection(store)

        print(colored(f"{NAME}, version {VERSION}\n", "blue", attrs=["bold"]))
        mode = None if input_mode is None else InputMode(input_mode)
        run_console(connection, store, history, make_query_input(mode))

    except (
        AbortError,
        ConfigurationError,
        TooManyMatchesError,
        UnsupportedEngineError,
    ) as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)


@main.command()
@click.pass_obj
def connections(settings: Settings) -> None:
    """
    List the stored connections.
    """
    try:
        store = load_configuration(settings.config)
    except ConfigurationError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)

    rows = [
        {
            "id": p.id,
            "name": p.name,
            "type": p.engine.value,
            "address": p.address,
            "created": p.created_at.date() if p.created_at is not None else None,
        }
        for p in store.connections()
    ]
    display_results(
        columns=["id", "name", "type", "address", "created"],
        data=rows,
        limit=0,
        total=len(rows),
        no_results_message=f'No connections are configured in "{store.path}".',
    )


@main.command(name="test")
@click.argument("connection")
@click.pass_obj
def test_command(settings: Settings, connection: str) -> None:
    """
    Check that a stored connection works.
    """
    try:
        store = load_configuration(settings.config)
        profile = resolve_profile(store, connection)
        print(f"Connecting to {profile.name} ({profile.address})...")
        check_connection(profile)
        print(colored("Connection successful.", "green"))

    except DatabaseConnectionError as e:
        error(str(e))
        sys.exit(1)

    except (
        AbortError,
        ConfigurationError,
        TooManyMatchesError,
        UnsupportedEngineError,
    ) as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)


@main.command()
@click.argument("connection")
@click.pass_obj
def databases(settings: Settings, connection: str) -> None:
    """
    List the databases on a stored connection's server.
    """
    try:
        store = load_configuration(settings.config)
        profile = resolve_profile(store, connection)
        print(colored(f"Databases in {profile.name}\n", "cyan", attrs=["bold"]))

        client = create_database_client(profile)
        try:
            client.connect()
            match profile.engine:
                case EngineType.SQLITE:
                    print(f"SQLite uses a single database file: {profile.filename}")
                case EngineType.MONGODB:
                    print(
                        colored(
                            "Use MongoDB commands (db.getCollectionNames()) in "
                            "the query console.",
                            "yellow",
                        )
                    )
                case engine:
                    list_names(
                        client,
                        database_listing_query(engine),
                        None,
                        "No databases found.",
                    )
        finally:
            client.disconnect()

    except (DatabaseConnectionError, QueryError) as e:
        error(str(e))
        sys.exit(1)

    except (
        AbortError,
        ConfigurationError,
        TooManyMatchesError,
        UnsupportedEngineError,
    ) as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)


@main.command(name="history")
@click.argument("connection", required=False)
@click.pass_obj
def history_command(settings: Settings, connection: str | None) -> None:
    """
    Show query statistics, for one connection or for all of them.
    """
    try:
        history = QueryHistory(settings.history)
        connection_id = None
        title = "All connections"
        if connection is not None:
            store = load_configuration(settings.config)
            profile = resolve_profile(store, connection)
            connection_id = profile.id
            title = profile.name

    except (AbortError, ConfigurationError, TooManyMatchesError) as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)

    stats = history.get_stats(connection_id)
    rate = 0.0
    if stats.total_queries > 0:
        rate = stats.successful_queries * 100 / stats.total_queries

    print(colored(f"Query statistics: {title}", "cyan", attrs=["bold"]))
    print(f"Total queries:          {stats.total_queries:,}")
    print(f"Successful:             {stats.successful_queries:,}")
    print(f"Failed:                 {stats.failed_queries:,}")
    print(f"Success rate:           {rate:.1f}%")
    print(f"Average execution time: {stats.average_execution_time:,}ms")


if __name__ == "__main__":
    # pylint: disable=no-value-for-parameter
    main()

"""
The query console: connects to one stored connection, reads queries and
"." commands until the user quits, runs the queries and records every one
of them in the query history.
"""

from dataclasses import dataclass
from enum import StrEnum
import os
import re
import textwrap
from time import perf_counter
from typing import Callable
from typing import Sequence as Seq

import click
from termcolor import colored

from dbcli.clients import (
    DatabaseClient,
    column_listing_query,
    column_name_key,
    create_database_client,
    elapsed_ms,
    table_listing_query,
)
from dbcli.config import ConnectionProfile, ConnectionStore
from dbcli.errors import (
    DatabaseConnectionError,
    InputCancelled,
    QueryError,
    TooManyMatchesError,
)
from dbcli.history import HistoryEntry, HistoryStats, QueryHistory
from dbcli.prompts import (
    MENU_HISTORY_SIZE,
    QueryInput,
    make_prompt,
    make_query_input,
)
from dbcli.render import display_results, error, highlight

ROW_LIMIT = 50
DEFAULT_HISTORY_COUNT = 10
DEFAULT_SCREEN_WIDTH = 79
DIGITS = re.compile(r"^\d+$")
MULTI_WHITESPACE = re.compile(r"\s\s\s*")


class Command(StrEnum):
    """
    Console "." commands.
    """

    EXIT = ".exit"
    QUIT = ".quit"
    CLEAR = ".clear"
    TABLES = ".tables"
    COLUMNS = ".columns"
    HISTORY = ".history"
    HELP1 = ".help"
    HELP2 = "?"


class HistoryAction(StrEnum):
    """
    Sub-commands of .history.
    """

    CLEAR = "clear"
    SEARCH = "search"


@dataclass(frozen=True)
class HelpTopic:
    """
    A help topic: the usage line, and help text. The help text can be a
    multi-line string, for readability. The newlines will be removed.
    """

    commands: Seq[Command]
    usage: str
    help: str


HELP: Seq[HelpTopic] = (
    HelpTopic(
        commands=(Command.EXIT, Command.QUIT),
        usage=f"{Command.EXIT.value} or {Command.QUIT.value} or Ctrl-C",
        help="Disconnect and leave the console.",
    ),
    HelpTopic(
        commands=(Command.CLEAR,),
        usage=Command.CLEAR.value,
        help="Clear the screen.",
    ),
    HelpTopic(
        commands=(Command.TABLES,),
        usage=Command.TABLES.value,
        help="""
List the tables in the database. Not available for document stores.
""",
    ),
    HelpTopic(
        commands=(Command.COLUMNS,),
        usage=f"{Command.COLUMNS.value} <table>",
        help="List the columns of a table.",
    ),
    HelpTopic(
        commands=(Command.HISTORY,),
        usage=f"{Command.HISTORY.value} [<n>]",
        help=f"""
Show the most recent queries run against this connection: the last <n>, or
the last {DEFAULT_HISTORY_COUNT} if <n> is omitted.
""",
    ),
    HelpTopic(
        commands=(Command.HISTORY,),
        usage=f"{Command.HISTORY.value} {HistoryAction.SEARCH.value} <text>",
        help="""
Show the queries run against this connection that contain <text>, ignoring
case.
""",
    ),
    HelpTopic(
        commands=(Command.HISTORY,),
        usage=f"{Command.HISTORY.value} {HistoryAction.CLEAR.value}",
        help="Delete the query history for this connection, after confirmation.",
    ),
    HelpTopic(
        commands=(Command.HELP1, Command.HELP2),
        usage=f"{Command.HELP1.value} or {Command.HELP2.value}",
        help="This display.",
    ),
)

HELP_EPILOG = (
    "Anything else is sent to the database as a query. SQL statements "
    "end with a semicolon. MongoDB queries start with \"db.\", for example "
    'db.users.find({age: {$gt: 30}}).limit(10).',
    "",
    f"At most {ROW_LIMIT} rows of a result are displayed.",
)


def screen_width() -> int:
    """
    The screen width, from $COLUMNS.
    """
    try:
        return int(os.environ.get("COLUMNS", DEFAULT_SCREEN_WIDTH))
    except ValueError:
        return DEFAULT_SCREEN_WIDTH


def print_help() -> None:
    """
    Display the help output.
    """

    def collapse_help(text: str) -> str:
        """
        Remove leading and trailing blank lines from a help string, and
        replace all newlines with blanks. Also, collapse adjacent blanks into
        a single blank.
        """
        return MULTI_WHITESPACE.sub(" ", text.strip().replace("\n", " "))

    width = screen_width()
    prefix_width = max(len(topic.usage) for topic in HELP)

    # Allow for the separating " - " and a 1-character right margin.
    separator = " - "
    text_width = width - 1 - len(separator) - prefix_width
    if text_width < 20:
        text_width = DEFAULT_SCREEN_WIDTH // 2

    for topic in HELP:
        padded_prefix = topic.usage.ljust(prefix_width)
        text_lines = textwrap.wrap(collapse_help(topic.help), width=text_width)
        print(f"{padded_prefix}{separator}{text_lines[0]}")
        for text_line in text_lines[1:]:
            padding = " " * (prefix_width + len(separator))
            print(f"{padding}{text_line}")

    print("")
    for line in HELP_EPILOG:
        if line.strip() == "":
            print()
        else:
            print(textwrap.fill(line, width=width))


def print_banner(profile: ConnectionProfile) -> None:
    """
    Show which connection the console is talking to.
    """
    print(colored(f"Connection: {profile.name}", "cyan", attrs=["bold"]))
    print(colored(f"Type:       {profile.engine.value}", "cyan"))
    print(colored(f"Address:    {profile.address}", "cyan"))
    print(f"\nType {Command.HELP1.value} for help, {Command.EXIT.value} to quit.\n")


def format_history_item(entry: HistoryEntry, index: int) -> str:
    """
    Format a single history entry.

    :param entry: The history entry
    :param index: The index (number) of the entry in the listing
    """
    mark = colored("ok", "green") if entry.success else colored("failed", "red")
    when = entry.executed_at.astimezone().strftime("%Y-%m-%d %H:%M:%S")
    timing = "" if entry.execution_time is None else f" ({entry.execution_time}ms)"
    return f"{index:5d}. [{when}] {mark}{timing} {entry.query}"


def show_history(entries: list[HistoryEntry], empty_message: str) -> None:
    """
    Display history entries, most recent first.
    """
    if len(entries) == 0:
        print(empty_message)
        return

    for i, entry in enumerate(entries, start=1):
        print(format_history_item(entry, i))
        if entry.error is not None:
            print(colored(f"       {entry.error}", "red"))


def show_history_stats(stats: HistoryStats) -> None:
    """
    One summary line for a connection's history, if it has any.
    """
    if stats.total_queries == 0:
        return

    line = (
        f"Total: {stats.total_queries:,} | Success: {stats.successful_queries:,}"
        f" | Failed: {stats.failed_queries:,}"
    )
    if stats.average_execution_time > 0:
        line += f" | Average: {stats.average_execution_time:,}ms"
    print(colored(line, attrs=["dark"]))


def clear_history(profile: ConnectionProfile, history: QueryHistory) -> None:
    """
    Clear the history for one connection, if the user confirms.
    """
    try:
        confirmed = click.confirm(
            f'Clear the query history for "{profile.name}"?', default=False
        )
    except click.Abort:
        confirmed = False

    if confirmed:
        history.clear_history(profile.id)
        print("Query history cleared.")
    else:
        print("Query history not cleared.")


def list_names(
    client: DatabaseClient, query: str, key: str | None, empty_message: str
) -> None:
    """
    Run an introspection query and print a numbered list of the names it
    returns.

    :param key: the row key holding the name, or None for the first value
    """
    try:
        result = client.query(query)
    except QueryError as e:
        error(str(e))
        return

    names = [
        str(row[key]) if key is not None else str(next(iter(row.values())))
        for row in result.rows
        if len(row) > 0 and (key is None or key in row)
    ]
    if len(names) == 0:
        print(empty_message)
        return

    for i, name in enumerate(names, start=1):
        print(f"{i:5d}. {name}")


def show_tables(profile: ConnectionProfile, client: DatabaseClient) -> None:
    """
    Show all tables in the connected database.
    """
    query = table_listing_query(profile.engine)
    if query is None:
        print(
            colored(
                f"Table listing is not supported for {profile.engine.value}.",
                "yellow",
            )
        )
        return

    list_names(client, query, None, "No tables.")


def show_columns(
    table_name: str, profile: ConnectionProfile, client: DatabaseClient
) -> None:
    """
    Show the columns of a table.
    """
    query = column_listing_query(profile.engine, table_name)
    if query is None:
        print(
            colored(
                f"Column listing is not supported for {profile.engine.value}.",
                "yellow",
            )
        )
        return

    list_names(
        client,
        query,
        column_name_key(profile.engine),
        f'No columns found for "{table_name}".',
    )


def run_query(
    text: str,
    profile: ConnectionProfile,
    client: DatabaseClient,
    history: QueryHistory,
) -> bool:
    """
    Run a query, display its results and record it in the history.

    :returns: True if it ran successfully, False if it failed (and an error
        was reported)
    """
    print(highlight(text, profile.engine.family))
    print()

    start = perf_counter()
    try:
        result = client.query(text)
    except QueryError as e:
        elapsed = elapsed_ms(start)
        error(str(e))
        history.add_query(
            text,
            profile.id,
            profile.name,
            success=False,
            execution_time=elapsed,
            error=str(e),
        )
        return False

    elapsed = elapsed_ms(start)
    columns = result.columns
    if not columns and len(result.rows) > 0:
        columns = list(result.rows[0].keys())

    if columns:
        display_results(
            columns=columns,
            data=result.rows,
            limit=ROW_LIMIT,
            total=len(result.rows),
            elapsed=elapsed,
        )
    else:
        suffix = "" if result.row_count == 1 else "s"
        print(
            colored(
                f"Query OK, {result.row_count:,} row{suffix} affected "
                f"({elapsed}ms)\n",
                "green",
            )
        )

    history.add_query(
        text, profile.id, profile.name, success=True, execution_time=elapsed
    )
    return True


# pylint: disable=too-many-arguments,too-many-branches
def run_command_loop(
    profile: ConnectionProfile,
    client: DatabaseClient,
    history: QueryHistory,
    query_input: QueryInput,
) -> None:
    """
    Read and process commands until the user quits.
    """
    prompt = make_prompt(profile)
    while True:
        recent = history.get_recent_queries(profile.id, limit=MENU_HISTORY_SIZE)
        try:
            line = query_input.get_input(prompt, recent).strip()
        except InputCancelled:
            print()
            break

        match line.split():
            case []:
                pass

            case [Command.EXIT.value | Command.QUIT.value]:
                break

            case [Command.CLEAR.value]:
                click.clear()
                print_banner(profile)

            case [Command.TABLES.value]:
                show_tables(profile, client)

            case [Command.COLUMNS.value, table_name]:
                show_columns(table_name, profile, client)

            case [Command.COLUMNS.value, *_]:
                print(f"Usage: {Command.COLUMNS.value} <table>")

            case [Command.HISTORY.value]:
                show_history(
                    history.get_history(profile.id, DEFAULT_HISTORY_COUNT),
                    "No query history.",
                )
                show_history_stats(history.get_stats(profile.id))

            case [Command.HISTORY.value, n] if DIGITS.match(n) is not None:
                show_history(
                    history.get_history(profile.id, int(n) or DEFAULT_HISTORY_COUNT),
                    "No query history.",
                )
                show_history_stats(history.get_stats(profile.id))

            case [Command.HISTORY.value, HistoryAction.CLEAR.value]:
                clear_history(profile, history)

            case [Command.HISTORY.value, HistoryAction.SEARCH.value, *terms] if terms:
                term = " ".join(terms)
                show_history(
                    history.search_history(term, profile.id),
                    f'No queries contain "{term}".',
                )

            case [Command.HISTORY.value, *_]:
                print(
                    f"Usage: {Command.HISTORY.value} [<n> | "
                    f"{HistoryAction.CLEAR.value} | "
                    f"{HistoryAction.SEARCH.value} <text>]"
                )

            case [Command.HELP1.value | Command.HELP2.value]:
                print_help()

            case [cmd, *_] if cmd.startswith("."):
                error(f'"{cmd}" is an unknown "." command.')

            case _:
                run_query(line, profile, client, history)


def run_console(
    connection_id: str,
    connections: ConnectionStore,
    history: QueryHistory,
    query_input: QueryInput | None = None,
    client_factory: Callable[
        [ConnectionProfile], DatabaseClient
    ] = create_database_client,
) -> None:
    """
    Run a console session against a stored connection. Returns when the
    user quits or when the connection can't be made.

    :param connection_id: the connection's id, or a unique prefix of its id
        or name
    :param connections: the stored connections
    :param history: the query history store
    :param query_input: how to read queries; chosen from the terminal type
        if None
    :param client_factory: creates the database client for the profile
    :raises: UnsupportedEngineError if the profile's engine has no client
    """
    try:
        profile = connections.resolve(connection_id)
    except TooManyMatchesError as e:
        error(str(e))
        return

    if profile is None:
        error(f'Connection "{connection_id}" not found.')
        return

    client = client_factory(profile)
    print_banner(profile)
    try:
        try:
            client.connect()
        except DatabaseConnectionError as e:
            error(str(e))
            return

        print(colored("Connected.\n", "green"))
        if query_input is None:
            query_input = make_query_input()
        query_input.attach(profile, client)

        run_command_loop(profile, client, history, query_input)
        print("Goodbye!")

    finally:
        client.disconnect()

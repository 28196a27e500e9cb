"""
Ways of getting a query from the user. The console doesn't care which one
is in use: each exposes attach(), called once the session is connected,
and get_input(), called for every query.

- EditorInput: the raw-mode line editor, with completion.
- MenuInput: a numbered menu with templates, multi-line entry and history.
- LineInput: plain lines from standard input, for scripts and pipes.
"""

# pylint: disable=too-few-public-methods

from abc import ABC, abstractmethod
from enum import StrEnum
import sys
from typing import Self, Tuple

import click
from termcolor import colored

from dbcli.autocomplete import AutocompleteProvider
from dbcli.clients import DatabaseClient
from dbcli.config import ConnectionProfile, EngineFamily
from dbcli.editor import LineEditor
from dbcli.errors import InputCancelled
from dbcli.render import highlight

SQL_LINE_COMMENT_PREFIX = "--"
META_COMMAND_PREFIXES = (".", "?")
MENU_HISTORY_SIZE = 15
PREVIEW_WIDTH = 70


class InputMode(StrEnum):
    """
    The interactive input strategies selectable from the command line.
    """

    EDITOR = "editor"
    MENU = "menu"


def make_prompt(profile: ConnectionProfile, primary: bool = True) -> str:
    """
    Make the (uncoloured) prompt for a session.

    :param profile: the connection profile
    :param primary: whether this is the primary prompt (True) or a
        continuation prompt
    """
    suffix = ">" if primary else "?"
    return f"({profile.name}) {suffix} "


def query_templates(family: EngineFamily) -> list[Tuple[str, str]]:
    """
    Query templates, as (description, query) pairs.
    """
    match family:
        case EngineFamily.DOCUMENT:
            return [
                ("Find all documents", "db.collection.find().limit(10)"),
                ("Count documents", "db.collection.countDocuments()"),
                ("Find by condition", 'db.collection.find({"field": "value"})'),
                (
                    "Aggregate data",
                    'db.collection.aggregate([{$group: {_id: "$field", '
                    "count: {$sum: 1}}}])",
                ),
                (
                    "Insert document",
                    'db.collection.insertOne({"field1": "value1", '
                    '"field2": "value2"})',
                ),
                (
                    "Update document",
                    'db.collection.updateOne({"field": "value"}, '
                    '{$set: {"field": "newValue"}})',
                ),
                ("Delete document", 'db.collection.deleteOne({"field": "value"})'),
                (
                    "Lookup (join)",
                    'db.collection.aggregate([{$lookup: {from: "other_collection", '
                    'localField: "_id", foreignField: "ref_id", as: "joined"}}])',
                ),
            ]
        case EngineFamily.RELATIONAL | EngineFamily.FILE_BASED:
            return [
                ("Select all from table", "SELECT * FROM table_name LIMIT 10;"),
                ("Count records", "SELECT COUNT(*) FROM table_name;"),
                (
                    "Find by condition",
                    "SELECT * FROM table_name WHERE column_name = 'value';",
                ),
                (
                    "Group and count",
                    "SELECT column_name, COUNT(*) FROM table_name "
                    "GROUP BY column_name;",
                ),
                (
                    "Inner join tables",
                    "SELECT * FROM table1 t1 INNER JOIN table2 t2 "
                    "ON t1.id = t2.table1_id;",
                ),
                (
                    "Insert record",
                    "INSERT INTO table_name (column1, column2) "
                    "VALUES ('value1', 'value2');",
                ),
                (
                    "Update records",
                    "UPDATE table_name SET column_name = 'new_value' "
                    "WHERE condition;",
                ),
                ("Delete records", "DELETE FROM table_name WHERE condition;"),
                (
                    "Create table",
                    "CREATE TABLE table_name (id INT PRIMARY KEY, "
                    "name VARCHAR(255) NOT NULL);",
                ),
            ]


def sql_statement_is_complete(s: str) -> Tuple[bool, str | None]:
    """
    Determine if a SQL statement is complete. Looks for a semicolon at
    the end of the string, and no open quotes.

    :param s: the possibly partial SQL statement to check

    :returns: a tuple of a boolean indicating whether the statement is
        complete, and the open quote character, if any
    """
    in_quote = None
    for c in s:
        if in_quote is not None:
            if c == in_quote:
                in_quote = None
        elif c in ('"', "'"):
            in_quote = c

    complete = (in_quote is None) and s.rstrip().endswith(";")
    return (complete, in_quote)


def keep_multiline_sql_line(line: str, in_quote: bool) -> bool:
    """
    Determine if a line of SQL should be kept as part of a multi-line
    statement: blank lines and comment lines are dropped, unless they are
    inside a quoted string.
    """
    if in_quote:
        return True

    line = line.lstrip()
    if line == "":
        return False

    return not line.startswith(SQL_LINE_COMMENT_PREFIX)


def truncate_query(query: str, width: int = PREVIEW_WIDTH) -> str:
    """
    A one-line preview of a query.
    """
    single = " ".join(query.split())
    if len(single) > width:
        return single[: width - 3] + "..."
    return single


class QueryInput(ABC):
    """
    Base class for input strategies.
    """

    def __init__(self: Self) -> None:
        self.profile: ConnectionProfile | None = None

    @property
    def family(self: Self) -> EngineFamily:
        assert self.profile is not None
        return self.profile.engine.family

    def attach(self: Self, profile: ConnectionProfile, client: DatabaseClient) -> None:
        """
        Called by the console once the client is connected.
        """
        # pylint: disable=unused-argument
        self.profile = profile

    @abstractmethod
    def get_input(self: Self, prompt: str, recent: list[str]) -> str:
        """
        Get the next query or console command.

        :param prompt: the prompt, without colour
        :param recent: recent successful queries, most recent first
        :raises: InputCancelled if the user gives up
        """


class EditorInput(QueryInput):
    """
    Input through the raw-mode line editor.
    """

    def __init__(self: Self, editor: LineEditor | None = None) -> None:
        super().__init__()
        self.editor = editor or LineEditor()

    def attach(self: Self, profile: ConnectionProfile, client: DatabaseClient) -> None:
        super().attach(profile, client)
        provider = AutocompleteProvider(profile.engine, client)
        provider.load_table_names()
        self.editor.provider = provider

    def get_input(self: Self, prompt: str, recent: list[str]) -> str:
        self.editor.recall = list(recent)
        return self.editor.read_line(prompt)


class LineInput(QueryInput):
    """
    Plain line input, read with input(). End of file cancels. A SQL
    statement may span several lines and is complete when it ends with a
    semicolon outside quotes; console commands and document-store queries
    are single lines.
    """

    def read(self: Self, prompt: str) -> str:
        return input(colored(prompt, "cyan", attrs=["bold"]))

    def get_input(self: Self, prompt: str, recent: list[str]) -> str:
        try:
            first = self.read(prompt)
        except (EOFError, KeyboardInterrupt):
            raise InputCancelled("End of input") from None

        stripped = first.strip()
        if (
            stripped == ""
            or stripped.startswith(META_COMMAND_PREFIXES)
            or self.family == EngineFamily.DOCUMENT
        ):
            return stripped

        sql = first if keep_multiline_sql_line(first, False) else ""
        continuation = prompt.rstrip().rstrip(">") + "? "
        in_quote: str | None = None
        while True:
            if sql != "":
                complete, in_quote = sql_statement_is_complete(sql)
                if complete:
                    break

            try:
                line = self.read(continuation)
            except EOFError:
                # Run what there is; the next read reports the end of input.
                break
            except KeyboardInterrupt:
                print()
                return ""

            if not keep_multiline_sql_line(line, in_quote is not None):
                continue

            if in_quote or (sql == ""):
                sql += line
            else:
                sql += " " + line

        return sql.strip()


class MenuChoice(StrEnum):
    """
    Main menu entries.
    """

    SINGLE_LINE = "Write a single line query"
    AUTOCOMPLETE = "Query with autocomplete"
    MULTI_LINE = "Write a multi-line query"
    TEMPLATE = "Quick query templates"
    HISTORY = "Select from history"
    EXIT = "Exit console"


def ask(text: str, **kwargs) -> str:
    """
    click.prompt(), with an abort (Ctrl-C or end of file) turned into
    InputCancelled.
    """
    try:
        return click.prompt(text, **kwargs)
    except click.Abort:
        raise InputCancelled("User cancelled") from None


def choose(title: str, options: list[str]) -> int:
    """
    Show a numbered list and return the 0-based index of the choice.
    """
    click.echo(colored(title, "cyan", attrs=["bold"]))
    for i, option in enumerate(options, start=1):
        click.echo(f"{i:3d}. {option}")
    n = ask("Choice", type=click.IntRange(1, len(options)))
    return int(n) - 1


class MenuInput(QueryInput):
    """
    A menu-driven composite: each request shows a menu, collects a query
    the chosen way, previews it and asks for confirmation.
    """

    def __init__(self: Self, editor: LineEditor | None = None) -> None:
        super().__init__()
        self.editor = editor
        self.provider: AutocompleteProvider | None = None

    def attach(self: Self, profile: ConnectionProfile, client: DatabaseClient) -> None:
        super().attach(profile, client)
        self.provider = AutocompleteProvider(profile.engine, client)
        self.provider.load_table_names()
        if self.editor is None:
            self.editor = LineEditor()
        self.editor.provider = self.provider

    def menu_choices(self: Self, recent: list[str]) -> list[MenuChoice]:
        choices = [MenuChoice.SINGLE_LINE]
        if self.provider is not None:
            choices.append(MenuChoice.AUTOCOMPLETE)
        choices += [MenuChoice.MULTI_LINE, MenuChoice.TEMPLATE]
        if len(recent) > 0:
            choices.append(MenuChoice.HISTORY)
        choices.append(MenuChoice.EXIT)
        return choices

    def get_input(self: Self, prompt: str, recent: list[str]) -> str:
        while True:
            choices = self.menu_choices(recent)
            choice = choices[choose(prompt.strip(), [c.value for c in choices])]

            match choice:
                case MenuChoice.SINGLE_LINE:
                    query = self.single_line()
                case MenuChoice.AUTOCOMPLETE:
                    assert self.editor is not None
                    self.editor.recall = list(recent)
                    query = self.editor.read_line(prompt)
                case MenuChoice.MULTI_LINE:
                    query = self.multi_line()
                case MenuChoice.TEMPLATE:
                    query = self.template()
                case MenuChoice.HISTORY:
                    query = self.from_history(recent)
                case MenuChoice.EXIT:
                    raise InputCancelled("User exit")

            if query and (confirmed := self.confirm(query)) is not None:
                return confirmed

    def single_line(self: Self) -> str:
        return ask("Enter your query").strip()

    def multi_line(self: Self) -> str:
        click.echo(
            colored(
                'Enter your query line by line. Type "END" on a line by itself '
                'when finished, or "CANCEL" to go back.',
                "cyan",
            )
        )
        lines: list[str] = []
        while True:
            line = ask(f"{len(lines) + 1:2d}", default="", show_default=False)
            match line.strip().upper():
                case "END":
                    break
                case "CANCEL":
                    return ""
            lines.append(line)

        return "\n".join(lines).strip()

    def template(self: Self) -> str:
        templates = query_templates(self.family)
        index = choose(
            "Select a query template:",
            [name for name, _ in templates] + ["Back to main menu"],
        )
        if index == len(templates):
            return ""

        _, query = templates[index]
        return ask("Customize the query", default=query).strip()

    def from_history(self: Self, recent: list[str]) -> str:
        shown = recent[:MENU_HISTORY_SIZE]
        index = choose(
            "Select a query from history:",
            [truncate_query(q) for q in shown] + ["Back to main menu"],
        )
        if index == len(shown):
            return ""
        return shown[index]

    def confirm(self: Self, query: str) -> str | None:
        """
        Preview a query and ask whether to run it. Returns the query to run
        (possibly edited), or None to go back to the menu.
        """
        while True:
            rule = colored("=" * 60, attrs=["dark"])
            click.echo(colored("\nQuery preview:", "cyan", attrs=["bold"]))
            click.echo(rule)
            click.echo(highlight(query, self.family))
            click.echo(rule)
            lines = len(query.split("\n"))
            words = len(query.split())
            click.echo(
                colored(
                    f"{lines} line(s), {words} word(s), {len(query)} character(s)",
                    attrs=["dark"],
                )
            )

            answer = ask(
                "Execute this query? (y)es, (e)dit, (n)o",
                type=click.Choice(["y", "e", "n"], case_sensitive=False),
                default="y",
            )
            match answer.lower():
                case "y":
                    return query
                case "n":
                    return None
                case "e":
                    if "\n" in query:
                        query = self.multi_line()
                    else:
                        query = ask("Edit your query", default=query).strip()
                    if not query:
                        return None


def make_query_input(mode: InputMode | None = None) -> QueryInput:
    """
    Create the input strategy for a console session. Without an explicit
    mode, the editor is used on a terminal and plain lines otherwise.
    """
    match mode:
        case InputMode.EDITOR:
            return EditorInput()
        case InputMode.MENU:
            return MenuInput()
        case None:
            if sys.stdin.isatty() and sys.stdout.isatty():
                return EditorInput()
            return LineInput()

"""
Output formatting for the console: result grids, query echo and error
messages.
"""

from datetime import date, datetime
import re
import sys
from typing import Any, Dict

from termcolor import colored

from dbcli.config import EngineFamily

MAX_CELL_WIDTH = 40

SQL_KEYWORDS = frozenset(
    """
    SELECT FROM WHERE ORDER BY GROUP HAVING LIMIT OFFSET DISTINCT AS JOIN
    INNER LEFT RIGHT FULL OUTER ON UNION INTERSECT EXCEPT ALL EXISTS IN
    BETWEEN LIKE ILIKE INSERT INTO VALUES UPDATE SET DELETE CREATE TABLE
    DATABASE SCHEMA INDEX VIEW ALTER DROP TRUNCATE ADD COLUMN CONSTRAINT
    PRIMARY KEY FOREIGN REFERENCES UNIQUE CHECK DEFAULT NOT NULL
    AUTO_INCREMENT GRANT REVOKE COMMIT ROLLBACK BEGIN TRANSACTION CASE WHEN
    THEN ELSE END AND OR IS TRUE FALSE ASC DESC PRAGMA SHOW DESCRIBE
    """.split()
)

SQL_FUNCTIONS = frozenset(
    """
    COUNT SUM AVG MIN MAX CONCAT SUBSTRING SUBSTR UPPER LOWER TRIM LENGTH
    COALESCE ISNULL NULLIF IFNULL NOW CURRENT_TIMESTAMP CURRENT_DATE
    CURRENT_TIME DATE_FORMAT REPLACE
    """.split()
)

MONGO_METHODS = frozenset(
    """
    find findOne insertOne insertMany updateOne updateMany replaceOne
    deleteOne deleteMany aggregate count countDocuments
    estimatedDocumentCount distinct sort limit skip toArray pretty
    getCollection getCollectionNames listCollectionNames
    """.split()
)

TOKEN = re.compile(
    r"""(?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")"""
    r"|(?P<number>\b\d+(?:\.\d+)?\b)"
    r"|(?P<word>\$?[A-Za-z_][A-Za-z0-9_]*)"
)


def error(msg: str) -> None:
    """
    Print error messages in a consistent way.
    """
    print(f"{colored('Error:', 'red')} {msg}", file=sys.stderr)


def format_value(value: Any) -> str:
    """
    A cell value as text: "NULL" for None, and long values cut down to
    MAX_CELL_WIDTH characters.
    """
    if value is None:
        return "NULL"

    match value:
        case datetime():
            s = value.isoformat(sep=" ")
        case date():
            s = value.isoformat()
        case bool():
            s = "true" if value else "false"
        case _:
            s = str(value)

    if len(s) > MAX_CELL_WIDTH:
        s = s[: MAX_CELL_WIDTH - 3] + "..."
    return s


def color_value(value: Any, padded: str) -> str:
    """
    Colour an already padded cell according to the type of its value.
    """
    match value:
        case None:
            return colored(padded, attrs=["dark"])
        case bool():
            return colored(padded, "blue")
        case int() | float():
            return colored(padded, "yellow")
        case date():
            return colored(padded, "magenta")
        case _:
            return padded


def display_results(
    columns: list[str],
    data: list[Dict[str, Any]],
    limit: int,
    total: int,
    no_results_message: str | None = None,
    elapsed: int | None = None,
) -> None:
    """
    Display the results of a query.

    :param columns: the names of the columns, in order
    :param data: list of rows. Each row is a dictionary of (column -> value)
    :param limit: the most rows to show, or 0 for no limit
    :param total: the total number of rows; only the first `limit` rows of
        `data` are shown
    :param no_results_message: the message to display if the results are
        empty, or None for the default message
    :param elapsed: the time the query took, in milliseconds, or None not to
        display it
    """
    # pylint: disable=too-many-locals

    if len(data) == 0:
        print(no_results_message or "No data.")
        if elapsed is not None:
            print(f"({elapsed}ms)\n")
        return

    shown = data[:limit] if limit > 0 else data

    def make_output_line(
        fields: list[str], delim: str = "|", pad_char: str = " "
    ) -> str:
        """
        Format a single output line, with the fields separated and padded.
        """
        return (
            f"{delim}{pad_char}"
            + f"{pad_char}{delim}{pad_char}".join(fields)
            + f"{pad_char}{delim}"
        )

    # For each column, figure out how wide to make it in the display, based on
    # the data.
    widths: dict[str, int] = {col: len(col) for col in columns}
    for col in columns:
        for row in shown:
            widths[col] = max(widths[col], len(format_value(row.get(col))))

    sep = ["-" * widths[col] for col in columns]
    header = [colored(col.ljust(widths[col]), attrs=["bold"]) for col in columns]

    print(make_output_line(sep, "+", "-"))
    print(make_output_line(header))
    print(make_output_line(sep, "+", "-"))

    for row in shown:
        fields = []
        for col in columns:
            value = row.get(col)
            padded = format_value(value).ljust(widths[col])
            fields.append(color_value(value, padded))

        print(make_output_line(fields))

    print(make_output_line(sep, "+", "-"))

    suffix = "s" if total != 1 else ""
    if len(shown) < total:
        epilog = f"{len(shown):,} of {total:,} row{suffix}"
    else:
        epilog = f"{total:,} row{suffix}"

    if elapsed is not None:
        epilog = f"{epilog} ({elapsed}ms)"

    print(f"{epilog}\n")

    if len(shown) < total:
        print(
            colored(
                f"Showing first {len(shown):,} rows; "
                f"{total - len(shown):,} more not displayed.\n",
                "yellow",
            )
        )


def highlight(text: str, family: EngineFamily) -> str:
    """
    Colour a query for echoing: keywords (or, for document stores, methods
    and $-operators), string literals and numbers.
    """

    def colour_sql(m: re.Match) -> str:
        if (s := m.group("string")) is not None:
            return colored(s, "green")
        if (n := m.group("number")) is not None:
            return colored(n, "yellow")
        word = m.group("word")
        if word.upper() in SQL_KEYWORDS:
            return colored(word.upper(), "blue")
        if word.upper() in SQL_FUNCTIONS:
            return colored(word.upper(), "magenta")
        return word

    def colour_mongo(m: re.Match) -> str:
        if (s := m.group("string")) is not None:
            return colored(s, "green")
        if (n := m.group("number")) is not None:
            return colored(n, "yellow")
        word = m.group("word")
        if word == "db":
            return colored(word, "cyan", attrs=["bold"])
        if word in MONGO_METHODS:
            return colored(word, "blue")
        if word.startswith("$"):
            return colored(word, "magenta")
        return word

    match family:
        case EngineFamily.DOCUMENT:
            return TOKEN.sub(colour_mongo, text)
        case EngineFamily.RELATIONAL | EngineFamily.FILE_BASED:
            return TOKEN.sub(colour_sql, text)

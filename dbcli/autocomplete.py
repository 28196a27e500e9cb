"""
Query completion. The provider holds the keywords and functions for one
engine, plus the table names of the connected database, and ranks them
against what the user has typed so far.
"""

import logging
import re
from typing import Self

from dbcli.clients import (
    DatabaseClient,
    column_listing_query,
    column_name_key,
    table_listing_query,
)
from dbcli.config import EngineFamily, EngineType
from dbcli.errors import QueryError

logger = logging.getLogger(__name__)

MAX_SUGGESTIONS = 10

COMMON_KEYWORDS = [
    "SELECT", "FROM", "WHERE", "ORDER BY", "GROUP BY", "HAVING", "LIMIT",
    "INSERT INTO", "VALUES", "UPDATE", "SET", "DELETE FROM",
    "CREATE TABLE", "ALTER TABLE", "DROP TABLE", "CREATE INDEX",
    "INNER JOIN", "LEFT JOIN", "RIGHT JOIN", "FULL JOIN", "ON",
    "UNION", "UNION ALL", "DISTINCT", "AS", "AND", "OR", "NOT",
    "IN", "LIKE", "BETWEEN", "IS NULL", "IS NOT NULL",
    "EXISTS", "CASE", "WHEN", "THEN", "ELSE", "END",
]

SQL_FUNCTIONS = [
    "COUNT(*)", "COUNT()", "SUM()", "AVG()", "MIN()", "MAX()",
    "CONCAT()", "SUBSTRING()", "UPPER()", "LOWER()", "TRIM()",
    "NOW()", "CURRENT_DATE", "CURRENT_TIME", "CURRENT_TIMESTAMP",
    "LENGTH()", "COALESCE()", "NULLIF()", "ISNULL()",
]

MONGO_KEYWORDS = [
    "db.", ".find()", ".findOne()", ".insertOne()", ".insertMany()",
    ".updateOne()", ".updateMany()", ".deleteOne()", ".deleteMany()",
    ".replaceOne()", ".aggregate()", ".count()", ".countDocuments()",
    ".distinct()", ".sort()", ".limit()", ".skip()",
    "$match", "$group", "$sort", "$limit", "$skip", "$project",
    "$unwind", "$lookup", "$addFields", "$replaceRoot",
    "$eq", "$ne", "$gt", "$gte", "$lt", "$lte", "$in", "$nin",
    "$and", "$or", "$not", "$nor", "$exists", "$type", "$regex",
]

TABLE_CONTEXT_WORDS = ("from", "join", "update", "into")


def engine_keywords(engine: EngineType) -> list[str]:
    """
    Keywords that only make sense for one engine.
    """
    match engine:
        case EngineType.MYSQL:
            return [
                "AUTO_INCREMENT", "UNSIGNED", "ZEROFILL", "BINARY",
                "SHOW TABLES", "SHOW DATABASES", "DESCRIBE", "EXPLAIN",
            ]
        case EngineType.POSTGRES:
            return [
                "SERIAL", "BIGSERIAL", "RETURNING", "ILIKE", "SIMILAR TO",
                "ARRAY", "JSONB", "UUID", "GENERATE_SERIES",
            ]
        case EngineType.SQLITE:
            return [
                "AUTOINCREMENT", "WITHOUT ROWID", "PRAGMA",
                "ATTACH DATABASE", "DETACH DATABASE",
            ]
        case EngineType.MONGODB:
            return []


def quick_suggestions(engine: EngineType) -> list[str]:
    """
    Statement skeletons, offered when nothing has been typed.
    """
    match engine.family:
        case EngineFamily.DOCUMENT:
            return [
                "db.collection.find()",
                "db.collection.findOne()",
                "db.collection.insertOne()",
                "db.collection.updateOne()",
                "db.collection.deleteOne()",
                "db.collection.aggregate()",
                "db.collection.count()",
                "db.collection.distinct()",
            ]
        case EngineFamily.RELATIONAL | EngineFamily.FILE_BASED:
            return [
                "SELECT * FROM",
                "SELECT COUNT(*) FROM",
                "INSERT INTO",
                "UPDATE",
                "DELETE FROM",
                "CREATE TABLE",
                "ALTER TABLE",
                "DROP TABLE",
            ]


class AutocompleteProvider:
    """
    Completion candidates for one console session.
    """

    def __init__(
        self: Self, engine: EngineType, client: DatabaseClient | None = None
    ) -> None:
        """
        :param engine: the engine of the session
        :param client: a connected client, used to look up table and column
            names; without one, only keywords are offered
        """
        self.engine = engine
        self.client = client
        self.keywords: list[str] = list(COMMON_KEYWORDS)
        self.functions: list[str] = []
        self._tables: list[str] = []
        self._columns: dict[str, list[str]] = {}

        match engine.family:
            case EngineFamily.DOCUMENT:
                self.keywords.extend(MONGO_KEYWORDS)
            case EngineFamily.RELATIONAL | EngineFamily.FILE_BASED:
                self.functions = list(SQL_FUNCTIONS)
        self.keywords.extend(engine_keywords(engine))

    @property
    def table_names(self: Self) -> list[str]:
        """
        The cached table names.
        """
        return list(self._tables)

    def load_table_names(self: Self) -> None:
        """
        Fetch the table names from the database. On failure, the names are
        left as they were and a warning is logged.
        """
        if self.client is None:
            return

        query = table_listing_query(self.engine)
        if query is None:
            return

        try:
            result = self.client.query(query)
        except QueryError as e:
            logger.warning("Failed to load table names for autocomplete: %s", e)
            return

        self._tables = [
            str(next(iter(row.values()))) for row in result.rows if len(row) > 0
        ]
        logger.debug("Loaded %d table name(s)", len(self._tables))

    def load_column_names(self: Self, table_name: str) -> list[str]:
        """
        The column names of a table, fetched once per table and cached.
        Returns an empty list on failure.
        """
        if self.client is None or not table_name:
            return []

        if table_name in self._columns:
            return list(self._columns[table_name])

        query = column_listing_query(self.engine, table_name)
        key = column_name_key(self.engine)
        if query is None or key is None:
            return []

        try:
            result = self.client.query(query)
        except QueryError as e:
            logger.warning("Failed to load columns for table %s: %s", table_name, e)
            return []

        columns = [str(row[key]) for row in result.rows if key in row]
        self._columns[table_name] = columns
        return list(columns)

    def get_suggestions(self: Self, text: str) -> list[str]:
        """
        Rank the candidates for partially typed input. Anything containing
        the input matches; table names are added after FROM, JOIN, UPDATE
        and INTO, and a few follow-on clauses are offered by context.
        Candidates that start with the input come first, shorter ones
        first within each group.
        """
        lowered = text.lower()
        suggestions: list[str] = [
            s
            for s in self.keywords + self.functions + self._tables
            if lowered in s.lower()
        ]

        words = re.split(r"\s+", text)
        last = words[-1].lower()
        second_last = words[-2].lower() if len(words) > 1 else ""

        if second_last in TABLE_CONTEXT_WORDS:
            suggestions.extend(t for t in self._tables if t.lower().startswith(last))

        if last == "" and any(t.lower() == second_last for t in self._tables):
            suggestions.append("WHERE")

        if "select" in lowered and "from" not in lowered:
            suggestions.extend(["* FROM", "COUNT(*) FROM"])

        if "where" in lowered and "order" not in lowered:
            suggestions.extend(["ORDER BY", "GROUP BY", "LIMIT"])

        unique = list(dict.fromkeys(suggestions))
        unique.sort(key=lambda s: (not s.lower().startswith(lowered), len(s)))
        return unique[:MAX_SUGGESTIONS]

    def get_quick_suggestions(self: Self) -> list[str]:
        """
        Statement skeletons for empty input.
        """
        return quick_suggestions(self.engine)

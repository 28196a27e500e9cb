"""
The database client abstraction. Every engine is wrapped in a client with
the same three operations, connect(), disconnect() and query(), and every
query returns a QueryResult. The relational and file-based engines go
through SQLAlchemy; the document engine lives in dbcli.mongo.
"""

# pylint: disable=too-few-public-methods

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from time import perf_counter
from typing import Any, Self

import sqlalchemy
from sqlalchemy.engine import URL, Connection, Engine

from dbcli.config import ConnectionProfile, EngineType
from dbcli.errors import (
    DatabaseConnectionError,
    QueryError,
    UnsupportedEngineError,
)

logger = logging.getLogger(__name__)


@dataclass
class QueryResult:
    """
    The result of a query. `columns` is None when the engine reports no
    schema; callers then use the keys of the first row.
    """

    rows: list[dict[str, Any]] = field(default_factory=list)
    row_count: int = 0
    execution_time: int = 0
    columns: list[str] | None = None


def elapsed_ms(start: float) -> int:
    """
    Milliseconds elapsed since `start`, a perf_counter() value.
    """
    return round((perf_counter() - start) * 1000)


class DatabaseClient(ABC):
    """
    Abstract base class for the engine-specific clients.
    """

    def __init__(self: Self, profile: ConnectionProfile) -> None:
        self.profile = profile

    @abstractmethod
    def connect(self: Self) -> None:
        """
        Establish the session.

        :raises: DatabaseConnectionError if the handshake fails
        """

    @abstractmethod
    def disconnect(self: Self) -> None:
        """
        Release the session. Safe to call if connect() was never called or
        failed, and safe to call more than once.
        """

    @abstractmethod
    def query(self: Self, text: str) -> QueryResult:
        """
        Send a query to the engine.

        :param text: the query, passed through as-is
        :raises: QueryError if the engine rejects the query
        """

    def __enter__(self: Self) -> Self:
        self.connect()
        return self

    def __exit__(self: Self, exc_type, exc_val, exc_tb) -> None:
        self.disconnect()


class SQLAlchemyClient(DatabaseClient):
    """
    A client for any engine SQLAlchemy can reach. Holds one engine and one
    connection for the lifetime of the session.
    """

    def __init__(self: Self, profile: ConnectionProfile) -> None:
        super().__init__(profile)
        self._engine: Engine | None = None
        self._connection: Connection | None = None

    @abstractmethod
    def url(self: Self) -> URL:
        """
        The SQLAlchemy URL for the profile.
        """

    def connect_args(self: Self) -> dict[str, Any]:
        """
        Extra DBAPI connect() arguments.
        """
        return {}

    def display_url(self: Self) -> str:
        """
        The URL, with the password hidden, for messages and logs.
        """
        return self.url().render_as_string(hide_password=True)

    def connect(self: Self) -> None:
        try:
            self._engine = sqlalchemy.create_engine(
                self.url(), connect_args=self.connect_args()
            )
            self._connection = self._engine.connect()
        except sqlalchemy.exc.SQLAlchemyError as e:
            logger.debug("Connection to %s failed: %s", self.display_url(), e)
            self.disconnect()
            raise DatabaseConnectionError(
                f"Unable to connect to {self.display_url()}: {_message(e)}"
            ) from e

        logger.debug("Connected to %s", self.display_url())

    def disconnect(self: Self) -> None:
        if self._connection is not None:
            try:
                self._connection.close()
            except sqlalchemy.exc.SQLAlchemyError as e:
                logger.warning("Error closing connection: %s", e)
            finally:
                self._connection = None

        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            logger.debug("Disconnected from %s", self.display_url())

    def columns_for(
        self: Self, keys: list[str], rows: list[dict[str, Any]]
    ) -> list[str]:
        """
        The column names to report for a result. Relational engines report
        them in the cursor metadata.
        """
        # pylint: disable=unused-argument
        return keys

    def query(self: Self, text: str) -> QueryResult:
        if self._connection is None:
            raise QueryError("Not connected to database")

        start = perf_counter()
        # no_parameters: hand the text to the driver untouched, so that "%"
        # and ":" are never taken as parameter markers.
        conn = self._connection.execution_options(no_parameters=True)
        try:
            with conn.exec_driver_sql(text) as cursor:
                if cursor.returns_rows:
                    mappings = cursor.mappings()
                    keys = list(mappings.keys())
                    rows = [dict(row) for row in mappings]
                    row_count = len(rows)
                else:
                    keys = []
                    rows = []
                    row_count = max(cursor.rowcount, 0)

            conn.commit()

        except sqlalchemy.exc.SQLAlchemyError as e:
            with_rollback(conn)
            logger.debug("Query failed: %s", e)
            raise QueryError(_message(e)) from e

        execution_time = elapsed_ms(start)
        logger.debug("Query returned %d row(s) in %dms", row_count, execution_time)
        return QueryResult(
            rows=rows,
            row_count=row_count,
            execution_time=execution_time,
            columns=self.columns_for(keys, rows),
        )


def with_rollback(conn: Connection) -> None:
    """
    Roll back after a failed statement, so the session stays usable.
    """
    try:
        conn.rollback()
    except sqlalchemy.exc.SQLAlchemyError as e:
        logger.warning("Rollback failed: %s", e)


def _message(e: sqlalchemy.exc.SQLAlchemyError) -> str:
    """
    The driver's own message, without SQLAlchemy's statement and
    background-link decorations.
    """
    orig = getattr(e, "orig", None)
    return str(orig) if orig is not None else str(e)


class MySQLClient(SQLAlchemyClient):
    """
    MySQL, through PyMySQL.
    """

    def url(self: Self) -> URL:
        p = self.profile
        return URL.create(
            "mysql+pymysql",
            username=p.username,
            password=p.password,
            host=p.host,
            port=p.port,
            database=p.database or None,
        )

    def connect_args(self: Self) -> dict[str, Any]:
        if self.profile.ssl:
            # Encrypt, but don't verify the server certificate.
            return {"ssl": {"check_hostname": False}}
        return {}


class PostgreSQLClient(SQLAlchemyClient):
    """
    PostgreSQL, through psycopg2.
    """

    def url(self: Self) -> URL:
        p = self.profile
        return URL.create(
            "postgresql+psycopg2",
            username=p.username,
            password=p.password,
            host=p.host,
            port=p.port,
            database=p.database or None,
        )

    def connect_args(self: Self) -> dict[str, Any]:
        if self.profile.ssl:
            return {"sslmode": "require"}
        return {}


class SQLiteClient(SQLAlchemyClient):
    """
    SQLite. The file must already exist: it is opened in URI mode with
    mode=rw, which refuses to create a new database.
    """

    def url(self: Self) -> URL:
        path = self.profile.filename
        return URL.create(
            "sqlite",
            database=f"file:{path}",
            query={"mode": "rw", "uri": "true"},
        )

    def display_url(self: Self) -> str:
        return f"sqlite:///{self.profile.filename}"

    def columns_for(
        self: Self, keys: list[str], rows: list[dict[str, Any]]
    ) -> list[str]:
        if len(rows) == 0:
            return []
        return list(rows[0].keys())


def create_database_client(profile: ConnectionProfile) -> DatabaseClient:
    """
    Create the client for a profile's engine.

    :raises: UnsupportedEngineError if the engine has no client
    """
    # pylint: disable=import-outside-toplevel
    match profile.engine:
        case EngineType.MYSQL:
            return MySQLClient(profile)
        case EngineType.POSTGRES:
            return PostgreSQLClient(profile)
        case EngineType.SQLITE:
            return SQLiteClient(profile)
        case EngineType.MONGODB:
            from dbcli.mongo import MongoDBClient

            return MongoDBClient(profile)
        case engine:
            raise UnsupportedEngineError(f"Unsupported database type: {engine}")


def check_connection(profile: ConnectionProfile) -> None:
    """
    Connect to a profile's database and disconnect again.

    :raises: DatabaseConnectionError if the connection fails
    """
    client = create_database_client(profile)
    try:
        client.connect()
    finally:
        client.disconnect()


def table_listing_query(engine: EngineType) -> str | None:
    """
    The query that lists the tables in the current database, or None if
    table listing isn't supported for the engine.
    """
    match engine:
        case EngineType.MYSQL:
            return "SHOW TABLES"
        case EngineType.POSTGRES:
            return "SELECT tablename FROM pg_tables WHERE schemaname = 'public'"
        case EngineType.SQLITE:
            return "SELECT name FROM sqlite_master WHERE type='table'"
        case EngineType.MONGODB:
            return None


def database_listing_query(engine: EngineType) -> str | None:
    """
    The query that lists the databases on the server, or None for engines
    without one (SQLite has a single file; MongoDB is browsed from the
    console).
    """
    match engine:
        case EngineType.MYSQL:
            return "SHOW DATABASES"
        case EngineType.POSTGRES:
            return "SELECT datname FROM pg_database WHERE datistemplate = false"
        case EngineType.SQLITE | EngineType.MONGODB:
            return None


def column_listing_query(engine: EngineType, table_name: str) -> str | None:
    """
    The query that lists a table's columns, or None if not supported.
    """
    match engine:
        case EngineType.MYSQL:
            return f"DESCRIBE {table_name}"
        case EngineType.POSTGRES:
            return (
                "SELECT column_name FROM information_schema.columns "
                f"WHERE table_name = '{table_name}'"
            )
        case EngineType.SQLITE:
            return f"PRAGMA table_info([{table_name}])"
        case EngineType.MONGODB:
            return None


def column_name_key(engine: EngineType) -> str | None:
    """
    The key, in each row returned by column_listing_query(), that holds the
    column name.
    """
    match engine:
        case EngineType.MYSQL:
            return "Field"
        case EngineType.POSTGRES:
            return "column_name"
        case EngineType.SQLITE:
            return "name"
        case EngineType.MONGODB:
            return None

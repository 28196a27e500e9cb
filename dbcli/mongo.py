"""
The MongoDB client. Queries are written in a small subset of the mongo
shell language:

    db.users.find({age: {$gt: 30}}, {name: 1}).sort({name: 1}).limit(10)
    db.getCollection("audit.log").countDocuments()
    db.orders.aggregate([{$group: {_id: "$status", n: {$sum: 1}}}])

The text is parsed, never evaluated. Only the methods named in
COLLECTION_METHODS and CURSOR_METHODS are accepted, and their arguments
must be literals: relaxed JSON (bare keys, single-quoted strings, trailing
commas), plus ObjectId("..."), ISODate("...") and new Date("...").
"""

# pylint: disable=too-few-public-methods

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from time import perf_counter
from typing import Any, Self

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import MongoClient
from pymongo.errors import PyMongoError

from dbcli.clients import DatabaseClient, QueryResult, elapsed_ms
from dbcli.config import ConnectionProfile
from dbcli.errors import DatabaseConnectionError, QueryError

logger = logging.getLogger(__name__)

DB_PREFIX = "db."
DEFAULT_DATABASE = "test"
SERVER_SELECTION_TIMEOUT_MS = 10_000

# Method name -> (minimum, maximum) number of arguments.
COLLECTION_METHODS: dict[str, tuple[int, int]] = {
    "find": (0, 2),
    "findOne": (0, 2),
    "insertOne": (1, 1),
    "insertMany": (1, 1),
    "updateOne": (2, 2),
    "updateMany": (2, 2),
    "replaceOne": (2, 2),
    "deleteOne": (1, 1),
    "deleteMany": (1, 1),
    "aggregate": (1, 1),
    "countDocuments": (0, 1),
    "count": (0, 1),
    "estimatedDocumentCount": (0, 0),
    "distinct": (1, 2),
}

CURSOR_METHODS: dict[str, tuple[int, int]] = {
    "limit": (1, 1),
    "skip": (1, 1),
    "sort": (1, 1),
    "toArray": (0, 0),
    "pretty": (0, 0),
}

DATABASE_METHODS: dict[str, tuple[int, int]] = {
    "getCollectionNames": (0, 0),
    "listCollectionNames": (0, 0),
}

CONSTRUCTORS = ("ObjectId", "ISODate", "Date")

COUNT_MODIFIERS = ("limit", "skip")


@dataclass(frozen=True)
class MethodCall:
    """
    One ".name(args)" step of a parsed query.
    """

    name: str
    args: tuple[Any, ...] = ()


@dataclass(frozen=True)
class MongoCommand:
    """
    A parsed query. `collection` is None for database-level calls, in which
    case `calls` holds exactly one database method.
    """

    collection: str | None
    calls: tuple[MethodCall, ...] = field(default_factory=tuple)


class ShellParser:
    """
    A recursive-descent parser for the accepted subset of the mongo shell
    language. Raises QueryError on anything it doesn't recognize.
    """

    def __init__(self: Self, text: str) -> None:
        self.text = text
        self.pos = 0

    # -- low-level scanning --------------------------------------------------

    def error(self: Self, msg: str) -> QueryError:
        """
        A QueryError pointing at the current position.
        """
        return QueryError(f"{msg} at position {self.pos + 1}")

    def skip_ws(self: Self) -> None:
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1

    def peek(self: Self) -> str:
        self.skip_ws()
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def expect(self: Self, s: str) -> None:
        self.skip_ws()
        if not self.text.startswith(s, self.pos):
            found = self.text[self.pos : self.pos + 10] or "end of input"
            raise self.error(f'Expected "{s}" but found "{found}"')
        self.pos += len(s)

    def accept(self: Self, s: str) -> bool:
        self.skip_ws()
        if self.text.startswith(s, self.pos):
            self.pos += len(s)
            return True
        return False

    def identifier(self: Self) -> str:
        """
        An identifier: letters, digits, "_" and "$", not starting with a
        digit.
        """
        self.skip_ws()
        start = self.pos
        while self.pos < len(self.text):
            c = self.text[self.pos]
            if c.isalnum() or c in "_$":
                self.pos += 1
            else:
                break

        name = self.text[start : self.pos]
        if name == "" or name[0].isdigit():
            self.pos = start
            raise self.error("Expected a name")
        return name

    # -- query structure -----------------------------------------------------

    def parse(self: Self) -> MongoCommand:
        """
        Parse the whole text.
        """
        if not self.text.startswith(DB_PREFIX):
            raise QueryError(f'MongoDB queries should start with "{DB_PREFIX}"')
        self.pos = len(DB_PREFIX)

        name = self.identifier()
        if name == "getCollection":
            args = self.arguments()
            if len(args) != 1 or not isinstance(args[0], str):
                raise self.error("getCollection() takes one collection name")
            command = MongoCommand(args[0], self.calls(COLLECTION_METHODS))
        elif name in DATABASE_METHODS:
            command = MongoCommand(None, (self.call_args(name, DATABASE_METHODS),))
        else:
            command = MongoCommand(name, self.calls(COLLECTION_METHODS))

        self.accept(";")
        if self.peek() != "":
            raise self.error("Unexpected text")

        if command.collection is not None and len(command.calls) == 0:
            raise QueryError(
                f'No method called on collection "{command.collection}"'
            )
        return command

    def calls(
        self: Self, methods: dict[str, tuple[int, int]]
    ) -> tuple[MethodCall, ...]:
        """
        The chain of ".method(args)" calls on a collection. The first call
        must be a collection method; after a find(), cursor methods may
        follow.
        """
        calls: list[MethodCall] = []
        allowed = methods
        while self.accept("."):
            name = self.identifier()
            call = self.call_args(name, allowed)
            calls.append(call)
            if call.name == "find":
                allowed = CURSOR_METHODS
            elif allowed is CURSOR_METHODS:
                continue
            else:
                allowed = {}

        return tuple(calls)

    def call_args(
        self: Self, name: str, allowed: dict[str, tuple[int, int]]
    ) -> MethodCall:
        if name not in allowed:
            raise QueryError(f'Unsupported method "{name}"')

        args = self.arguments()
        low, high = allowed[name]
        if not low <= len(args) <= high:
            raise QueryError(
                f"{name}() takes {low}" + (f" to {high}" if high != low else "")
                + f" argument(s), got {len(args)}"
            )
        if name in COUNT_MODIFIERS and not _is_count(args[0]):
            raise QueryError(f"{name}() takes a non-negative integer, got {args[0]!r}")
        return MethodCall(name, tuple(args))

    def arguments(self: Self) -> list[Any]:
        self.expect("(")
        args: list[Any] = []
        if self.accept(")"):
            return args

        while True:
            args.append(self.literal())
            if self.accept(")"):
                return args
            self.expect(",")

    # -- literals ------------------------------------------------------------

    def literal(self: Self) -> Any:
        # pylint: disable=too-many-return-statements
        match self.peek():
            case "":
                raise self.error("Unexpected end of input")
            case "{":
                return self.obj()
            case "[":
                return self.array()
            case '"' | "'":
                return self.string()
            case c if c.isdigit() or c in "-+.":
                return self.number()

        word = self.identifier()
        match word:
            case "true":
                return True
            case "false":
                return False
            case "null":
                return None
            case "new":
                return self.constructor(self.identifier())
            case w if w in CONSTRUCTORS:
                return self.constructor(w)
            case _:
                raise QueryError(f'Unsupported value "{word}"')

    def constructor(self: Self, name: str) -> Any:
        if name not in CONSTRUCTORS:
            raise QueryError(f'Unsupported constructor "{name}"')

        args = self.arguments()
        match (name, args):
            case ("ObjectId", [str() as oid]):
                try:
                    return ObjectId(oid)
                except InvalidId as e:
                    raise QueryError(str(e)) from e
            case ("ObjectId", []):
                return ObjectId()
            case ("ISODate" | "Date", [str() as stamp]):
                try:
                    return datetime.fromisoformat(stamp)
                except ValueError as e:
                    raise QueryError(f"Bad date: {stamp}") from e
            case ("ISODate" | "Date", []):
                return datetime.now(timezone.utc)
            case _:
                raise QueryError(f"Bad arguments to {name}()")

    def obj(self: Self) -> dict[str, Any]:
        self.expect("{")
        result: dict[str, Any] = {}
        while not self.accept("}"):
            if self.peek() in ('"', "'"):
                key = self.string()
            else:
                key = self.identifier()
            self.expect(":")
            result[key] = self.literal()
            if not self.accept(","):
                self.expect("}")
                break

        return result

    def array(self: Self) -> list[Any]:
        self.expect("[")
        result: list[Any] = []
        while not self.accept("]"):
            result.append(self.literal())
            if not self.accept(","):
                self.expect("]")
                break

        return result

    def string(self: Self) -> str:
        self.skip_ws()
        quote = self.text[self.pos]
        self.pos += 1
        chars: list[str] = []
        escapes = {"n": "\n", "t": "\t", "r": "\r", "b": "\b", "f": "\f"}
        while self.pos < len(self.text):
            c = self.text[self.pos]
            self.pos += 1
            if c == quote:
                return "".join(chars)
            if c == "\\" and self.pos < len(self.text):
                c = self.text[self.pos]
                self.pos += 1
                if c == "u":
                    code = self.text[self.pos : self.pos + 4]
                    try:
                        chars.append(chr(int(code, 16)))
                    except ValueError:
                        raise self.error("Bad unicode escape") from None
                    self.pos += 4
                else:
                    chars.append(escapes.get(c, c))
            else:
                chars.append(c)

        raise self.error("Unterminated string")

    def number(self: Self) -> int | float:
        self.skip_ws()
        start = self.pos
        while self.pos < len(self.text) and (
            self.text[self.pos].isalnum() or self.text[self.pos] in "+-."
        ):
            self.pos += 1

        token = self.text[start : self.pos]
        try:
            return int(token)
        except ValueError:
            pass
        try:
            return float(token)
        except ValueError:
            self.pos = start
            raise self.error(f'Bad number "{token}"') from None


def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def parse_command(text: str) -> MongoCommand:
    """
    Parse a mongo shell query.

    :raises: QueryError if the text isn't in the accepted subset
    """
    return ShellParser(text.strip()).parse()


def _plain(value: Any) -> Any:
    """
    Convert BSON-specific values to displayable ones.
    """
    match value:
        case ObjectId():
            return str(value)
        case dict():
            return {k: _plain(v) for k, v in value.items()}
        case list():
            return [_plain(v) for v in value]
        case _:
            return value


def _sort_spec(spec: Any) -> list[tuple[str, int]]:
    if not isinstance(spec, dict):
        raise QueryError("sort() takes a document, e.g. {name: 1}")
    return list(spec.items())


def run_command(database: Any, command: MongoCommand) -> list[dict[str, Any]]:
    """
    Execute a parsed command against a pymongo Database and return the
    result documents.
    """
    # pylint: disable=too-many-return-statements
    if command.collection is None:
        return [{"name": n} for n in sorted(database.list_collection_names())]

    collection = database[command.collection]
    first, *rest = command.calls
    args = first.args

    match first.name:
        case "find":
            cursor = collection.find(*args)
            for modifier in rest:
                match modifier.name:
                    case "limit":
                        cursor = cursor.limit(modifier.args[0])
                    case "skip":
                        cursor = cursor.skip(modifier.args[0])
                    case "sort":
                        cursor = cursor.sort(_sort_spec(modifier.args[0]))
                    case "toArray" | "pretty":
                        pass
            return list(cursor)
        case "findOne":
            doc = collection.find_one(*args)
            return [] if doc is None else [doc]
        case "aggregate":
            if not isinstance(args[0], list):
                raise QueryError("aggregate() takes a pipeline array")
            return list(collection.aggregate(args[0]))
        case "countDocuments" | "count":
            return [{"count": collection.count_documents(args[0] if args else {})}]
        case "estimatedDocumentCount":
            return [{"count": collection.estimated_document_count()}]
        case "distinct":
            key = args[0]
            return [{key: v} for v in collection.distinct(*args)]
        case "insertOne":
            r = collection.insert_one(args[0])
            return [{"acknowledged": r.acknowledged, "insertedId": r.inserted_id}]
        case "insertMany":
            if not isinstance(args[0], list):
                raise QueryError("insertMany() takes an array of documents")
            r = collection.insert_many(args[0])
            return [{"acknowledged": r.acknowledged, "insertedIds": r.inserted_ids}]
        case "updateOne" | "updateMany" | "replaceOne":
            method = {
                "updateOne": collection.update_one,
                "updateMany": collection.update_many,
                "replaceOne": collection.replace_one,
            }[first.name]
            r = method(*args)
            return [
                {
                    "acknowledged": r.acknowledged,
                    "matchedCount": r.matched_count,
                    "modifiedCount": r.modified_count,
                    "upsertedId": r.upserted_id,
                }
            ]
        case "deleteOne" | "deleteMany":
            method = (
                collection.delete_one
                if first.name == "deleteOne"
                else collection.delete_many
            )
            r = method(*args)
            return [{"acknowledged": r.acknowledged, "deletedCount": r.deleted_count}]
        case name:
            raise QueryError(f'Unsupported method "{name}"')


class MongoDBClient(DatabaseClient):
    """
    MongoDB, through pymongo.
    """

    def __init__(self: Self, profile: ConnectionProfile) -> None:
        super().__init__(profile)
        self.client: MongoClient | None = None
        self.database: Any = None

    def connect(self: Self) -> None:
        uri = self.profile.uri or ""
        try:
            options: dict[str, Any] = {
                "serverSelectionTimeoutMS": SERVER_SELECTION_TIMEOUT_MS
            }
            if self.profile.ssl:
                options["tls"] = True
            self.client = MongoClient(uri, **options)
            self.client.admin.command("ping")
            self.database = self.client.get_default_database(DEFAULT_DATABASE)
        except (PyMongoError, ValueError) as e:
            logger.debug("Connection to MongoDB failed: %s", e)
            self.disconnect()
            raise DatabaseConnectionError(
                f"Unable to connect to MongoDB: {e}"
            ) from e

        logger.debug("Connected to MongoDB database %s", self.database.name)

    def disconnect(self: Self) -> None:
        if self.client is not None:
            try:
                self.client.close()
            except PyMongoError as e:
                logger.warning("Error closing MongoDB connection: %s", e)
            finally:
                self.client = None
                self.database = None
                logger.debug("Disconnected from MongoDB")

    def query(self: Self, text: str) -> QueryResult:
        if self.database is None:
            raise QueryError("Not connected to database")

        start = perf_counter()
        command = parse_command(text)
        try:
            docs = run_command(self.database, command)
        except PyMongoError as e:
            raise QueryError(f"MongoDB query error: {e}") from e
        except (TypeError, ValueError) as e:
            # Arguments of the wrong shape or range for the pymongo method.
            raise QueryError(f"MongoDB query error: {e}") from e

        rows = [_plain(doc) for doc in docs]
        return QueryResult(
            rows=rows,
            row_count=len(rows),
            execution_time=elapsed_ms(start),
            columns=None,
        )

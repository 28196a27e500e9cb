"""
The query history store. Every query run from a console, successful or
not, is recorded here, most recent first, and the whole list is written to
a JSON file after every change.

One QueryHistory is created at startup and passed to whatever needs it.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import random
import string
import threading
from typing import Any, Self

logger = logging.getLogger(__name__)

MAX_ENTRIES = 1000
ID_ALPHABET = string.digits + string.ascii_lowercase
ID_SUFFIX_LENGTH = 9


def make_entry_id(now: datetime) -> str:
    """
    A unique entry id: the millisecond timestamp, followed by random base-36
    characters so that ids created in the same millisecond still differ.
    """
    millis = int(now.timestamp() * 1000)
    suffix = "".join(random.choices(ID_ALPHABET, k=ID_SUFFIX_LENGTH))
    return f"{millis}{suffix}"


def format_timestamp(dt: datetime) -> str:
    """
    Format an aware datetime as ISO-8601 UTC with milliseconds, e.g.
    "2024-05-01T12:00:00.000Z".
    """
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def parse_timestamp(s: str) -> datetime:
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class HistoryEntry:
    """
    One recorded query.
    """

    id: str
    query: str
    connection_id: str
    connection_name: str
    executed_at: datetime
    success: bool
    execution_time: int | None = None
    error: str | None = None

    def to_json(self: Self) -> dict[str, Any]:
        """
        The entry as stored in the history file. Optional fields that are
        None are left out.
        """
        data: dict[str, Any] = {
            "id": self.id,
            "query": self.query,
            "connectionId": self.connection_id,
            "connectionName": self.connection_name,
            "executedAt": format_timestamp(self.executed_at),
        }
        if self.execution_time is not None:
            data["executionTime"] = self.execution_time
        data["success"] = self.success
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "HistoryEntry":
        """
        Build an entry from its stored form.

        :raises: KeyError, TypeError or ValueError if the data is malformed
        """
        execution_time = data.get("executionTime")
        return cls(
            id=str(data["id"]),
            query=str(data["query"]),
            connection_id=str(data["connectionId"]),
            connection_name=str(data["connectionName"]),
            executed_at=parse_timestamp(data["executedAt"]),
            success=bool(data["success"]),
            execution_time=(
                None if execution_time is None else int(execution_time)
            ),
            error=data.get("error"),
        )


@dataclass(frozen=True)
class HistoryStats:
    """
    Summary counts over a set of history entries.
    """

    total_queries: int = 0
    successful_queries: int = 0
    failed_queries: int = 0
    average_execution_time: int = 0


class QueryHistory:
    """
    The history store. Reads return lists; the store itself only changes
    through add_query() and clear_history(), which are serialized and
    persisted before they return.
    """

    def __init__(self: Self, path: Path, max_entries: int = MAX_ENTRIES) -> None:
        """
        Create the store, loading the history file if there is one.

        :param path: the history file, which does not have to exist
        :param max_entries: the most entries to keep; older ones are dropped
        """
        self.path = path
        self.max_entries = max_entries
        self._lock = threading.Lock()
        self._entries: list[HistoryEntry] = self._load()

    def __len__(self: Self) -> int:
        return len(self._entries)

    def _load(self: Self) -> list[HistoryEntry]:
        if not self.path.exists():
            return []

        try:
            with open(self.path, mode="r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, list):
                raise ValueError("expected a JSON array")
            return [HistoryEntry.from_json(d) for d in data][: self.max_entries]
        except (OSError, KeyError, TypeError, ValueError) as e:
            logger.warning('Failed to load query history from "%s": %s', self.path, e)
            return []

    def _save(self: Self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, mode="w", encoding="utf-8") as f:
                json.dump([e.to_json() for e in self._entries], f, indent=2)
        except OSError as e:
            logger.warning('Failed to save query history to "%s": %s', self.path, e)

    def _for_connection(self: Self, connection_id: str | None) -> list[HistoryEntry]:
        entries = self._entries
        if connection_id is None:
            return list(entries)
        return [e for e in entries if e.connection_id == connection_id]

    def add_query(
        self: Self,
        query: str,
        connection_id: str,
        connection_name: str,
        success: bool,
        execution_time: int | None = None,
        error: str | None = None,
    ) -> HistoryEntry:
        """
        Record a query and persist the history. A failure to write the file
        is logged, not raised.

        :param query: the query text; stored trimmed
        :param connection_id: the id of the profile it ran against
        :param connection_name: the profile's display name at the time
        :param success: whether the query succeeded
        :param execution_time: elapsed milliseconds, if measured
        :param error: the error message, for failed queries
        """
        # Stored timestamps carry milliseconds only.
        now = datetime.now(timezone.utc)
        now = now.replace(microsecond=now.microsecond // 1000 * 1000)
        entry = HistoryEntry(
            id=make_entry_id(now),
            query=query.strip(),
            connection_id=connection_id,
            connection_name=connection_name,
            executed_at=now,
            success=success,
            execution_time=execution_time,
            error=error,
        )

        with self._lock:
            self._entries = [entry] + self._entries[: self.max_entries - 1]
            self._save()

        return entry

    def get_history(
        self: Self, connection_id: str | None = None, limit: int = 50
    ) -> list[HistoryEntry]:
        """
        The most recent entries, newest first, optionally for one
        connection.
        """
        return self._for_connection(connection_id)[:limit]

    def get_recent_queries(
        self: Self, connection_id: str | None = None, limit: int = 10
    ) -> list[str]:
        """
        The distinct texts of the successful queries among the `limit` most
        recent entries, in order of first appearance.
        """
        seen: dict[str, None] = {}
        for entry in self.get_history(connection_id, limit):
            if entry.success and entry.query:
                seen.setdefault(entry.query)

        return list(seen)

    def search_history(
        self: Self, term: str, connection_id: str | None = None, limit: int = 20
    ) -> list[HistoryEntry]:
        """
        Entries whose query contains `term`, ignoring case.
        """
        term = term.lower()
        return [
            e for e in self._for_connection(connection_id) if term in e.query.lower()
        ][:limit]

    def clear_history(self: Self, connection_id: str | None = None) -> None:
        """
        Remove the entries for one connection, or every entry if no
        connection is given, and persist the result.
        """
        with self._lock:
            if connection_id is None:
                self._entries = []
            else:
                self._entries = [
                    e for e in self._entries if e.connection_id != connection_id
                ]
            self._save()

    def get_stats(self: Self, connection_id: str | None = None) -> HistoryStats:
        """
        Counts and the average execution time (over the entries that have
        one) for one connection or for the whole history.
        """
        entries = self._for_connection(connection_id)
        total = len(entries)
        successful = sum(1 for e in entries if e.success)
        times = [e.execution_time for e in entries if e.execution_time is not None]
        average = 0
        if len(times) > 0:
            # Round half up, rather than Python's round-half-to-even.
            average = int(sum(times) / len(times) + 0.5)

        return HistoryStats(
            total_queries=total,
            successful_queries=successful,
            failed_queries=total - successful,
            average_execution_time=average,
        )

"""Activity sources feeding the fact ledger.

This module isolates all access to the external activity logs behind a
single ``ActivityReader.fetch_facts(since)`` call, so the import logic can
be tested against ``StaticReader`` and the real sources can be swapped.

Every reader reports failure through one of four exception classes, which
the host maps to different guidance for the user:

- SourceNotFound: the activity source does not exist (or cannot be reached)
- PermissionDenied: it exists but access control stops us from reading it
- SourceUnreadable: it was opened but could not be read or parsed
- QueryFailed: anything else, carrying the underlying error
"""

import logging
import os
import sqlite3
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import requests
from aw_client import ActivityWatchClient

from .models import IDLE_APP_NAME, Fact, FactSource
from .utils import get_event_range, normalize_timestamp

logger = logging.getLogger(__name__)

# knowledgeC stores Mac absolute time: seconds since 2001-01-01 UTC
MAC_ABSOLUTE_EPOCH_OFFSET = 978307200

KNOWLEDGEC_RELATIVE_PATH = "Library/Application Support/Knowledge/knowledgeC.db"

KNOWLEDGEC_QUERY = """
SELECT CAST(ZVALUESTRING AS TEXT), CAST(ZSTARTDATE AS REAL), CAST(ZENDDATE AS REAL)
FROM ZOBJECT
WHERE ZSTREAMNAME = '/app/usage'
""".strip()

PERMISSION_HINTS = (
    "authorization",
    "permission",
    "not authorized",
    "operation not permitted",
)


class SourceError(Exception):
    """Base class for failures reading an activity source."""

    guidance = "Failed to load activity data."


class SourceNotFound(SourceError):
    guidance = (
        "Activity database not found yet. Grant Full Disk Access, relaunch, then refresh."
    )

    def __init__(self, searched_paths: list[str] | None = None, message: str | None = None):
        self.searched_paths = searched_paths or []
        super().__init__(message or f"Activity source not found (searched: {self.searched_paths})")


class PermissionDenied(SourceError):
    guidance = (
        "Full Disk Access is required for activity data. Enable it in "
        "Settings > Privacy & Security > Full Disk Access, relaunch, then refresh."
    )

    def __init__(self, path: str | None = None):
        self.path = path
        super().__init__(f"Permission denied reading activity source {path}")


class SourceUnreadable(SourceError):
    guidance = "Could not open the activity database. Confirm access and relaunch."

    def __init__(self, path: str | None, underlying: BaseException | None = None):
        self.path = path
        self.underlying = underlying
        super().__init__(f"Activity source {path} is unreadable: {underlying}")


class QueryFailed(SourceError):
    guidance = "Failed to parse activity data. Try again later."

    def __init__(self, underlying: BaseException | str):
        self.underlying = underlying
        super().__init__(f"Activity query failed: {underlying}")


def mac_absolute_to_datetime(value: float) -> datetime:
    """Convert Mac absolute time to an aware UTC datetime."""
    return datetime.fromtimestamp(value + MAC_ABSOLUTE_EPOCH_OFFSET, tz=UTC)


def datetime_to_mac_absolute(ts: datetime) -> float:
    return ts.timestamp() - MAC_ABSOLUTE_EPOCH_OFFSET


def _looks_like_permission_problem(error: BaseException) -> bool:
    text = str(error).lower()
    return any(hint in text for hint in PERMISSION_HINTS)


class ActivityReader(ABC):
    """Abstract source of activity facts."""

    @abstractmethod
    def fetch_facts(self, since: datetime | None = None) -> list[Fact]:
        """Return facts starting after ``since`` (everything if None), oldest first.

        Raises:
            SourceError: one of its four subclasses
        """
        pass


class KnowledgeCReader(ActivityReader):
    """Reads app usage from the macOS knowledgeC database (read-only sqlite)."""

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path).expanduser() if path else None

    def candidate_paths(self) -> list[Path]:
        if self.path:
            return [self.path]
        candidates = [
            Path.home() / KNOWLEDGEC_RELATIVE_PATH,
            Path(os.path.expanduser("~")) / KNOWLEDGEC_RELATIVE_PATH,
        ]
        unique = []
        for candidate in candidates:
            if candidate not in unique:
                unique.append(candidate)
        return unique

    def resolve(self) -> Path:
        """Find the database file.

        Raises:
            SourceNotFound: if none of the candidate paths exist
        """
        searched = self.candidate_paths()
        for path in searched:
            if path.exists():
                return path
        raise SourceNotFound(searched_paths=[str(p) for p in searched])

    def fetch_facts(self, since: datetime | None = None) -> list[Fact]:
        path = self.resolve()
        if not os.access(path, os.R_OK):
            raise PermissionDenied(path=str(path))

        try:
            conn = sqlite3.connect(f"file:{path}?mode=ro", uri=True)
        except sqlite3.Error as e:
            if _looks_like_permission_problem(e):
                raise PermissionDenied(path=str(path)) from e
            raise SourceUnreadable(str(path), e) from e

        query = KNOWLEDGEC_QUERY
        params: tuple = ()
        if since is not None:
            query += " AND ZSTARTDATE > ?"
            params = (datetime_to_mac_absolute(normalize_timestamp(since)),)
        query += " ORDER BY ZSTARTDATE ASC"

        try:
            rows = conn.execute(query, params).fetchall()
        except sqlite3.DatabaseError as e:
            if _looks_like_permission_problem(e):
                raise PermissionDenied(path=str(path)) from e
            text = str(e).lower()
            if "not a database" in text or "unable to open" in text or "malformed" in text:
                raise SourceUnreadable(str(path), e) from e
            raise QueryFailed(e) from e
        finally:
            conn.close()

        return self._rows_to_facts(rows)

    def _rows_to_facts(self, rows: list[tuple]) -> list[Fact]:
        imported_at = datetime.now(UTC)
        facts = []
        for app_name, start_val, end_val in rows:
            if not app_name or start_val is None or end_val is None:
                continue
            duration = max(0.0, end_val - start_val)
            if duration <= 0:
                continue
            facts.append(
                Fact.create(
                    app_name,
                    mac_absolute_to_datetime(start_val),
                    duration=duration,
                    imported_at=imported_at,
                )
            )

        if rows and not facts:
            logger.warning(
                f"knowledgeC: scanned {len(rows)} rows but produced 0 facts. "
                "Check timestamp decoding/schema types."
            )
        return facts


class ActivityWatchReader(ActivityReader):
    """Reads window and AFK events from a running ActivityWatch server."""

    def __init__(
        self,
        client: Any | None = None,
        client_name: str = "activity-ledger",
    ) -> None:
        self.client_name = client_name
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = ActivityWatchClient(client_name=self.client_name)
        return self._client

    def _bucket_for(self, buckets: dict, client_type: str) -> str | None:
        for bucket_id, bucket in buckets.items():
            if bucket.get("client") == client_type:
                return bucket_id
        return None

    def fetch_facts(self, since: datetime | None = None) -> list[Fact]:
        try:
            buckets = self.client.get_buckets()
            window_id = self._bucket_for(buckets, "aw-watcher-window")
            if window_id is None:
                raise SourceNotFound(
                    message="No aw-watcher-window bucket on the ActivityWatch server"
                )
            window_events = self.client.get_events(window_id, start=since)
            afk_id = self._bucket_for(buckets, "aw-watcher-afk")
            afk_events = self.client.get_events(afk_id, start=since) if afk_id else []
        except requests.exceptions.ConnectionError as e:
            raise SourceNotFound(message=f"ActivityWatch server not reachable: {e}") from e
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status in (401, 403):
                raise PermissionDenied(path=self.client_name) from e
            raise QueryFailed(e) from e
        except requests.exceptions.RequestException as e:
            raise QueryFailed(e) from e

        facts = []
        for event in window_events:
            fact = self._convert(self._window_event_to_fact, event)
            if fact is not None:
                facts.append(fact)
        for event in afk_events:
            fact = self._convert(self._afk_event_to_fact, event)
            if fact is not None:
                facts.append(fact)

        if since is not None:
            since = normalize_timestamp(since)
            facts = [f for f in facts if f.timestamp > since]
        facts.sort(key=lambda f: f.timestamp)
        return facts

    def _window_event_to_fact(self, event: Mapping) -> Fact:
        start, end = get_event_range(event)
        return Fact.create(
            event["data"].get("app", ""),
            start,
            end=end,
            window_title=event["data"].get("title"),
        )

    def _afk_event_to_fact(self, event: Mapping) -> Fact | None:
        if event["data"].get("status") != "afk":
            return None
        start, end = get_event_range(event)
        return Fact.create(IDLE_APP_NAME, start, end=end, source=FactSource.IDLE)

    def _convert(self, converter: Callable[[Mapping], Fact | None], event: Any) -> Fact | None:
        """Run a converter, skipping malformed events."""
        try:
            return converter(event)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.debug(f"Skipping malformed ActivityWatch event {event!r}: {e}")
            return None


class StaticReader(ActivityReader):
    """In-memory reader (test double, and for hosts that push facts themselves).

    Args:
        facts: Facts to serve
        error: If set, every fetch raises this instead
    """

    def __init__(self, facts: Iterable[Fact] = (), error: SourceError | None = None) -> None:
        self.facts = list(facts)
        self.error = error
        self.calls: list[datetime | None] = []

    def fetch_facts(self, since: datetime | None = None) -> list[Fact]:
        self.calls.append(since)
        if self.error is not None:
            raise self.error
        if since is None:
            return list(self.facts)
        return [f for f in self.facts if f.timestamp > since]


def calendar_facts(events: Iterable[Mapping[str, Any]]) -> list[Fact]:
    """Turn calendar events into CALENDAR facts.

    Args:
        events: Mappings with 'start', 'end' and an optional 'title'

    Returns:
        Facts named "Meeting: <title>" (or "Meeting" without a title)
    """
    facts = []
    for event in events:
        start = normalize_timestamp(event["start"])
        end = normalize_timestamp(event["end"])
        if end - start <= timedelta(0):
            continue
        title = (event.get("title") or "").strip()
        name = f"Meeting: {title}" if title else "Meeting"
        facts.append(Fact.create(name, start, end=end, source=FactSource.CALENDAR))
    return facts


def create_reader(cfg: dict) -> ActivityReader:
    """Build the reader selected by the ``reader`` config key."""
    kind = cfg.get("reader", "knowledgec")
    if kind == "activitywatch":
        return ActivityWatchReader(
            client_name=cfg.get("activitywatch", {}).get("client_name", "activity-ledger")
        )
    if kind == "knowledgec":
        return KnowledgeCReader(path=cfg.get("knowledgec", {}).get("path") or None)
    raise ValueError(f"Unknown reader: {kind}")

"""Data model for the activity ledger.

Facts are the immutable, imported observations. Sessions are derived from
facts and are what the user edits. Rules classify sessions and leave a
RuleMatch behind as an audit trail. The remaining records are the
user-maintained catalogue that is persisted alongside them.

Every record converts to and from a plain dict for the snapshot document.
``from_dict`` ignores unknown keys and defaults missing optional ones, so
older and newer snapshots can be read.
"""

import hashlib
import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from .utils import dt_from_json, dt_to_json, normalize_duration, normalize_timestamp

IDLE_APP_NAME = "Idle"

EMAIL_RE = re.compile(r"[A-Z0-9a-z._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,64}")


def new_id() -> str:
    return str(uuid.uuid4())


class FactSource(Enum):
    """Where a fact came from."""

    APP_USAGE = "appUsage"
    CALENDAR = "calendar"
    IDLE = "idle"


class ClassificationState(Enum):
    """How a session got its category.

    MANUAL is only ever entered through an explicit user edit and is never
    left automatically.
    """

    UNCLASSIFIED = "unclassified"
    RULE = "rule"
    MANUAL = "manual"


def fact_hash(start: datetime, end: datetime, source_identity: str, source: FactSource) -> str:
    """Content-stable deduplication hash for a fact.

    Built from whole-second start/end, the source identity and the source
    kind, so rescanning the same log from another starting point yields the
    same digest in every process.
    """
    key = f"{int(start.timestamp())}|{int(end.timestamp())}|{source_identity}|{source.value}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Fact:
    """One immutable, timestamped observation of activity."""

    id: str
    timestamp: datetime
    duration: timedelta
    app_name: str
    bundle_id: str | None = None
    window_title: str | None = None
    source: FactSource = FactSource.APP_USAGE
    dedup_hash: str = ""
    imported_at: datetime | None = None

    def __post_init__(self) -> None:
        if not self.dedup_hash:
            object.__setattr__(
                self,
                "dedup_hash",
                fact_hash(self.timestamp, self.end, self.source_identity, self.source),
            )

    @classmethod
    def create(
        cls,
        app_name: str,
        start: datetime,
        end: datetime | None = None,
        duration: timedelta | float | None = None,
        bundle_id: str | None = None,
        window_title: str | None = None,
        source: FactSource = FactSource.APP_USAGE,
        imported_at: datetime | None = None,
    ) -> "Fact":
        """Build a fact from either an end time or a duration."""
        start = normalize_timestamp(start)
        if duration is None:
            if end is None:
                raise ValueError("Either end or duration is required")
            duration = normalize_timestamp(end) - start
        return cls(
            id=new_id(),
            timestamp=start,
            duration=normalize_duration(duration),
            app_name=app_name,
            bundle_id=bundle_id,
            window_title=window_title,
            source=source,
            imported_at=imported_at or datetime.now(UTC),
        )

    @property
    def end(self) -> datetime:
        return self.timestamp + self.duration

    @property
    def is_idle(self) -> bool:
        return self.source == FactSource.IDLE

    @property
    def source_identity(self) -> str:
        return self.bundle_id or self.app_name

    def is_valid(self) -> bool:
        """A fact needs a display name and a positive duration to be usable."""
        return bool(self.app_name and self.app_name.strip()) and self.duration > timedelta(0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": dt_to_json(self.timestamp),
            "duration": self.duration.total_seconds(),
            "app_name": self.app_name,
            "bundle_id": self.bundle_id,
            "window_title": self.window_title,
            "source": self.source.value,
            "dedup_hash": self.dedup_hash,
            "imported_at": dt_to_json(self.imported_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Fact":
        return cls(
            id=data.get("id") or new_id(),
            timestamp=normalize_timestamp(data["timestamp"]),
            duration=normalize_duration(data.get("duration", 0)),
            app_name=data.get("app_name", ""),
            bundle_id=data.get("bundle_id"),
            window_title=data.get("window_title"),
            source=FactSource(data.get("source", FactSource.APP_USAGE.value)),
            dedup_hash=data.get("dedup_hash", ""),
            imported_at=dt_from_json(data.get("imported_at")),
        )


def idle_fact(start: datetime, end: datetime) -> Fact:
    """Fact for a period without user input."""
    return Fact.create(IDLE_APP_NAME, start, end=end, source=FactSource.IDLE)


@dataclass
class Session:
    """A contiguous run of facts of one app, editable by the user."""

    id: str
    start: datetime
    end: datetime
    source_app: str
    fact_ids: list[str] = field(default_factory=list)
    project_id: str | None = None
    category_id: str | None = None
    tag_ids: set[str] = field(default_factory=set)
    note: str | None = None
    is_private: bool = False
    is_idle: bool = False
    bundle_id: str | None = None
    window_title: str | None = None
    classification: ClassificationState = ClassificationState.UNCLASSIFIED

    @classmethod
    def from_fact(cls, fact: Fact) -> "Session":
        return cls(
            id=new_id(),
            start=fact.timestamp,
            end=fact.end,
            source_app=fact.app_name,
            fact_ids=[fact.id],
            is_idle=fact.is_idle,
            bundle_id=fact.bundle_id,
            window_title=fact.window_title,
        )

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def absorb(self, fact: Fact) -> None:
        """Extend this session with a contiguous fact.

        The span grows to cover the fact on either side, so an earlier
        overlapping fact moves the start back.
        """
        self.start = min(self.start, fact.timestamp)
        self.end = max(self.end, fact.end)
        self.fact_ids.append(fact.id)
        if fact.window_title:
            self.window_title = fact.window_title

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "start": dt_to_json(self.start),
            "end": dt_to_json(self.end),
            "source_app": self.source_app,
            "fact_ids": list(self.fact_ids),
            "project_id": self.project_id,
            "category_id": self.category_id,
            "tag_ids": sorted(self.tag_ids),
            "note": self.note,
            "is_private": self.is_private,
            "is_idle": self.is_idle,
            "bundle_id": self.bundle_id,
            "window_title": self.window_title,
            "classification": self.classification.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        return cls(
            id=data.get("id") or new_id(),
            start=normalize_timestamp(data["start"]),
            end=normalize_timestamp(data["end"]),
            source_app=data.get("source_app", ""),
            fact_ids=list(data.get("fact_ids", [])),
            project_id=data.get("project_id"),
            category_id=data.get("category_id"),
            tag_ids=set(data.get("tag_ids", [])),
            note=data.get("note"),
            is_private=data.get("is_private", False),
            is_idle=data.get("is_idle", False),
            bundle_id=data.get("bundle_id"),
            window_title=data.get("window_title"),
            classification=ClassificationState(
                data.get("classification", ClassificationState.UNCLASSIFIED.value)
            ),
        )


@dataclass
class Rule:
    """Priority-ordered condition/action pair used to classify sessions."""

    id: str
    name: str
    priority: int = 10
    enabled: bool = True
    app_name_pattern: str | None = None
    bundle_id_pattern: str | None = None
    window_title_pattern: str | None = None
    min_duration: timedelta | None = None
    target_category_id: str | None = None
    target_project_id: str | None = None
    target_tag_ids: set[str] = field(default_factory=set)
    mark_private: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "priority": self.priority,
            "enabled": self.enabled,
            "app_name_pattern": self.app_name_pattern,
            "bundle_id_pattern": self.bundle_id_pattern,
            "window_title_pattern": self.window_title_pattern,
            "min_duration": self.min_duration.total_seconds()
            if self.min_duration is not None
            else None,
            "target_category_id": self.target_category_id,
            "target_project_id": self.target_project_id,
            "target_tag_ids": sorted(self.target_tag_ids),
            "mark_private": self.mark_private,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Rule":
        min_duration = data.get("min_duration")
        return cls(
            id=data.get("id") or new_id(),
            name=data.get("name", ""),
            priority=int(data.get("priority", 10)),
            enabled=data.get("enabled", True),
            app_name_pattern=data.get("app_name_pattern"),
            bundle_id_pattern=data.get("bundle_id_pattern"),
            window_title_pattern=data.get("window_title_pattern"),
            min_duration=normalize_duration(min_duration) if min_duration is not None else None,
            target_category_id=data.get("target_category_id"),
            target_project_id=data.get("target_project_id"),
            target_tag_ids=set(data.get("target_tag_ids", [])),
            mark_private=data.get("mark_private", False),
        )


@dataclass
class RuleMatch:
    """Audit record: which rule fired for which session, and what it changed."""

    id: str
    rule_id: str | None
    session_id: str
    timestamp: datetime
    applied_changes: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "session_id": self.session_id,
            "timestamp": dt_to_json(self.timestamp),
            "applied_changes": self.applied_changes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RuleMatch":
        return cls(
            id=data.get("id") or new_id(),
            rule_id=data.get("rule_id"),
            session_id=data.get("session_id", ""),
            timestamp=normalize_timestamp(data["timestamp"]),
            applied_changes=data.get("applied_changes", ""),
        )


@dataclass
class Category:
    id: str
    name: str
    color_hex: str = "#4A90D9"

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "color_hex": self.color_hex}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Category":
        return cls(
            id=data.get("id") or new_id(),
            name=data.get("name", ""),
            color_hex=data.get("color_hex", "#4A90D9"),
        )


@dataclass
class Project:
    id: str
    name: str
    color_hex: str = "#7B8794"

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "color_hex": self.color_hex}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Project":
        return cls(
            id=data.get("id") or new_id(),
            name=data.get("name", ""),
            color_hex=data.get("color_hex", "#7B8794"),
        )


@dataclass
class Tag:
    id: str
    name: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Tag":
        return cls(id=data.get("id") or new_id(), name=data.get("name", ""))


@dataclass
class ExclusionRule:
    """Apps whose name contains ``pattern`` (case-insensitive) are hidden from views."""

    id: str
    pattern: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "pattern": self.pattern}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExclusionRule":
        return cls(id=data.get("id") or new_id(), pattern=data.get("pattern", ""))


@dataclass
class FocusSession:
    id: str
    start: datetime
    end: datetime
    category_id: str

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return start < self.end and end > self.start

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "start": dt_to_json(self.start),
            "end": dt_to_json(self.end),
            "category_id": self.category_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FocusSession":
        return cls(
            id=data.get("id") or new_id(),
            start=normalize_timestamp(data["start"]),
            end=normalize_timestamp(data["end"]),
            category_id=data.get("category_id", ""),
        )


@dataclass
class Goal:
    id: str
    category_id: str
    minutes_per_day: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "category_id": self.category_id,
            "minutes_per_day": self.minutes_per_day,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Goal":
        return cls(
            id=data.get("id") or new_id(),
            category_id=data.get("category_id", ""),
            minutes_per_day=int(data.get("minutes_per_day", 0)),
        )


def sanitize(text: str | None) -> str | None:
    """Redact e-mail addresses from free text before it is stored."""
    if text is None:
        return None
    return EMAIL_RE.sub("[REDACTED_EMAIL]", text)


@dataclass
class ContextEvent:
    """Foreground window context captured by the host (accessibility reader)."""

    id: str
    timestamp: datetime
    bundle_id: str
    app_name: str
    window_title: str | None = None
    document_path: str | None = None

    def sanitized(self) -> "ContextEvent":
        return ContextEvent(
            id=self.id,
            timestamp=self.timestamp,
            bundle_id=self.bundle_id,
            app_name=self.app_name,
            window_title=sanitize(self.window_title),
            document_path=sanitize(self.document_path),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": dt_to_json(self.timestamp),
            "bundle_id": self.bundle_id,
            "app_name": self.app_name,
            "window_title": self.window_title,
            "document_path": self.document_path,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ContextEvent":
        return cls(
            id=data.get("id") or new_id(),
            timestamp=normalize_timestamp(data["timestamp"]),
            bundle_id=data.get("bundle_id", ""),
            app_name=data.get("app_name", ""),
            window_title=data.get("window_title"),
            document_path=data.get("document_path"),
        )


@dataclass
class UserPreferences:
    """Process-wide preferences, including the import watermark."""

    last_import_timestamp: datetime | None = None
    private_mode_enabled: bool = False
    calendar_integration_enabled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_import_timestamp": dt_to_json(self.last_import_timestamp),
            "private_mode_enabled": self.private_mode_enabled,
            "calendar_integration_enabled": self.calendar_integration_enabled,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "UserPreferences":
        data = data or {}
        return cls(
            last_import_timestamp=dt_from_json(data.get("last_import_timestamp")),
            private_mode_enabled=data.get("private_mode_enabled", False),
            calendar_integration_enabled=data.get("calendar_integration_enabled", False),
        )

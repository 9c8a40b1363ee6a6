"""In-memory state of the activity ledger.

``LedgerState`` holds everything that is persisted in the snapshot: the
fact ledger, the derived sessions, rules and their audit trail, the user's
catalogue and the preferences (including the import watermark).

Only the owning ``ActivityLedger`` mutates it.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .models import (
    Category,
    ContextEvent,
    ExclusionRule,
    Fact,
    FocusSession,
    Goal,
    Project,
    Rule,
    RuleMatch,
    Session,
    Tag,
    UserPreferences,
)
from .sessions import SessionSet
from .utils import normalize_timestamp


@dataclass
class LedgerState:
    """Everything the snapshot document contains."""

    categories: list[Category] = field(default_factory=list)
    rules: list[Rule] = field(default_factory=list)
    # Manual category overrides keyed by event key or by app name
    assignments: dict[str, str] = field(default_factory=dict)
    exclusions: list[ExclusionRule] = field(default_factory=list)
    focus_sessions: list[FocusSession] = field(default_factory=list)
    goals: list[Goal] = field(default_factory=list)
    preferences: UserPreferences = field(default_factory=UserPreferences)

    # Append-only
    facts: list[Fact] = field(default_factory=list)

    sessions: SessionSet = field(default_factory=SessionSet)
    projects: list[Project] = field(default_factory=list)
    tags: list[Tag] = field(default_factory=list)
    rule_matches: list[RuleMatch] = field(default_factory=list)
    context_events: list[ContextEvent] = field(default_factory=list)

    @property
    def watermark(self) -> datetime | None:
        return self.preferences.last_import_timestamp

    def advance_watermark(self, ts: datetime) -> bool:
        """Move the watermark forward to ``ts``.

        Returns:
            True if the watermark moved, False if ``ts`` was not later
        """
        ts = normalize_timestamp(ts)
        current = self.preferences.last_import_timestamp
        if current is not None and ts <= current:
            return False
        self.preferences.last_import_timestamp = ts
        return True

    def fact_hashes(self) -> set[str]:
        return {f.dedup_hash for f in self.facts}

    def facts_by_id(self) -> dict[str, Fact]:
        return {f.id: f for f in self.facts}

    def get_summary(self) -> dict:
        """Get a summary of current state for debugging."""
        return {
            "facts": len(self.facts),
            "sessions": len(self.sessions),
            "rules": len(self.rules),
            "rule_matches": len(self.rule_matches),
            "watermark": self.watermark.isoformat() if self.watermark else None,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "categories": [c.to_dict() for c in self.categories],
            "rules": [r.to_dict() for r in self.rules],
            "assignments": dict(self.assignments),
            "exclusions": [e.to_dict() for e in self.exclusions],
            "focus_sessions": [f.to_dict() for f in self.focus_sessions],
            "goals": [g.to_dict() for g in self.goals],
            "preferences": self.preferences.to_dict(),
            "facts": [f.to_dict() for f in self.facts],
            "sessions": [s.to_dict() for s in self.sessions],
            "projects": [p.to_dict() for p in self.projects],
            "tags": [t.to_dict() for t in self.tags],
            "rule_matches": [m.to_dict() for m in self.rule_matches],
            "context_events": [c.to_dict() for c in self.context_events],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LedgerState":
        """Rebuild state from a snapshot. Absent collections load as empty."""
        return cls(
            categories=[Category.from_dict(c) for c in data.get("categories", [])],
            rules=[Rule.from_dict(r) for r in data.get("rules", [])],
            assignments=dict(data.get("assignments", {})),
            exclusions=[ExclusionRule.from_dict(e) for e in data.get("exclusions", [])],
            focus_sessions=[FocusSession.from_dict(f) for f in data.get("focus_sessions", [])],
            goals=[Goal.from_dict(g) for g in data.get("goals", [])],
            preferences=UserPreferences.from_dict(data.get("preferences")),
            facts=[Fact.from_dict(f) for f in data.get("facts", [])],
            sessions=SessionSet(Session.from_dict(s) for s in data.get("sessions", [])),
            projects=[Project.from_dict(p) for p in data.get("projects", [])],
            tags=[Tag.from_dict(t) for t in data.get("tags", [])],
            rule_matches=[RuleMatch.from_dict(m) for m in data.get("rule_matches", [])],
            context_events=[ContextEvent.from_dict(c) for c in data.get("context_events", [])],
        )

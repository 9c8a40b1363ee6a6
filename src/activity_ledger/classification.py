"""Session classification.

The ledger depends only on ``ClassificationBackend``. Three backends exist:

- RuleEngine: the built-in, priority-ordered rule evaluator
- SuggestionServiceBackend: delegates to an external category suggester
- DisabledBackend: never classifies anything

Automated classification never overwrites a value set by the user: a
session that already has a category, or that the user classified by hand,
is left alone.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from .models import ClassificationState, Rule, RuleMatch, Session, new_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Availability:
    available: bool
    reason: str = ""


def needs_classification(session: Session) -> bool:
    """True unless the session already has a category or was classified by hand."""
    return (
        session.category_id is None
        and session.classification != ClassificationState.MANUAL
    )


class ClassificationBackend(ABC):
    """Common surface of all classification backends."""

    @property
    @abstractmethod
    def availability(self) -> Availability:
        pass

    @abstractmethod
    def classify(self, session: Session, rules: list[Rule]) -> RuleMatch | None:
        """Classify one session in place.

        Returns:
            The audit record for the change, or None if nothing applied
        """
        pass

    def classify_all(self, sessions: Iterable[Session], rules: list[Rule]) -> list[RuleMatch]:
        """Classify every session that still needs it."""
        matches = []
        for session in sessions:
            if not needs_classification(session):
                continue
            match = self.classify(session, rules)
            if match is not None:
                matches.append(match)
        return matches


def _contains(pattern: str | None, value: str | None) -> bool:
    """Case-insensitive substring test; an unset pattern always matches."""
    if not pattern:
        return True
    if not value:
        return False
    return pattern.casefold() in value.casefold()


class RuleEngine(ClassificationBackend):
    """Evaluates user rules against sessions.

    Responsible for:
    - Picking the highest priority enabled rule whose conditions hold
    - Writing the rule's targets into empty session fields
    - Describing what a rule changes, for the audit trail
    """

    @property
    def availability(self) -> Availability:
        return Availability(True)

    def evaluate(self, session: Session, rules: list[Rule]) -> RuleMatch | None:
        """Find the first matching rule by descending priority.

        Rules with equal priority keep their original order. A rule without
        any condition matches every session.

        Args:
            session: The session to test
            rules: All rules (disabled ones are ignored)

        Returns:
            RuleMatch for the winning rule, or None if no rule matches
        """
        ordered = sorted((r for r in rules if r.enabled), key=lambda r: -r.priority)
        for rule in ordered:
            if self.matches(rule, session):
                return RuleMatch(
                    id=new_id(),
                    rule_id=rule.id,
                    session_id=session.id,
                    timestamp=datetime.now(UTC),
                    applied_changes=self.describe_changes(rule),
                )
        return None

    def apply(self, match: RuleMatch, session: Session, rules: list[Rule]) -> None:
        """Write the matched rule's targets into the session.

        Category and project are only set when empty, tags are unioned and
        the private flag can only be switched on. Running it twice changes
        nothing.
        """
        rule = next((r for r in rules if r.id == match.rule_id), None)
        if rule is None:
            logger.debug(f"Rule {match.rule_id} vanished before it could be applied")
            return

        if session.category_id is None and rule.target_category_id is not None:
            session.category_id = rule.target_category_id
            if session.classification != ClassificationState.MANUAL:
                session.classification = ClassificationState.RULE

        if session.project_id is None:
            session.project_id = rule.target_project_id

        if rule.target_tag_ids:
            session.tag_ids |= rule.target_tag_ids

        if rule.mark_private:
            session.is_private = True

    def classify(self, session: Session, rules: list[Rule]) -> RuleMatch | None:
        match = self.evaluate(session, rules)
        if match is not None:
            self.apply(match, session, rules)
            logger.debug(
                f"Rule {match.rule_id} applied to {session.source_app}: {match.applied_changes}",
                extra={"session_id": session.id},
            )
        return match

    @staticmethod
    def matches(rule: Rule, session: Session) -> bool:
        if not _contains(rule.app_name_pattern, session.source_app):
            return False
        if not _contains(rule.bundle_id_pattern, session.bundle_id):
            return False
        if not _contains(rule.window_title_pattern, session.window_title):
            return False
        if rule.min_duration is not None and session.duration < rule.min_duration:
            return False
        return True

    @staticmethod
    def describe_changes(rule: Rule) -> str:
        changes = []
        if rule.target_category_id is not None:
            changes.append("Category")
        if rule.target_project_id is not None:
            changes.append("Project")
        if rule.target_tag_ids:
            changes.append("Tags")
        if rule.mark_private:
            changes.append("Private")
        return ", ".join(changes)


class SuggestionServiceBackend(ClassificationBackend):
    """Asks an external service for a category name.

    Args:
        suggest: Returns a category name for a session, or None
        resolve_category: Maps a category name to a category id, creating it if needed
        availability_check: Optional probe of the service's availability
    """

    def __init__(
        self,
        suggest: Callable[[Session], str | None],
        resolve_category: Callable[[str], str],
        availability_check: Callable[[], Availability] | None = None,
    ) -> None:
        self.suggest = suggest
        self.resolve_category = resolve_category
        self.availability_check = availability_check

    @property
    def availability(self) -> Availability:
        if self.availability_check is None:
            return Availability(True)
        return self.availability_check()

    def classify(self, session: Session, rules: list[Rule]) -> RuleMatch | None:
        if session.is_idle or not needs_classification(session):
            return None
        if not self.availability.available:
            return None

        try:
            name = self.suggest(session)
        except Exception as e:
            logger.warning(f"Category suggestion failed for {session.source_app}: {e}")
            return None

        name = (name or "").strip()
        if not name:
            return None

        session.category_id = self.resolve_category(name)
        session.classification = ClassificationState.RULE
        return RuleMatch(
            id=new_id(),
            rule_id=None,
            session_id=session.id,
            timestamp=datetime.now(UTC),
            applied_changes=f"Category (suggested: {name})",
        )


class DisabledBackend(ClassificationBackend):
    """No-op backend, for when classification is switched off or unavailable."""

    def __init__(self, reason: str = "Classification is disabled") -> None:
        self.reason = reason

    @property
    def availability(self) -> Availability:
        return Availability(False, self.reason)

    def classify(self, session: Session, rules: list[Rule]) -> RuleMatch | None:
        return None

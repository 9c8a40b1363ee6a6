"""Session derivation.

Turns time-ordered facts into sessions: runs of facts from the same app,
with the same idle state, separated by no more than the merge threshold.
Sessions live in a ``SessionSet`` keyed by their id, so the owner can look
up and edit any of them without scanning a list.
"""

import logging
from collections.abc import Iterable, Iterator
from datetime import datetime, timedelta

from .classification import ClassificationBackend, RuleEngine
from .models import IDLE_APP_NAME, Fact, Rule, RuleMatch, Session, new_id

logger = logging.getLogger(__name__)

DEFAULT_MERGE_THRESHOLD = timedelta(seconds=60)
DEFAULT_IDLE_GAP_THRESHOLD = timedelta(minutes=5)


class SessionSet:
    """Insertion-ordered arena of sessions keyed by session id."""

    def __init__(self, sessions: Iterable[Session] = ()) -> None:
        self._by_id: dict[str, Session] = {}
        for session in sessions:
            self.add(session)

    def add(self, session: Session) -> None:
        self._by_id[session.id] = session

    def get(self, session_id: str) -> Session | None:
        return self._by_id.get(session_id)

    def remove(self, session_id: str) -> Session | None:
        return self._by_id.pop(session_id, None)

    def last(self) -> Session | None:
        """The chronologically latest session (the tail that imports extend).

        That is the one ending last. On ties the most recently added wins,
        so sessions added out of order (calendar facts) never become the tail.
        """
        if not self._by_id:
            return None
        return max(reversed(self._by_id.values()), key=lambda s: s.end)

    def replace(self, session_id: str, replacements: list[Session]) -> None:
        """Swap one session for others, keeping its position in the order."""
        if session_id not in self._by_id:
            raise KeyError(session_id)
        rebuilt: dict[str, Session] = {}
        for key, session in self._by_id.items():
            if key == session_id:
                for replacement in replacements:
                    rebuilt[replacement.id] = replacement
            else:
                rebuilt[key] = session
        self._by_id = rebuilt

    def overlapping(self, start: datetime, end: datetime) -> list[Session]:
        """Sessions intersecting [start, end), sorted by start."""
        found = [s for s in self._by_id.values() if s.start < end and s.end > start]
        found.sort(key=lambda s: s.start)
        return found

    def __getitem__(self, session_id: str) -> Session:
        return self._by_id[session_id]

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._by_id

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._by_id.values()))

    def __len__(self) -> int:
        return len(self._by_id)


class SessionDeriver:
    """Builds and extends sessions from facts.

    Attributes:
        merge_threshold: Largest gap between a session's end and the next
            fact's start that still counts as contiguous
        classifier: Backend used on new and changed sessions
    """

    def __init__(
        self,
        merge_threshold: timedelta = DEFAULT_MERGE_THRESHOLD,
        classifier: ClassificationBackend | None = None,
    ) -> None:
        self.merge_threshold = merge_threshold
        self.classifier = classifier or RuleEngine()

    def can_merge(self, fact: Fact, session: Session) -> bool:
        """A fact continues a session if app and idle state match and the gap is small.

        Overlapping facts (negative gap) always qualify.
        """
        if fact.app_name != session.source_app:
            return False
        if fact.is_idle != session.is_idle:
            return False
        gap = fact.timestamp - session.end
        return gap <= self.merge_threshold

    def derive(self, facts: Iterable[Fact]) -> list[Session]:
        """Derive sessions from scratch.

        Args:
            facts: Facts in any order; they are sorted by timestamp first

        Returns:
            Sessions in chronological order
        """
        sessions: list[Session] = []
        current: Session | None = None

        for fact in sorted(facts, key=lambda f: f.timestamp):
            if not fact.is_valid():
                logger.debug(
                    f"Skipping malformed fact {fact.id}", extra={"fact_ts": fact.timestamp}
                )
                continue
            if current is not None and self.can_merge(fact, current):
                current.absorb(fact)
                continue
            if current is not None:
                sessions.append(current)
            current = Session.from_fact(fact)

        if current is not None:
            sessions.append(current)

        return sessions

    def extend(
        self, sessions: SessionSet, new_facts: Iterable[Fact], rules: list[Rule]
    ) -> list[RuleMatch]:
        """Fold newly imported facts into an existing session set.

        Only the earliest new fact is tested against the current tail
        session. Whatever remains is derived on its own and appended.
        Classification then runs on the tail (if it grew) and on every new
        session.

        Args:
            sessions: Existing sessions, updated in place
            new_facts: Novel facts
            rules: Current rules

        Returns:
            RuleMatches produced by classification
        """
        remaining = sorted((f for f in new_facts if f.is_valid()), key=lambda f: f.timestamp)
        if not remaining:
            return []

        changed: list[Session] = []
        tail = sessions.last()
        if tail is not None and self.can_merge(remaining[0], tail):
            tail.absorb(remaining[0])
            changed.append(tail)
            remaining = remaining[1:]

        for session in self.derive(remaining):
            sessions.add(session)
            changed.append(session)

        logger.debug(
            f"Extended sessions with {len(changed)} new or changed session(s)",
            extra={"appended": len(changed)},
        )
        return self.classifier.classify_all(changed, rules)


def idle_gaps(
    sessions: Iterable[Session], threshold: timedelta = DEFAULT_IDLE_GAP_THRESHOLD
) -> list[Session]:
    """Synthetic idle sessions for gaps between consecutive sessions.

    Only gaps of at least ``threshold`` that start and end on the same local
    day are filled. The returned sessions are for display and are not stored
    anywhere.
    """
    ordered = sorted(sessions, key=lambda s: s.start)
    gaps = []
    for current, following in zip(ordered, ordered[1:], strict=False):
        gap = following.start - current.end
        same_day = current.end.astimezone().date() == following.start.astimezone().date()
        if same_day and gap >= threshold:
            gaps.append(
                Session(
                    id=new_id(),
                    start=current.end,
                    end=following.start,
                    source_app=IDLE_APP_NAME,
                    is_idle=True,
                )
            )
    return gaps

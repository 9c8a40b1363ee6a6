"""Grouping suggestions for uncategorized sessions.

Runs of uncategorized sessions that follow each other closely usually belong
to the same piece of work. They are offered to the user as a group so one
category can be assigned to all of them at once.
"""

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from .models import Session, new_id

DEFAULT_GROUP_GAP = timedelta(minutes=5)
DEFAULT_GROUP_MIN_DURATION = timedelta(minutes=15)


@dataclass
class GroupSuggestion:
    """A cluster of sessions the user may categorize in one go."""

    title: str
    sessions: list[Session]
    id: str = field(default_factory=new_id)
    suggested_category_id: str | None = None

    @property
    def start(self) -> datetime:
        return self.sessions[0].start

    @property
    def end(self) -> datetime:
        return self.sessions[-1].end

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def session_ids(self) -> list[str]:
        return [s.id for s in self.sessions]


def _analyze_cluster(
    cluster: list[Session], min_duration: timedelta
) -> GroupSuggestion | None:
    # A single session is not a group
    if len(cluster) < 2:
        return None
    if cluster[-1].end - cluster[0].start < min_duration:
        return None

    per_app: dict[str, timedelta] = defaultdict(timedelta)
    for session in cluster:
        per_app[session.source_app] += session.duration
    primary = max(per_app.items(), key=lambda item: item[1])[0]

    return GroupSuggestion(
        title=f"Focus: {primary} + {len(cluster) - 1} others",
        sessions=list(cluster),
    )


def suggest_groups(
    sessions: Iterable[Session],
    gap_threshold: timedelta = DEFAULT_GROUP_GAP,
    min_duration: timedelta = DEFAULT_GROUP_MIN_DURATION,
) -> list[GroupSuggestion]:
    """Cluster uncategorized, non-idle sessions separated by small gaps.

    Args:
        sessions: Candidate sessions in any order
        gap_threshold: Largest gap between neighbours within one cluster
        min_duration: Shortest span a cluster must cover to be suggested

    Returns:
        Suggestions in chronological order
    """
    candidates = sorted(
        (s for s in sessions if s.category_id is None and not s.is_idle),
        key=lambda s: s.start,
    )

    suggestions = []
    cluster: list[Session] = []
    for session in candidates:
        if cluster and session.start - cluster[-1].end > gap_threshold:
            group = _analyze_cluster(cluster, min_duration)
            if group is not None:
                suggestions.append(group)
            cluster = []
        cluster.append(session)

    group = _analyze_cluster(cluster, min_duration)
    if group is not None:
        suggestions.append(group)

    return suggestions

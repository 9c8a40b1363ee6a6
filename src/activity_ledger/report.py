"""Report aggregation.

Rolls sessions up into totals per project, category and tag over a time
interval. Sessions are clipped to the interval; idle and private sessions
never count. Also produces week-over-week comparisons and the plain-text
daily recap.
"""

from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta

from .models import Session
from .utils import parse_datetime


def format_duration(duration: timedelta) -> str:
    """Format a timedelta as HH:MM:SS."""
    total_seconds = int(duration.total_seconds())
    sign = "-" if total_seconds < 0 else ""
    total_seconds = abs(total_seconds)
    hours = total_seconds // 3600
    minutes = (total_seconds % 3600) // 60
    seconds = total_seconds % 60
    return f"{sign}{hours:02d}:{minutes:02d}:{seconds:02d}"


def truncate_string(s: str, max_length: int = 50) -> str:
    """Truncate a string to max_length, adding ellipsis if needed."""
    if len(s) <= max_length:
        return s
    return s[: max_length - 3] + "..."


@dataclass(frozen=True)
class Interval:
    """Half-open time span [start, end)."""

    start: datetime
    end: datetime

    @classmethod
    def day(cls, day: date) -> "Interval":
        """The local calendar day."""
        start = datetime.combine(day, time.min).astimezone()
        return cls(start, datetime.combine(day + timedelta(days=1), time.min).astimezone())

    @classmethod
    def week_of(cls, day: date) -> "Interval":
        """The local Monday-to-Sunday week containing ``day``."""
        monday = day - timedelta(days=day.weekday())
        start = datetime.combine(monday, time.min).astimezone()
        return cls(start, datetime.combine(monday + timedelta(days=7), time.min).astimezone())

    @classmethod
    def parse(cls, start: str, end: str) -> "Interval":
        """Build an interval from free-form strings ("yesterday", "2025-01-01 09:00", ...)."""
        interval = cls(parse_datetime(start), parse_datetime(end))
        if interval.end <= interval.start:
            raise ValueError(f"Interval end {end!r} is not after start {start!r}")
        return interval

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def previous(self) -> "Interval":
        """The interval of the same length immediately before this one."""
        return Interval(self.start - self.duration, self.start)

    def clip(self, start: datetime, end: datetime) -> timedelta:
        """Length of the overlap between [start, end) and this interval."""
        overlap = min(end, self.end) - max(start, self.start)
        return overlap if overlap > timedelta(0) else timedelta(0)


@dataclass
class Rollup:
    """Totals for one interval.

    ``by_project`` and ``by_category`` use None as the key for sessions
    without a project or category.
    """

    interval: Interval
    total: timedelta = timedelta(0)
    by_project: dict[str | None, timedelta] = field(
        default_factory=lambda: defaultdict(timedelta)
    )
    by_category: dict[str | None, timedelta] = field(
        default_factory=lambda: defaultdict(timedelta)
    )
    by_tag: dict[str, timedelta] = field(default_factory=lambda: defaultdict(timedelta))
    uncategorized: timedelta = timedelta(0)


@dataclass
class Comparison:
    current: Rollup
    previous: Rollup

    @property
    def delta(self) -> timedelta:
        return self.current.total - self.previous.total


def aggregate(interval: Interval, sessions: Iterable[Session]) -> Rollup:
    """Roll sessions up over ``interval``.

    Each session contributes only the part that lies inside the interval.
    Idle and private sessions are skipped.
    """
    rollup = Rollup(interval)
    for session in sessions:
        if session.is_idle or session.is_private:
            continue
        duration = interval.clip(session.start, session.end)
        if duration <= timedelta(0):
            continue

        rollup.total += duration
        rollup.by_project[session.project_id] += duration
        rollup.by_category[session.category_id] += duration
        if session.category_id is None:
            rollup.uncategorized += duration
        for tag_id in session.tag_ids:
            rollup.by_tag[tag_id] += duration

    return rollup


def compare(current: Rollup, previous: Rollup) -> Comparison:
    return Comparison(current, previous)


def top_categories(rollup: Rollup, limit: int = 3) -> list[tuple[str | None, timedelta]]:
    """Categories with the most time, largest first."""
    ranked = sorted(rollup.by_category.items(), key=lambda item: item[1], reverse=True)
    return ranked[:limit]


def daily_recap(
    sessions: Iterable[Session],
    category_name: Callable[[Session], str],
) -> str:
    """Plain-text summary of a day's sessions.

    Args:
        sessions: The day's sessions, idle ones included
        category_name: Display name of a session's category

    Returns:
        Total time, main focus, top three apps and away time. Idle time
        counts towards the total but not towards focus or apps.
    """
    sessions = list(sessions)
    if not sessions:
        return "No activity recorded today."

    total = sum((s.duration for s in sessions), timedelta(0))

    by_category: dict[str, timedelta] = defaultdict(timedelta)
    by_app: dict[str, timedelta] = defaultdict(timedelta)
    for session in sessions:
        if session.is_idle:
            continue
        by_category[category_name(session)] += session.duration
        by_app[session.source_app] += session.duration

    lines = ["Daily Recap", "-----------", f"Total Time: {format_duration(total)}"]

    if by_category:
        name, duration = max(by_category.items(), key=lambda item: item[1])
        lines.append(f"Main Focus: {name} ({format_duration(duration)})")

    lines.append("")
    lines.append("Top Apps:")
    for app, duration in sorted(by_app.items(), key=lambda item: item[1], reverse=True)[:3]:
        lines.append(f"- {truncate_string(app, 40)}: {format_duration(duration)}")

    idle = [s for s in sessions if s.is_idle]
    away = sum((s.duration for s in idle), timedelta(0))
    if away > timedelta(0):
        lines.append("")
        lines.append(f"Away Time: {format_duration(away)}")
        lines.append(f"({len(idle)} breaks taken)")

    return "\n".join(lines)

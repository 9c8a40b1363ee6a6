import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from typing import Any

from .classification import (
    Availability,
    ClassificationBackend,
    RuleEngine,
    SuggestionServiceBackend,
)
from .config import default_data_file, get_tuning
from .config_validation import validate_and_warn
from .export import export_all_data
from .grouping import GroupSuggestion, suggest_groups
from .importer import ImportCoordinator
from .models import (
    Category,
    ClassificationState,
    ContextEvent,
    ExclusionRule,
    Fact,
    FocusSession,
    Goal,
    Project,
    Rule,
    Session,
    Tag,
    new_id,
)
from .persistence import SaveUrgency, SnapshotWriter, load_snapshot
from .readers import ActivityReader, calendar_facts, create_reader
from .report import Comparison, Interval, Rollup, aggregate, compare, daily_recap
from .sessions import SessionDeriver, idle_gaps
from .state import LedgerState

logger = logging.getLogger(__name__)

UNCATEGORIZED = "Uncategorized"

# Prefix of the ids of rules declared in the config file
CONFIG_RULE_PREFIX = "config:"


def load_config(config_path: str | None) -> dict:
    # Load custom config if provided
    from . import config as config_module

    if config_path:
        config_module.load_custom_config(config_path)
    return config_module.config


def session_key(session: Session) -> str:
    """Key of per-session entries in the assignments map."""
    return f"session|{session.id}"


def _normalized(name: str) -> str:
    return name.strip().casefold()


@dataclass
class ActivityLedger:
    """Single owner of all ledger state.

    Every mutation goes through this class, which schedules a snapshot save
    after it. User edits are saved immediately; imports and context events
    are saved deferred.

    Collaborators are injected; anything not given is built from the config.
    """

    reader: ActivityReader | None = None
    classifier: ClassificationBackend | None = None
    writer: SnapshotWriter | None = None
    config: dict | None = None  # Configuration
    config_path: str | None = None  # Configuration file name
    data_file: str | Path | None = None  # Snapshot location
    clock: Callable[[], float] = time.monotonic  # Throttle clock
    state: LedgerState = field(default_factory=LedgerState, init=False, repr=False)

    def __post_init__(self):
        if self.config is None:
            self.config = load_config(self.config_path)
        validate_and_warn(self.config)

        self.merge_threshold = timedelta(
            seconds=get_tuning(self.config, "merge_threshold", 60.0)
        )
        self.idle_gap_threshold = timedelta(
            seconds=get_tuning(self.config, "idle_gap_threshold", 300.0)
        )
        self.import_throttle_interval = get_tuning(self.config, "import_throttle_interval", 3.0)
        self.deferred_save_delay = get_tuning(self.config, "deferred_save_delay", 2.0)
        self.group_gap_threshold = timedelta(
            seconds=get_tuning(self.config, "group_gap_threshold", 300.0)
        )
        self.group_min_duration = timedelta(
            seconds=get_tuning(self.config, "group_min_duration", 900.0)
        )
        self.max_context_events = int(self.config.get("max_context_events", 2000))

        if self.data_file is None:
            self.data_file = self.config.get("data_file") or default_data_file()
        self.data_file = Path(self.data_file).expanduser()

        if self.reader is None:
            self.reader = create_reader(self.config)
        if self.classifier is None:
            self.classifier = RuleEngine()
        if self.writer is None:
            self.writer = SnapshotWriter(self.data_file, deferred_delay=self.deferred_save_delay)

        self.deriver = SessionDeriver(self.merge_threshold, self.classifier)

        loaded = self._load()

        self.importer = ImportCoordinator(
            self.state,
            self.reader,
            self.deriver,
            on_change=self._schedule_save,
            throttle_interval=self.import_throttle_interval,
            clock=self.clock,
        )

        if not loaded:
            self.persist(SaveUrgency.IMMEDIATE)

        if self.config.get("rules"):
            self.load_config_rules()

    def _load(self) -> bool:
        """Load the snapshot into ``self.state``. Returns False if starting empty."""
        snapshot = load_snapshot(self.data_file)
        if snapshot is None:
            return False
        try:
            self.state = LedgerState.from_dict(snapshot)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Snapshot {self.data_file} is malformed, starting with empty state: {e}")
            return False
        logger.info(
            f"Loaded snapshot from {self.data_file}: {self.state.get_summary()}",
            extra={"watermark": self.state.watermark},
        )
        return True

    ## Persistence

    def snapshot(self) -> dict[str, Any]:
        """A detached copy of the full state, as saved to disk."""
        return self.state.to_dict()

    def persist(self, urgency: SaveUrgency = SaveUrgency.DEFERRED) -> None:
        self.writer.persist(self.snapshot(), urgency)

    def save(self) -> None:
        self.persist(SaveUrgency.IMMEDIATE)

    def _schedule_save(self) -> None:
        self.persist(SaveUrgency.DEFERRED)

    def close(self) -> None:
        """Write everything still pending and stop the background writer."""
        self.writer.close()

    def export(self, output_file: str | Path, anonymize: bool = False) -> dict[str, Any]:
        return export_all_data(self.state, output_file, anonymize=anonymize)

    def __enter__(self) -> "ActivityLedger":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    ## Classification backends

    def use_classifier(self, backend: ClassificationBackend) -> None:
        """Swap the classification backend used for new and changed sessions."""
        self.classifier = backend
        self.deriver.classifier = backend

    def use_suggestion_service(
        self,
        suggest: Callable[[Session], str | None],
        availability_check: Callable[[], Availability] | None = None,
    ) -> None:
        """Classify through an external category suggester.

        Suggested category names are resolved against the catalogue and
        created when missing.
        """
        self.use_classifier(
            SuggestionServiceBackend(
                suggest,
                lambda name: self._category_if_needed(name).id,
                availability_check=availability_check,
            )
        )

    ## Import

    def perform_incremental_import(self) -> int | None:
        """Import new facts from the reader.

        Returns:
            Number of facts appended, or None if skipped (private mode, an
            import already running, or called again too soon)

        Raises:
            SourceError: if the reader fails; state is left untouched
        """
        if self.state.preferences.private_mode_enabled:
            logger.debug("Private mode is enabled, not importing")
            return None
        return self.importer.perform_incremental_import()

    def apply_imported_facts(self, facts: Iterable[Fact]) -> int:
        return self.importer.apply_imported_facts(facts)

    def _append_facts(self, facts: Iterable[Fact]) -> list[Fact]:
        """Append facts that are not in the ledger yet, without touching the watermark."""
        known = self.state.fact_hashes()
        added = []
        for fact in facts:
            if not fact.is_valid() or fact.dedup_hash in known:
                continue
            known.add(fact.dedup_hash)
            added.append(fact)

        if added:
            self.state.facts.extend(added)
            self.state.facts.sort(key=lambda f: f.timestamp)
            matches = self.deriver.extend(self.state.sessions, added, self.state.rules)
            self.state.rule_matches.extend(matches)
            self._schedule_save()
        return added

    def add_fact(self, fact: Fact) -> bool:
        """Add a single fact (idle periods, calendar events).

        Returns:
            False if an identical fact is already in the ledger
        """
        return bool(self._append_facts([fact]))

    def add_calendar_events(self, events: Iterable[Mapping[str, Any]]) -> int:
        """Turn calendar events into facts, if calendar integration is enabled."""
        if not self.state.preferences.calendar_integration_enabled:
            logger.debug("Calendar integration is disabled, ignoring calendar events")
            return 0
        return len(self._append_facts(calendar_facts(events)))

    ## Categories

    def category_id_named(self, name: str) -> str | None:
        wanted = _normalized(name)
        for category in self.state.categories:
            if _normalized(category.name) == wanted:
                return category.id
        return None

    def _category_if_needed(self, name: str) -> Category:
        name = name.strip()
        category_id = self.category_id_named(name)
        if category_id is not None:
            return self.get_category(category_id)
        category = Category(id=new_id(), name=name)
        self.state.categories.append(category)
        return category

    def get_category(self, category_id: str) -> Category:
        for category in self.state.categories:
            if category.id == category_id:
                return category
        raise KeyError(category_id)

    def add_category(self, name: str, color_hex: str | None = None) -> Category:
        category = Category(id=new_id(), name=name.strip())
        if color_hex:
            category.color_hex = color_hex
        self.state.categories.append(category)
        self.save()
        return category

    def add_category_if_needed(self, name: str) -> Category:
        count = len(self.state.categories)
        category = self._category_if_needed(name)
        if len(self.state.categories) != count:
            self.save()
        return category

    def update_category(
        self, category_id: str, name: str | None = None, color_hex: str | None = None
    ) -> Category:
        category = self.get_category(category_id)
        if name is not None:
            category.name = name.strip()
        if color_hex is not None:
            category.color_hex = color_hex
        self.save()
        return category

    def delete_category(self, category_id: str) -> None:
        """Remove a category along with the rules and assignments pointing at it."""
        self.state.categories = [c for c in self.state.categories if c.id != category_id]
        self.state.rules = [r for r in self.state.rules if r.target_category_id != category_id]
        self.state.assignments = {
            key: value for key, value in self.state.assignments.items() if value != category_id
        }
        self.save()

    def category_name(self, category_id: str | None) -> str:
        if category_id is None:
            return UNCATEGORIZED
        for category in self.state.categories:
            if category.id == category_id:
                return category.name
        return UNCATEGORIZED

    ## Projects and tags

    def add_project_if_needed(self, name: str) -> Project:
        project = self._project_if_needed(name)
        self.save()
        return project

    def _project_if_needed(self, name: str) -> Project:
        wanted = _normalized(name)
        for project in self.state.projects:
            if _normalized(project.name) == wanted:
                return project
        project = Project(id=new_id(), name=name.strip())
        self.state.projects.append(project)
        return project

    def add_tag_if_needed(self, name: str) -> Tag:
        tag = self._tag_if_needed(name)
        self.save()
        return tag

    def _tag_if_needed(self, name: str) -> Tag:
        wanted = _normalized(name)
        for tag in self.state.tags:
            if _normalized(tag.name) == wanted:
                return tag
        tag = Tag(id=new_id(), name=name.strip())
        self.state.tags.append(tag)
        return tag

    ## Rules

    def add_rule(
        self,
        name: str,
        app_name_pattern: str | None = None,
        category_id: str | None = None,
        priority: int = 10,
        mark_private: bool = False,
        project_id: str | None = None,
        tag_ids: Iterable[str] = (),
        bundle_id_pattern: str | None = None,
        window_title_pattern: str | None = None,
        min_duration: timedelta | None = None,
    ) -> Rule:
        """Add a rule. It applies to sessions derived from now on (see reapply_rules)."""
        rule = Rule(
            id=new_id(),
            name=name,
            priority=priority,
            app_name_pattern=app_name_pattern,
            bundle_id_pattern=bundle_id_pattern,
            window_title_pattern=window_title_pattern,
            min_duration=min_duration,
            target_category_id=category_id,
            target_project_id=project_id,
            target_tag_ids=set(tag_ids),
            mark_private=mark_private,
        )
        self.state.rules.append(rule)
        self.save()
        return rule

    def update_rule(self, rule: Rule) -> None:
        for index, existing in enumerate(self.state.rules):
            if existing.id == rule.id:
                self.state.rules[index] = rule
                self.save()
                return
        raise KeyError(rule.id)

    def delete_rule(self, rule_id: str) -> None:
        self.state.rules = [r for r in self.state.rules if r.id != rule_id]
        self.save()

    def load_config_rules(self) -> int:
        """Add or refresh the rules declared under [rules.<name>] in the config.

        Categories, projects and tags are referenced by name and created when
        missing. Each rule gets the stable id "config:<name>", so loading
        again replaces instead of duplicating.

        Returns:
            Number of rules loaded
        """
        declared = self.config.get("rules", {})
        loaded = 0
        for name, table in declared.items():
            if not isinstance(table, dict):
                logger.warning(f"Ignoring rules.{name}: not a table")
                continue
            min_duration = table.get("min_duration")
            rule = Rule(
                id=f"{CONFIG_RULE_PREFIX}{name}",
                name=name,
                priority=int(table.get("priority", 10)),
                enabled=bool(table.get("enabled", True)),
                app_name_pattern=table.get("app_name_pattern") or None,
                bundle_id_pattern=table.get("bundle_id_pattern") or None,
                window_title_pattern=table.get("window_title_pattern") or None,
                min_duration=timedelta(seconds=min_duration) if min_duration is not None else None,
                target_category_id=self._category_if_needed(table["category"]).id
                if table.get("category")
                else None,
                target_project_id=self._project_if_needed(table["project"]).id
                if table.get("project")
                else None,
                target_tag_ids={self._tag_if_needed(t).id for t in table.get("tags", [])},
                mark_private=bool(table.get("private", False)),
            )
            self.state.rules = [r for r in self.state.rules if r.id != rule.id]
            self.state.rules.append(rule)
            loaded += 1

        if loaded:
            logger.info(f"Loaded {loaded} rule(s) from config")
            self.save()
        return loaded

    def reapply_rules(self) -> int:
        """Run classification over every session that still needs it.

        Returns:
            Number of sessions that were classified
        """
        matches = self.classifier.classify_all(self.state.sessions, self.state.rules)
        self.state.rule_matches.extend(matches)
        if matches:
            self.save()
        return len(matches)

    ## Exclusions and assignments

    def add_exclusion(self, pattern: str) -> ExclusionRule | None:
        pattern = pattern.strip()
        if not pattern:
            return None
        exclusion = ExclusionRule(id=new_id(), pattern=pattern)
        self.state.exclusions.append(exclusion)
        self.save()
        return exclusion

    def delete_exclusion(self, exclusion_id: str) -> None:
        self.state.exclusions = [e for e in self.state.exclusions if e.id != exclusion_id]
        self.save()

    def is_excluded(self, app_name: str) -> bool:
        name = app_name.casefold()
        return any(e.pattern.casefold() in name for e in self.state.exclusions)

    def assign_category(self, key: str, category_id: str | None) -> None:
        """Override the category of one session (key from session_key) or of an app name.

        Passing None removes the override.
        """
        if category_id is None:
            self.state.assignments.pop(key, None)
        else:
            self.state.assignments[key] = category_id
        self.save()

    ## Goals and focus sessions

    def add_goal(self, category_id: str, minutes_per_day: int) -> Goal:
        goal = Goal(id=new_id(), category_id=category_id, minutes_per_day=minutes_per_day)
        self.state.goals.append(goal)
        self.save()
        return goal

    def delete_goal(self, goal_id: str) -> None:
        self.state.goals = [g for g in self.state.goals if g.id != goal_id]
        self.save()

    def goal_progress(self, day: date) -> list[tuple[Goal, timedelta]]:
        """Time spent on each goal's category during ``day``."""
        rollup = self.report(Interval.day(day))
        return [
            (goal, rollup.by_category.get(goal.category_id, timedelta(0)))
            for goal in self.state.goals
        ]

    def start_focus_session(
        self, duration_minutes: int, category_id: str, now: datetime | None = None
    ) -> FocusSession:
        start = now or datetime.now(UTC)
        focus = FocusSession(
            id=new_id(),
            start=start,
            end=start + timedelta(minutes=duration_minutes),
            category_id=category_id,
        )
        self.state.focus_sessions.append(focus)
        self.save()
        return focus

    def active_focus_session(self, now: datetime | None = None) -> FocusSession | None:
        now = now or datetime.now(UTC)
        for focus in reversed(self.state.focus_sessions):
            if focus.start <= now <= focus.end:
                return focus
        return None

    def end_active_focus_session(self, now: datetime | None = None) -> FocusSession | None:
        now = now or datetime.now(UTC)
        focus = self.active_focus_session(now)
        if focus is None:
            return None
        focus.end = now
        self.save()
        return focus

    ## Preferences and context

    def update_preferences(self, **changes: Any) -> None:
        preferences = self.state.preferences
        for key, value in changes.items():
            if not hasattr(preferences, key):
                raise AttributeError(f"Unknown preference: {key}")
            setattr(preferences, key, value)
        self.save()

    def add_context_event(self, event: ContextEvent) -> None:
        """Store foreground context with e-mail addresses redacted, keeping the newest ones."""
        events = self.state.context_events
        events.append(event.sanitized())
        if len(events) > self.max_context_events:
            del events[: len(events) - self.max_context_events]
        self._schedule_save()

    ## Session editing

    def update_session_category(self, session_id: str, category_id: str | None) -> Session:
        """Set a session's category by hand. Rules will not touch it afterwards."""
        session = self.state.sessions[session_id]
        session.category_id = category_id
        session.classification = ClassificationState.MANUAL
        self.save()
        return session

    def categorize_sessions(self, session_ids: Iterable[str], category_id: str) -> None:
        """Set one category on several sessions by hand (e.g. a grouping suggestion)."""
        for session_id in session_ids:
            session = self.state.sessions[session_id]
            session.category_id = category_id
            session.classification = ClassificationState.MANUAL
        self.save()

    def accept_group(self, suggestion: GroupSuggestion, category_id: str) -> None:
        self.categorize_sessions(suggestion.session_ids, category_id)

    def update_session_project(self, session_id: str, project_id: str | None) -> Session:
        session = self.state.sessions[session_id]
        session.project_id = project_id
        self.save()
        return session

    def set_session_tags(self, session_id: str, tag_ids: Iterable[str]) -> Session:
        session = self.state.sessions[session_id]
        session.tag_ids = set(tag_ids)
        self.save()
        return session

    def set_session_note(self, session_id: str, note: str | None) -> Session:
        session = self.state.sessions[session_id]
        session.note = note or None
        self.save()
        return session

    def mark_session_private(self, session_id: str, private: bool = True) -> Session:
        session = self.state.sessions[session_id]
        session.is_private = private
        self.save()
        return session

    def split_session(self, session_id: str, at: datetime) -> tuple[Session, Session]:
        """Split a session in two at ``at``.

        Facts starting before ``at`` stay with the first half, the rest go to
        the second. Both halves keep the classification. Facts are untouched.

        Raises:
            KeyError: unknown session
            ValueError: ``at`` is not strictly inside the session
        """
        session = self.state.sessions[session_id]
        if not session.start < at < session.end:
            raise ValueError(f"Split point {at} is outside session {session_id}")

        facts = self.state.facts_by_id()
        before = [fid for fid in session.fact_ids if fid in facts and facts[fid].timestamp < at]
        after = [fid for fid in session.fact_ids if fid not in before]

        first = Session(
            id=session.id,
            start=session.start,
            end=at,
            source_app=session.source_app,
            fact_ids=before,
            project_id=session.project_id,
            category_id=session.category_id,
            tag_ids=set(session.tag_ids),
            note=session.note,
            is_private=session.is_private,
            is_idle=session.is_idle,
            bundle_id=session.bundle_id,
            window_title=session.window_title,
            classification=session.classification,
        )
        second = Session(
            id=new_id(),
            start=at,
            end=session.end,
            source_app=session.source_app,
            fact_ids=after,
            project_id=session.project_id,
            category_id=session.category_id,
            tag_ids=set(session.tag_ids),
            note=session.note,
            is_private=session.is_private,
            is_idle=session.is_idle,
            bundle_id=session.bundle_id,
            window_title=session.window_title,
            classification=session.classification,
        )
        self.state.sessions.replace(session_id, [first, second])
        self.save()
        return first, second

    ## Queries

    def category_for_session(self, session: Session) -> str | None:
        """Effective category of a session.

        Order: the session's own category, a per-session assignment, an
        overlapping focus session, then a per-app assignment.
        """
        if session.is_idle:
            return None
        if session.category_id is not None:
            return session.category_id
        assignment = self.state.assignments.get(session_key(session))
        if assignment is not None:
            return assignment
        for focus in self.state.focus_sessions:
            if focus.overlaps(session.start, session.end):
                return focus.category_id
        return self.state.assignments.get(session.source_app)

    def sessions_between(self, start: datetime, end: datetime) -> list[Session]:
        """Sessions overlapping [start, end), without excluded apps."""
        return [
            s for s in self.state.sessions.overlapping(start, end) if not self.is_excluded(s.source_app)
        ]

    def timeline(self, start: datetime, end: datetime) -> list[Session]:
        """Sessions plus synthetic idle gaps, for display."""
        sessions = self.sessions_between(start, end)
        combined = sessions + idle_gaps(sessions, self.idle_gap_threshold)
        combined.sort(key=lambda s: s.start)
        return combined

    def report(self, interval: Interval) -> Rollup:
        return aggregate(interval, self.sessions_between(interval.start, interval.end))

    def compare_weeks(self, reference: date) -> Comparison:
        """This week against the week before."""
        current = Interval.week_of(reference)
        return compare(self.report(current), self.report(current.previous()))

    def daily_recap(self, day: date) -> str:
        interval = Interval.day(day)
        return daily_recap(
            self.sessions_between(interval.start, interval.end),
            lambda s: self.category_name(self.category_for_session(s)),
        )

    def suggest_groups(self, start: datetime, end: datetime) -> list[GroupSuggestion]:
        return suggest_groups(
            self.sessions_between(start, end),
            gap_threshold=self.group_gap_threshold,
            min_duration=self.group_min_duration,
        )

"""
Helper utilities for creating test fixtures and test data.

This module provides a builder pattern for creating activity facts and a
few fixtures wiring an ActivityLedger to in-memory collaborators.
"""

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from activity_ledger.models import IDLE_APP_NAME, Fact, FactSource
from activity_ledger.readers import StaticReader

T0 = datetime(2025, 1, 1, 9, 0, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def reset_config():
    """Reset the global config to default after each test.

    This prevents test pollution where one test's config changes
    affect subsequent tests.
    """
    from aw_core.config import load_config_toml

    from activity_ledger import config as config_module

    yield

    config_module.config = load_config_toml("activity-ledger", config_module.default_config)


@pytest.fixture(autouse=True)
def no_tuning_env(monkeypatch):
    """Make sure tuning overrides from the environment don't leak into tests."""
    for key in (
        "MERGE_THRESHOLD",
        "IDLE_GAP_THRESHOLD",
        "IMPORT_THROTTLE_INTERVAL",
        "DEFERRED_SAVE_DELAY",
        "GROUP_GAP_THRESHOLD",
        "GROUP_MIN_DURATION",
    ):
        monkeypatch.delenv(f"ACTIVITY_LEDGER_{key}", raising=False)


class FactBuilder:
    """
    Builder class for creating facts.

    Provides a fluent interface for constructing test scenarios. Each added
    fact starts where the previous one ended unless a gap or an explicit
    timestamp is given.

    Example:
        >>> facts = (FactBuilder()
        ...     .add_app("Xcode", 300)
        ...     .gap(30)
        ...     .add_app("Xcode", 60)
        ...     .build())
    """

    def __init__(self, start_time: datetime | None = None):
        self.start_time = start_time or T0
        self.current_time = self.start_time
        self.facts: list[Fact] = []

    def add_app(
        self,
        app: str,
        duration: int | timedelta,
        timestamp: datetime | None = None,
        bundle_id: str | None = None,
        title: str | None = None,
    ) -> "FactBuilder":
        """
        Add an app usage fact.

        Args:
            app: Application name
            duration: Duration in seconds or timedelta
            timestamp: Start (uses current_time if not specified)
            bundle_id: Optional bundle identifier
            title: Optional window title

        Returns:
            Self for chaining
        """
        return self._add(app, duration, timestamp, FactSource.APP_USAGE, bundle_id, title)

    def add_idle(self, duration: int | timedelta, timestamp: datetime | None = None) -> "FactBuilder":
        return self._add(IDLE_APP_NAME, duration, timestamp, FactSource.IDLE)

    def add_calendar(
        self, title: str, duration: int | timedelta, timestamp: datetime | None = None
    ) -> "FactBuilder":
        return self._add(f"Meeting: {title}", duration, timestamp, FactSource.CALENDAR)

    def gap(self, delta: int | timedelta) -> "FactBuilder":
        """Advance the current time without adding a fact."""
        if isinstance(delta, int):
            delta = timedelta(seconds=delta)
        self.current_time += delta
        return self

    def build(self) -> list[Fact]:
        return list(self.facts)

    def _add(
        self,
        app: str,
        duration: int | timedelta,
        timestamp: datetime | None,
        source: FactSource,
        bundle_id: str | None = None,
        title: str | None = None,
    ) -> "FactBuilder":
        if isinstance(duration, int):
            duration = timedelta(seconds=duration)
        start = timestamp or self.current_time
        self.facts.append(
            Fact.create(
                app,
                start,
                duration=duration,
                bundle_id=bundle_id,
                window_title=title,
                source=source,
                imported_at=T0,
            )
        )
        self.current_time = start + duration
        return self


class ManualClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def data_file(tmp_path: Path) -> Path:
    return tmp_path / "local_data.json"


@pytest.fixture
def make_ledger(data_file: Path, clock: ManualClock):
    """Factory for ActivityLedger instances backed by a StaticReader.

    Every ledger created is closed after the test.
    """
    from activity_ledger.main import ActivityLedger

    created = []

    def factory(facts=(), config: dict | None = None, reader=None, **kwargs) -> ActivityLedger:
        ledger = ActivityLedger(
            reader=reader or StaticReader(facts),
            config=config if config is not None else {},
            data_file=kwargs.pop("data_file", data_file),
            clock=clock,
            **kwargs,
        )
        created.append(ledger)
        return ledger

    yield factory

    for ledger in created:
        ledger.close()

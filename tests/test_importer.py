"""Tests for incremental import, deduplication and the watermark."""

from datetime import timedelta

import pytest

from activity_ledger.importer import ImportCoordinator
from activity_ledger.models import Fact, Rule
from activity_ledger.readers import (
    PermissionDenied,
    QueryFailed,
    SourceNotFound,
    SourceUnreadable,
    StaticReader,
)
from activity_ledger.sessions import SessionDeriver
from activity_ledger.state import LedgerState
from tests.conftest import T0, FactBuilder, ManualClock


def make_coordinator(reader=None, state=None, clock=None, on_change=None):
    return ImportCoordinator(
        state or LedgerState(),
        reader or StaticReader(),
        SessionDeriver(),
        on_change=on_change,
        clock=clock or ManualClock(),
    )


class TestApplyImportedFacts:
    """Deduplication and watermark handling of a batch."""

    def test_same_batch_twice_appends_once(self) -> None:
        facts = FactBuilder().add_app("Xcode", 300).add_app("Safari", 60).build()
        coordinator = make_coordinator()

        assert coordinator.apply_imported_facts(facts) == 2
        assert coordinator.apply_imported_facts(facts) == 0

        state = coordinator.state
        assert len(state.facts) == 2
        assert state.watermark == facts[-1].timestamp

    def test_rescanned_copies_are_duplicates(self) -> None:
        """Facts re-read from the source get new ids but the same hash."""
        first = FactBuilder().add_app("Xcode", 300).build()
        again = FactBuilder().add_app("Xcode", 300).build()
        coordinator = make_coordinator()
        coordinator.apply_imported_facts(first)
        assert coordinator.apply_imported_facts(again) == 0

    def test_watermark_advances_on_all_duplicates(self) -> None:
        original = Fact(
            id="a",
            timestamp=T0,
            duration=timedelta(minutes=1),
            app_name="Xcode",
            dedup_hash="H",
        )
        later = Fact(
            id="b",
            timestamp=T0 + timedelta(hours=1),
            duration=timedelta(minutes=1),
            app_name="Xcode",
            dedup_hash="H",
        )
        coordinator = make_coordinator()
        coordinator.apply_imported_facts([original])

        assert coordinator.apply_imported_facts([later]) == 0
        assert coordinator.state.watermark == later.timestamp

    def test_watermark_never_moves_backwards(self) -> None:
        facts = FactBuilder().add_app("Xcode", 60).gap(3600).add_app("Safari", 60).build()
        coordinator = make_coordinator()
        coordinator.apply_imported_facts(facts)

        older = FactBuilder().add_app("Notes", 60).build()
        coordinator.apply_imported_facts(older)

        assert coordinator.state.watermark == facts[-1].timestamp

    def test_duplicates_within_one_batch(self) -> None:
        fact = Fact.create("Xcode", T0, duration=60)
        copy = Fact.create("Xcode", T0, duration=60)
        coordinator = make_coordinator()
        assert coordinator.apply_imported_facts([fact, copy]) == 1

    def test_malformed_facts_are_skipped_but_scanned(self) -> None:
        bad = Fact.create("", T0 + timedelta(minutes=5), duration=60)
        good = Fact.create("Xcode", T0, duration=60)
        coordinator = make_coordinator()

        assert coordinator.apply_imported_facts([good, bad]) == 1
        assert coordinator.state.watermark == bad.timestamp

    def test_unordered_source_is_sorted_in_ledger(self) -> None:
        facts = FactBuilder().add_app("Xcode", 60).add_app("Safari", 60).build()
        coordinator = make_coordinator()
        coordinator.apply_imported_facts(list(reversed(facts)))

        state = coordinator.state
        assert [f.app_name for f in state.facts] == ["Xcode", "Safari"]
        assert state.watermark == facts[-1].timestamp

    def test_new_facts_are_derived_and_classified(self) -> None:
        state = LedgerState(
            rules=[Rule(id="r1", name="code", app_name_pattern="xcode", target_category_id="dev")]
        )
        coordinator = make_coordinator(state=state)
        coordinator.apply_imported_facts(FactBuilder().add_app("Xcode", 300).build())

        assert len(state.sessions) == 1
        assert state.sessions.last().category_id == "dev"
        assert [m.rule_id for m in state.rule_matches] == ["r1"]

    def test_empty_batch_changes_nothing(self) -> None:
        calls = []
        coordinator = make_coordinator(on_change=lambda: calls.append(1))
        assert coordinator.apply_imported_facts([]) == 0
        assert coordinator.state.watermark is None
        assert calls == []

    def test_change_callback(self) -> None:
        calls = []
        coordinator = make_coordinator(on_change=lambda: calls.append(1))
        facts = FactBuilder().add_app("Xcode", 60).build()
        coordinator.apply_imported_facts(facts)
        coordinator.apply_imported_facts(facts)
        assert len(calls) == 2


class TestIncrementalImport:
    """perform_incremental_import reads from the watermark and is throttled."""

    def test_fetches_since_watermark(self) -> None:
        facts = FactBuilder().add_app("Xcode", 60).add_app("Safari", 60).build()
        reader = StaticReader(facts)
        clock = ManualClock()
        coordinator = make_coordinator(reader=reader, clock=clock)

        assert coordinator.perform_incremental_import() == 2
        clock.advance(10)
        assert coordinator.perform_incremental_import() == 0

        assert reader.calls == [None, facts[-1].timestamp]

    def test_throttled_call_is_a_no_op(self) -> None:
        reader = StaticReader(FactBuilder().add_app("Xcode", 60).build())
        clock = ManualClock()
        coordinator = make_coordinator(reader=reader, clock=clock)

        assert coordinator.perform_incremental_import() == 1
        clock.advance(2.9)
        assert coordinator.perform_incremental_import() is None
        assert len(reader.calls) == 1

        clock.advance(0.2)
        assert coordinator.perform_incremental_import() == 0
        assert len(reader.calls) == 2

    def test_concurrent_call_is_a_no_op(self) -> None:
        reader = StaticReader()
        coordinator = make_coordinator(reader=reader)
        coordinator._lock.acquire()
        try:
            assert coordinator.perform_incremental_import() is None
        finally:
            coordinator._lock.release()
        assert reader.calls == []

    @pytest.mark.parametrize(
        "error",
        [
            SourceNotFound(searched_paths=["/nowhere/knowledgeC.db"]),
            PermissionDenied(path="/db"),
            SourceUnreadable("/db", OSError("disk I/O error")),
            QueryFailed("no such table: ZOBJECT"),
        ],
    )
    def test_source_errors_leave_state_untouched(self, error) -> None:
        state = LedgerState()
        coordinator = make_coordinator(reader=StaticReader(error=error), state=state)
        coordinator.apply_imported_facts(FactBuilder().add_app("Xcode", 60).build())
        before = state.to_dict()

        with pytest.raises(type(error)):
            coordinator.perform_incremental_import()

        assert state.to_dict() == before

    def test_failed_import_still_counts_for_throttle(self) -> None:
        reader = StaticReader(error=QueryFailed("boom"))
        coordinator = make_coordinator(reader=reader)
        with pytest.raises(QueryFailed):
            coordinator.perform_incremental_import()
        assert coordinator.perform_incremental_import() is None

"""Tests for snapshot loading and the background writer."""

import json
import logging
from datetime import timedelta
from pathlib import Path

from activity_ledger.persistence import SaveUrgency, SnapshotWriter, load_snapshot
from activity_ledger.state import LedgerState
from tests.conftest import T0, FactBuilder


class TestLoadSnapshot:
    def test_missing_file(self, tmp_path: Path) -> None:
        assert load_snapshot(tmp_path / "nope.json") is None

    def test_corrupt_file(self, tmp_path: Path, caplog) -> None:
        path = tmp_path / "data.json"
        path.write_text("{not json")
        with caplog.at_level(logging.WARNING):
            assert load_snapshot(path) is None
        assert "Could not read snapshot" in caplog.text

    def test_non_object_document(self, tmp_path: Path) -> None:
        path = tmp_path / "data.json"
        path.write_text("[1, 2, 3]")
        assert load_snapshot(path) is None


class TestSnapshotWriter:
    """The writer serializes saves on a worker thread."""

    def test_immediate_save(self, tmp_path: Path) -> None:
        path = tmp_path / "sub" / "data.json"
        writer = SnapshotWriter(path, deferred_delay=60)
        writer.persist({"facts": []}, SaveUrgency.IMMEDIATE)
        writer.flush()

        assert json.loads(path.read_text()) == {"facts": []}
        assert writer.writes == 1
        writer.close()

    def test_deferred_saves_are_debounced(self, tmp_path: Path) -> None:
        path = tmp_path / "data.json"
        writer = SnapshotWriter(path, deferred_delay=60)
        for i in range(5):
            writer.persist({"n": i}, SaveUrgency.DEFERRED)

        assert writer.has_pending
        assert not path.exists()

        writer.flush()
        assert json.loads(path.read_text()) == {"n": 4}
        assert writer.writes == 1
        writer.close()

    def test_deferred_save_fires_after_delay(self, tmp_path: Path) -> None:
        path = tmp_path / "data.json"
        writer = SnapshotWriter(path, deferred_delay=0.05)
        writer.persist({"n": 1})
        timer = writer._timer
        if timer is not None:
            timer.join(timeout=5)

        assert not writer.has_pending
        writer.flush()
        assert json.loads(path.read_text()) == {"n": 1}
        writer.close()

    def test_immediate_save_supersedes_pending_deferred(self, tmp_path: Path) -> None:
        path = tmp_path / "data.json"
        writer = SnapshotWriter(path, deferred_delay=60)
        writer.persist({"n": "deferred"}, SaveUrgency.DEFERRED)
        writer.persist({"n": "immediate"}, SaveUrgency.IMMEDIATE)
        writer.flush()

        assert json.loads(path.read_text()) == {"n": "immediate"}
        assert not writer.has_pending
        assert writer.writes == 1
        writer.close()

    def test_write_failure_is_swallowed(self, tmp_path: Path, caplog) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("a file, not a directory")
        writer = SnapshotWriter(blocker / "data.json", deferred_delay=60)

        with caplog.at_level(logging.WARNING):
            writer.persist({"n": 1}, SaveUrgency.IMMEDIATE)
            writer.flush()

        assert writer.failures == 1
        assert writer.writes == 0
        assert "Failed to save snapshot" in caplog.text
        writer.close()

    def test_unserializable_payload_is_swallowed(self, tmp_path: Path) -> None:
        writer = SnapshotWriter(tmp_path / "data.json", deferred_delay=60)
        writer.persist({"bad": object()}, SaveUrgency.IMMEDIATE)
        writer.persist({"good": True}, SaveUrgency.IMMEDIATE)
        writer.flush()

        assert writer.failures == 1
        assert json.loads((tmp_path / "data.json").read_text()) == {"good": True}
        writer.close()

    def test_close_writes_pending_and_rejects_more(self, tmp_path: Path) -> None:
        path = tmp_path / "data.json"
        writer = SnapshotWriter(path, deferred_delay=60)
        writer.persist({"n": 1})
        writer.close()

        assert json.loads(path.read_text()) == {"n": 1}
        writer.persist({"n": 2}, SaveUrgency.IMMEDIATE)
        assert json.loads(path.read_text()) == {"n": 1}
        writer.close()


class TestStateRoundTrip:
    """LedgerState survives a save/load cycle."""

    def test_round_trip(self, tmp_path: Path) -> None:
        from activity_ledger.importer import ImportCoordinator
        from activity_ledger.readers import StaticReader
        from activity_ledger.sessions import SessionDeriver

        state = LedgerState()
        ImportCoordinator(state, StaticReader(), SessionDeriver()).apply_imported_facts(
            FactBuilder().add_app("Xcode", 300).add_idle(600).add_app("Safari", 60).build()
        )
        state.assignments["Safari"] = "c1"

        path = tmp_path / "data.json"
        writer = SnapshotWriter(path)
        writer.persist(state.to_dict(), SaveUrgency.IMMEDIATE)
        writer.close()

        restored = LedgerState.from_dict(load_snapshot(path))
        assert restored.to_dict() == state.to_dict()
        assert restored.watermark == T0 + timedelta(seconds=900)

    def test_absent_collections_load_empty(self) -> None:
        state = LedgerState.from_dict({"categories": [{"id": "c1", "name": "Work"}]})
        assert state.categories[0].name == "Work"
        assert state.facts == []
        assert len(state.sessions) == 0
        assert state.rules == []
        assert state.context_events == []
        assert state.preferences.last_import_timestamp is None

    def test_advance_watermark(self) -> None:
        state = LedgerState()
        assert state.advance_watermark(T0)
        assert not state.advance_watermark(T0)
        assert not state.advance_watermark(T0 - timedelta(seconds=1))
        assert state.advance_watermark(T0 + timedelta(seconds=1))

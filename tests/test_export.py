"""Tests for the JSON data export."""

import json
from datetime import timedelta
from pathlib import Path

import pytest

from activity_ledger.export import SCHEMA_VERSION, export_all_data, load_export
from activity_ledger.models import ContextEvent
from tests.conftest import T0, FactBuilder


@pytest.fixture
def ledger(make_ledger):
    facts = (
        FactBuilder()
        .add_app("Mail", 300, title="Invoice for alice@example.com")
        .add_app("Xcode", 600, title="main.swift")
        .build()
    )
    ledger = make_ledger(facts)
    ledger.perform_incremental_import()
    ledger.set_session_note(ledger.state.sessions.last().id, "refactoring day")
    ledger.add_context_event(
        ContextEvent(
            id="e1",
            timestamp=T0,
            bundle_id="com.apple.Preview",
            app_name="Preview",
            document_path="/Users/me/Documents/contract.pdf",
        )
    )
    return ledger


class TestExportAllData:
    """Tests for exporting the ledger."""

    def test_export_to_file(self, ledger, tmp_path: Path) -> None:
        output = tmp_path / "exports" / "ledger.json"
        container = ledger.export(output)

        text = output.read_text()
        assert json.loads(text) == container
        assert container["schema_version"] == SCHEMA_VERSION
        assert len(container["data"]["facts"]) == 2
        # Pretty printed with sorted keys
        assert text.startswith('{\n  "data"')

    def test_export_to_stdout(self, ledger, capsys) -> None:
        export_all_data(ledger.state, "-")
        container = json.loads(capsys.readouterr().out)
        assert container["data"]["preferences"]["last_import_timestamp"] is not None

    def test_anonymize(self, ledger, tmp_path: Path) -> None:
        output = tmp_path / "ledger.json"
        ledger.export(output, anonymize=True)
        text = output.read_text()

        assert "alice@example.com" not in text
        assert "main.swift" not in text
        assert "refactoring day" not in text
        assert "contract.pdf" not in text
        assert "Xcode" in text

    def test_anonymize_leaves_state_alone(self, ledger, tmp_path: Path) -> None:
        ledger.export(tmp_path / "ledger.json", anonymize=True)
        assert ledger.state.sessions.last().note == "refactoring day"


class TestLoadExport:
    def test_round_trip(self, ledger, tmp_path: Path) -> None:
        output = tmp_path / "ledger.json"
        ledger.export(output)

        state = load_export(output)
        assert state.to_dict() == ledger.state.to_dict()
        assert state.watermark == T0 + timedelta(minutes=5)

    def test_not_an_export(self, tmp_path: Path) -> None:
        path = tmp_path / "x.json"
        path.write_text(json.dumps({"facts": []}))
        with pytest.raises(ValueError, match="not an activity-ledger export"):
            load_export(path)

    def test_newer_schema(self, tmp_path: Path) -> None:
        path = tmp_path / "x.json"
        path.write_text(json.dumps({"schema_version": SCHEMA_VERSION + 1, "data": {}}))
        with pytest.raises(ValueError, match="schema version"):
            load_export(path)

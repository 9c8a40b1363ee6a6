"""
Export the complete ledger to a versioned JSON document.

The export wraps the snapshot document in a container carrying a schema
version and the export time, so exports can be migrated later.
"""

import json
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .state import LedgerState

SCHEMA_VERSION = 1

ANONYMIZED_TITLE = "window_title"


def anonymize_snapshot(data: dict[str, Any]) -> dict[str, Any]:
    """
    Remove free text that may identify what the user was doing.

    Window titles, notes and document paths are replaced; app names,
    timestamps and classification are kept.

    Args:
        data: Snapshot document (not modified)

    Returns:
        Anonymized copy
    """
    anon = json.loads(json.dumps(data))
    for fact in anon.get("facts", []):
        if fact.get("window_title"):
            fact["window_title"] = ANONYMIZED_TITLE
    for session in anon.get("sessions", []):
        if session.get("window_title"):
            session["window_title"] = ANONYMIZED_TITLE
        if session.get("note"):
            session["note"] = "note"
    for event in anon.get("context_events", []):
        if event.get("window_title"):
            event["window_title"] = ANONYMIZED_TITLE
        if event.get("document_path"):
            event["document_path"] = "/path/to/document"
    return anon


def build_export(state: LedgerState, anonymize: bool = False) -> dict[str, Any]:
    data = state.to_dict()
    if anonymize:
        data = anonymize_snapshot(data)
    return {
        "schema_version": SCHEMA_VERSION,
        "exported_at": datetime.now(UTC).isoformat(),
        "data": data,
    }


def export_all_data(
    state: LedgerState, output_file: str | Path, anonymize: bool = False
) -> dict[str, Any]:
    """
    Write all ledger data as pretty-printed, key-sorted JSON.

    Args:
        state: Ledger state to export
        output_file: Output file path (use '-' for stdout)
        anonymize: If True, strip window titles, notes and document paths

    Returns:
        The exported container
    """
    container = build_export(state, anonymize=anonymize)

    if str(output_file) == "-":
        json.dump(container, sys.stdout, indent=2, sort_keys=True)
        sys.stdout.write("\n")
    else:
        output_path = Path(output_file)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(container, f, indent=2, sort_keys=True)

    return container


def load_export(file_path: str | Path) -> LedgerState:
    """
    Load an export written by export_all_data.

    Args:
        file_path: Path to the export file

    Returns:
        The ledger state it contains

    Raises:
        ValueError: if the file is not an export or has a newer schema version
    """
    with open(file_path, encoding="utf-8") as f:
        container = json.load(f)

    if not isinstance(container, dict) or "data" not in container:
        raise ValueError(f"{file_path} is not an activity-ledger export")
    version = container.get("schema_version")
    if not isinstance(version, int) or version > SCHEMA_VERSION:
        raise ValueError(f"Unsupported export schema version: {version}")

    return LedgerState.from_dict(container["data"])

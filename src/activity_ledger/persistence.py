"""Snapshot persistence.

The whole ledger state is saved as one JSON document. Saves never happen on
the caller's thread: ``SnapshotWriter`` hands every snapshot to a single
worker thread through a queue, so writes are serialized and never overlap.

Two urgencies exist:

- IMMEDIATE: the snapshot is queued right away (user edits)
- DEFERRED: the snapshot is held back and queued once no further deferred
  save arrived for ``deferred_delay`` seconds (bursts during imports)

Only the most recent deferred snapshot is ever written.
"""

import json
import logging
import os
import queue
import threading
from enum import Enum
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_DEFERRED_DELAY = 2.0

_STOP = object()


class SaveUrgency(Enum):
    IMMEDIATE = "immediate"
    DEFERRED = "deferred"


def load_snapshot(path: Path) -> dict[str, Any] | None:
    """Read a snapshot document.

    Returns:
        The decoded document, or None if the file is missing or unreadable
    """
    path = Path(path)
    if not path.exists():
        logger.info(f"No snapshot at {path}, starting with empty state")
        return None
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Could not read snapshot {path}, starting with empty state: {e}")
        return None
    if not isinstance(data, dict):
        logger.warning(f"Snapshot {path} is not a JSON object, starting with empty state")
        return None
    return data


def write_snapshot(path: Path, payload: dict[str, Any]) -> None:
    """Write a snapshot atomically (temporary file, then rename)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2)
    os.replace(tmp, path)


class SnapshotWriter:
    """Background, debounced writer of snapshot documents.

    Args:
        path: Destination file
        deferred_delay: Debounce window for deferred saves, in seconds

    Attributes:
        writes: Number of snapshots written successfully
        failures: Number of snapshots that could not be written
    """

    def __init__(self, path: Path, deferred_delay: float = DEFAULT_DEFERRED_DELAY) -> None:
        self.path = Path(path)
        self.deferred_delay = deferred_delay
        self.writes = 0
        self.failures = 0

        self._queue: queue.Queue = queue.Queue()
        self._lock = threading.Lock()
        self._pending: dict[str, Any] | None = None
        self._timer: threading.Timer | None = None
        self._closed = False

        self._worker = threading.Thread(
            target=self._run, name="activity-ledger-writer", daemon=True
        )
        self._worker.start()

    def persist(self, payload: dict[str, Any], urgency: SaveUrgency = SaveUrgency.DEFERRED) -> None:
        """Schedule a snapshot for writing.

        ``payload`` must not be mutated afterwards; callers pass a fresh
        snapshot each time.
        """
        if self._closed:
            logger.warning("Snapshot writer is closed, dropping save request")
            return

        with self._lock:
            if urgency == SaveUrgency.IMMEDIATE:
                self._cancel_timer()
                self._pending = None
                self._queue.put(payload)
                return

            self._pending = payload
            self._cancel_timer()
            self._timer = threading.Timer(self.deferred_delay, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def flush(self) -> None:
        """Queue any held-back snapshot and wait until everything is written."""
        with self._lock:
            self._cancel_timer()
            if self._pending is not None:
                self._queue.put(self._pending)
                self._pending = None
        self._queue.join()

    def close(self) -> None:
        """Flush and stop the worker thread."""
        if self._closed:
            return
        self.flush()
        self._closed = True
        self._queue.put(_STOP)
        self._worker.join()

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire(self) -> None:
        with self._lock:
            self._timer = None
            if self._pending is None:
                return
            self._queue.put(self._pending)
            self._pending = None

    def _run(self) -> None:
        while True:
            payload = self._queue.get()
            try:
                if payload is _STOP:
                    return
                self._write(payload)
            finally:
                self._queue.task_done()

    def _write(self, payload: dict[str, Any]) -> None:
        try:
            write_snapshot(self.path, payload)
        except (OSError, TypeError, ValueError) as e:
            self.failures += 1
            logger.warning(f"Failed to save snapshot to {self.path}: {e}")
            return
        self.writes += 1
        logger.debug(f"Snapshot saved to {self.path}")

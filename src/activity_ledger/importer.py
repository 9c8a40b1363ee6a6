"""Incremental import of activity facts into the ledger.

The coordinator is the only writer of the fact ledger during imports. An
import:

1. fetches facts newer than the watermark from the reader
2. drops malformed facts and facts whose dedup hash is already known
3. appends the rest and extends the sessions with them
4. moves the watermark to the latest timestamp it scanned, even when every
   fact was a duplicate, so the same rows are not scanned again

A failing reader leaves the ledger and the watermark untouched.
"""

import logging
import threading
import time
from collections.abc import Callable, Iterable
from datetime import datetime

from .models import Fact
from .readers import ActivityReader
from .sessions import SessionDeriver
from .state import LedgerState

logger = logging.getLogger(__name__)

DEFAULT_THROTTLE_INTERVAL = 3.0


class ImportCoordinator:
    """Pulls facts from a reader and folds them into the ledger state.

    Args:
        state: Ledger state to update
        reader: Activity source
        deriver: Session deriver used to extend sessions
        on_change: Called after an import appended facts or moved the watermark
        throttle_interval: Minimum seconds between two throttled imports
        clock: Monotonic clock in seconds (injectable for tests)
    """

    def __init__(
        self,
        state: LedgerState,
        reader: ActivityReader,
        deriver: SessionDeriver,
        on_change: Callable[[], None] | None = None,
        throttle_interval: float = DEFAULT_THROTTLE_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.state = state
        self.reader = reader
        self.deriver = deriver
        self.on_change = on_change
        self.throttle_interval = throttle_interval
        self.clock = clock

        self._lock = threading.Lock()
        self._last_attempt: float | None = None

    def perform_incremental_import(self) -> int | None:
        """Import everything newer than the stored watermark.

        Returns:
            Number of facts appended, or None if the call was throttled
            (another import running, or the previous one started too recently)

        Raises:
            SourceError: if the reader fails
        """
        if not self._lock.acquire(blocking=False):
            logger.debug("Import already in progress, skipping")
            return None
        try:
            now = self.clock()
            if (
                self._last_attempt is not None
                and now - self._last_attempt < self.throttle_interval
            ):
                logger.debug(
                    f"Import throttled ({now - self._last_attempt:.1f}s since last attempt)"
                )
                return None
            self._last_attempt = now
            return self.import_since(self.state.watermark)
        finally:
            self._lock.release()

    def import_since(self, watermark: datetime | None) -> int:
        """Fetch and apply facts newer than ``watermark`` (all facts if None)."""
        facts = self.reader.fetch_facts(since=watermark)
        logger.debug(f"Reader returned {len(facts)} fact(s)", extra={"watermark": watermark})
        return self.apply_imported_facts(facts)

    def apply_imported_facts(self, facts: Iterable[Fact]) -> int:
        """Deduplicate and append a batch of facts.

        Args:
            facts: Facts in source order

        Returns:
            Number of facts appended
        """
        known = self.state.fact_hashes()
        appended: list[Fact] = []
        latest: datetime | None = None
        scanned = 0

        for fact in facts:
            scanned += 1
            if latest is None or fact.timestamp > latest:
                latest = fact.timestamp
            if not fact.is_valid():
                logger.debug(
                    f"Skipping malformed fact for {fact.app_name!r}",
                    extra={"fact_ts": fact.timestamp},
                )
                continue
            if fact.dedup_hash in known:
                continue
            known.add(fact.dedup_hash)
            appended.append(fact)

        if appended:
            self.state.facts.extend(appended)
            self.state.facts.sort(key=lambda f: f.timestamp)
            matches = self.deriver.extend(self.state.sessions, appended, self.state.rules)
            self.state.rule_matches.extend(matches)

        if latest is not None:
            self.state.advance_watermark(latest)

        if scanned:
            logger.info(
                f"Imported {len(appended)} of {scanned} fact(s)",
                extra={"appended": len(appended), "watermark": self.state.watermark},
            )
            if self.on_change is not None:
                self.on_change()

        return len(appended)

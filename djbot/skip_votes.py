from __future__ import annotations
import logging

from store_app import RecordStore

logger = logging.getLogger(__name__)


class SkipVoteCounter:
    """Global skip tally backed by the singleton counter row.

    The counter is only cleared when the playing item changes, never by the
    skip itself, so votes cast after the threshold pile up instead of firing
    another skip.
    """

    def __init__(self, store: RecordStore, threshold: int = 5):
        self.store = store
        self.threshold = threshold

    def current(self) -> int:
        return self.store.skip_count()

    def increment(self) -> int:
        return self.store.increment_skip()

    def withdraw(self) -> int:
        return self.store.decrement_skip()

    def reset(self) -> None:
        if self.store.skip_count():
            logger.info("Resetting skip votes")
        self.store.reset_skip()

    def triggers_skip(self, count: int) -> bool:
        return count == self.threshold

    def needed(self, count: int) -> int:
        return max(self.threshold - count, 0)

"""Undo of the most recent rating in a deck."""

import logging
from collections.abc import Callable

from gitdeck.domain.models import Phase, ReviewLogEntry
from gitdeck.domain.ports import CardStore, ReviewLogRepository, WriteAheadLog

logger = logging.getLogger(__name__)


class UndoEngine:
    """
    Rolls back review log entries, newest first.

    The newest entry is looked up across the whole deck, not just the card on
    screen: the last rated card has usually left the queue already.
    """

    def __init__(
        self,
        card_store: CardStore,
        review_log: ReviewLogRepository,
        wal: WriteAheadLog,
        on_change: Callable[[str], None] | None = None,
    ):
        self.card_store = card_store
        self.review_log = review_log
        self.wal = wal
        self.on_change = on_change

    def can_undo(self, deck_name: str) -> bool:
        return self.review_log.has_entries(deck_name)

    def undo(self, deck_name: str) -> ReviewLogEntry | None:
        """
        Restore the state captured by the newest log entry and remove the entry.

        Returns the undone entry, or None when there is nothing to undo.
        """
        entry = self.review_log.latest(deck_name)
        if entry is None:
            return None

        restored = None if entry.prior_phase == Phase.NEW else entry.prior_state

        self.wal.record(entry.deck_name, entry.card_id, entry.is_reverse, restored)
        if self.card_store.update_state(entry.card_id, entry.is_reverse, restored) is None:
            logger.warning(f"[undo] {entry.card_id} is gone from the local store")
        self.review_log.remove(entry.id)

        logger.info(
            f"[undo] {entry.card_id} reverse={entry.is_reverse} "
            f"{entry.rating.name} -> back to {entry.prior_phase.name}"
        )
        if self.on_change is not None:
            self.on_change(entry.card_id)
        return entry

"""
Review service: the study loop.

Ties the scheduler, local store, review log, write-ahead log and sync
coordinator together. A rating is persisted in this order:

1. WAL (durable before anything else)
2. local card store
3. review log (for undo)
4. introduced-today tracker (new directions only)
5. sync coordinator (marks the card dirty)
"""

import logging
from datetime import datetime, timedelta, tzinfo

from gitdeck.application.queue_builder import (
    StudyQueue,
    compute_study_items,
    count_deck,
    end_of_day,
)
from gitdeck.application.scheduler import SchedulerAdapter
from gitdeck.application.serialization import format_timestamp
from gitdeck.application.sync_coordinator import SyncCoordinator
from gitdeck.application.undo import UndoEngine
from gitdeck.domain.constants import DEFAULT_NEW_CARDS_PER_DAY
from gitdeck.domain.models import (
    Card,
    DeckCounts,
    Phase,
    Rating,
    ReviewLogEntry,
    SchedulingState,
    StudyItem,
    direction_key,
)
from gitdeck.domain.ports import (
    CardStore,
    IntroducedCardTracker,
    ReviewLogRepository,
    WriteAheadLog,
)

logger = logging.getLogger(__name__)


class ReviewService:
    """
    Args:
        card_store: Local card store.
        review_log: Append-only log of ratings.
        wal: Write-ahead log.
        scheduler: FSRS adapter.
        coordinator: Sync coordinator notified after every change. Optional so
            the service also works fully offline.
        tracker: Directions introduced per local day.
        new_cards_per_day: Daily new-card budget per deck (0 disables new cards).
        tz: Timezone that defines "today". Defaults to the system timezone.
    """

    def __init__(
        self,
        card_store: CardStore,
        review_log: ReviewLogRepository,
        wal: WriteAheadLog,
        scheduler: SchedulerAdapter,
        coordinator: SyncCoordinator | None,
        tracker: IntroducedCardTracker,
        new_cards_per_day: int = DEFAULT_NEW_CARDS_PER_DAY,
        tz: tzinfo | None = None,
    ):
        if new_cards_per_day < 0:
            raise ValueError("new_cards_per_day must be >= 0")
        self.card_store = card_store
        self.review_log = review_log
        self.wal = wal
        self.scheduler = scheduler
        self.coordinator = coordinator
        self.tracker = tracker
        self.new_cards_per_day = new_cards_per_day
        self.tz = tz
        self.undo_engine = UndoEngine(card_store, review_log, wal, on_change=self._notify)

    def _local(self, now: datetime) -> datetime:
        return now.astimezone(self.tz)

    def _day_key(self, now: datetime) -> str:
        return self._local(now).date().isoformat()

    def _notify(self, card_id: str) -> None:
        if self.coordinator is not None:
            self.coordinator.notify_change(card_id)

    def study_queue(self, deck_name: str, now: datetime) -> StudyQueue:
        cards = self.card_store.list_deck(deck_name)
        return compute_study_items(
            cards,
            self.new_cards_per_day,
            end_of_day(self._local(now)),
            self.tracker.introduced_on(self._day_key(now)),
        )

    def deck_counts(self, now: datetime) -> list[DeckCounts]:
        cutoff = end_of_day(self._local(now))
        introduced = self.tracker.introduced_on(self._day_key(now))
        return [
            count_deck(
                deck_name,
                self.card_store.list_deck(deck_name),
                self.new_cards_per_day,
                cutoff,
                introduced,
            )
            for deck_name in self.card_store.deck_names()
        ]

    def rate(self, item: StudyItem, rating: Rating, now: datetime) -> SchedulingState:
        """
        Rate one direction and persist the outcome.

        Raises:
            KeyError: the card is not in the local store.
        """
        card = self.card_store.get(item.card_id)
        if card is None:
            raise KeyError(item.card_id)

        prior = card.state_for(item.is_reverse)
        next_state, snapshot = self.scheduler.compute_new_state(prior, rating, now)
        reviewed_at = self._next_log_time(card, snapshot.reviewed_at)

        self.wal.record(card.deck_name, card.card_id, item.is_reverse, next_state)
        self.card_store.update_state(card.card_id, item.is_reverse, next_state)

        direction = "reverse" if item.is_reverse else "forward"
        self.review_log.append(
            ReviewLogEntry(
                id=f"{card.card_id}:{direction}:{format_timestamp(reviewed_at)}",
                card_id=card.card_id,
                deck_name=card.deck_name,
                is_reverse=item.is_reverse,
                rating=snapshot.rating,
                prior_phase=snapshot.prior_phase,
                prior_state=snapshot.prior_state,
                reviewed_at=reviewed_at,
            )
        )
        if snapshot.prior_phase == Phase.NEW:
            self.tracker.mark(self._day_key(now), direction_key(card.card_id, item.is_reverse))

        logger.info(
            f"[review] {card.card_id} {direction} {snapshot.rating.name}: "
            f"{snapshot.prior_phase.name} -> {next_state.phase.name}, "
            f"due {format_timestamp(next_state.due)}"
        )
        self._notify(card.card_id)
        return next_state

    def preview(self, item: StudyItem, now: datetime) -> dict[Rating, SchedulingState]:
        """Next state of the item for every rating, for labelling the answer buttons."""
        card = self.card_store.get(item.card_id)
        prior = card.state_for(item.is_reverse) if card is not None else None
        return self.scheduler.preview(prior, now)

    def _next_log_time(self, card: Card, reviewed_at: datetime) -> datetime:
        # Undo picks the newest entry, so two ratings must never share a timestamp.
        latest = self.review_log.latest(card.deck_name)
        if latest is not None and reviewed_at <= latest.reviewed_at:
            return latest.reviewed_at + timedelta(milliseconds=1)
        return reviewed_at

    def can_undo(self, deck_name: str) -> bool:
        return self.undo_engine.can_undo(deck_name)

    def undo(self, deck_name: str) -> ReviewLogEntry | None:
        return self.undo_engine.undo(deck_name)

    def suspend(self, card_id: str, suspended: bool = True) -> Card:
        """
        Suspend (or unsuspend) a card. Both directions leave the queue.

        Raises:
            KeyError: the card is not in the local store.
        """
        card = self.card_store.set_suspended(card_id, suspended)
        if card is None:
            raise KeyError(card_id)
        logger.info(f"[review] {card_id} {'suspended' if suspended else 'unsuspended'}")
        self._notify(card_id)
        return card

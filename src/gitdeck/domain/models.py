"""
Domain models for cards, scheduling state and review history.

These are pure data structures with no I/O or external dependencies.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from enum import IntEnum

from gitdeck.domain.constants import CARD_ID_SEPARATOR, REVERSE_SUFFIX


class Phase(IntEnum):
    """Learning phase of one card direction (matches the stored integer)."""

    NEW = 0
    LEARNING = 1
    REVIEW = 2
    RELEARNING = 3


class Rating(IntEnum):
    """Button pressed after a review."""

    AGAIN = 1
    HARD = 2
    GOOD = 3
    EASY = 4


@dataclass(frozen=True)
class SchedulingState:
    """
    Memory state for one direction of a card.

    Attributes:
        due: When the direction is next due (UTC).
        stability: Days until recall probability drops to 90%.
        difficulty: FSRS difficulty (1-10).
        elapsed_days: Days between the previous review and the last one.
        scheduled_days: Interval assigned by the last review.
        reps: Total number of ratings, Again included.
        lapses: Number of Again ratings on a non-new direction.
        phase: Learning phase after the last review.
        last_review: Time of the last review (UTC).
    """

    due: datetime
    stability: float
    difficulty: float
    elapsed_days: int = 0
    scheduled_days: int = 0
    reps: int = 0
    lapses: int = 0
    phase: Phase = Phase.NEW
    last_review: datetime | None = None


def make_card_id(deck_name: str, term: str) -> str:
    return f"{deck_name}{CARD_ID_SEPARATOR}{term}"


def parse_card_id(card_id: str) -> tuple[str, str]:
    """Split a card id into (deck_name, term)."""
    deck_name, sep, term = card_id.partition(CARD_ID_SEPARATOR)
    if not sep:
        return "", card_id
    return deck_name, term


def direction_key(card_id: str, is_reverse: bool) -> str:
    """Key identifying one direction of a card (used for daily new-card tracking)."""
    return f"{card_id}{REVERSE_SUFFIX}" if is_reverse else card_id


@dataclass(frozen=True)
class Card:
    """
    A flashcard as stored in its deck document.

    `state` is the forward direction, `reverse_state` the reverse one. Both are
    None until the direction is first reviewed.
    """

    deck_name: str
    term: str
    back: str
    front: str | None = None
    tags: tuple[str, ...] = ()
    created: str = ""
    reversible: bool = False
    order: int = 0
    state: SchedulingState | None = None
    reverse_state: SchedulingState | None = None
    suspended: bool = False

    @property
    def card_id(self) -> str:
        return make_card_id(self.deck_name, self.term)

    @property
    def display_front(self) -> str:
        return self.front or self.term

    def state_for(self, is_reverse: bool) -> SchedulingState | None:
        return self.reverse_state if is_reverse else self.state

    def with_state(self, is_reverse: bool, state: SchedulingState | None) -> "Card":
        """Return a copy with one direction replaced; the other is untouched."""
        if is_reverse:
            return replace(self, reverse_state=state)
        return replace(self, state=state)


@dataclass(frozen=True)
class ReviewLogEntry:
    """
    Append-only record of one rating.

    `prior_state` is the full snapshot taken before the review so that undo is
    a rollback rather than a re-derivation. A NEW `prior_phase` means the
    direction goes back to "never reviewed" on undo.
    """

    id: str
    card_id: str
    deck_name: str
    is_reverse: bool
    rating: Rating
    prior_phase: Phase
    prior_state: SchedulingState | None
    reviewed_at: datetime


@dataclass(frozen=True)
class StudyItem:
    """One queue entry; derived from a Card and never persisted."""

    card_id: str
    deck_name: str
    term: str
    front: str
    back: str
    is_reverse: bool
    is_new: bool
    due: datetime | None = None

    @property
    def key(self) -> str:
        return direction_key(self.card_id, self.is_reverse)


@dataclass(frozen=True)
class CommitInfo:
    message: str
    id: str
    date: str


@dataclass
class DeckCounts:
    deck_name: str
    new: int = 0
    due: int = 0
    total: int = 0
    suspended: int = 0

"""
Queue builder for study sessions.

Builds today's study queue for a deck by:
1. Expanding every card into its forward (and, if reversible, reverse) direction
2. Splitting directions into due reviews and new cards
3. Applying the daily new-card budget in document order
4. Sorting due reviews so the most overdue comes first

The builder is a pure function. Callers rebuild the queue after every mutation
instead of patching it.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, time, tzinfo

from gitdeck.domain.models import Card, DeckCounts, StudyItem, direction_key

logger = logging.getLogger(__name__)


@dataclass
class StudyQueue:
    """Result of queue building."""

    new_items: list[StudyItem] = field(default_factory=list)  # Document order
    due_items: list[StudyItem] = field(default_factory=list)  # Earliest due first

    @property
    def current(self) -> StudyItem | None:
        """The card to show next: due reviews before new cards."""
        if self.due_items:
            return self.due_items[0]
        if self.new_items:
            return self.new_items[0]
        return None

    @property
    def remaining(self) -> int:
        return len(self.due_items) + len(self.new_items)


def end_of_day(now: datetime, tz: tzinfo | None = None) -> datetime:
    """
    Inclusive cutoff for "due today": 23:59:59.999 of `now`'s local day.

    `tz` defaults to `now`'s own timezone.
    """
    local = now.astimezone(tz) if tz is not None else now
    return datetime.combine(local.date(), time(23, 59, 59, 999000), tzinfo=local.tzinfo)


def _to_item(card: Card, is_reverse: bool) -> StudyItem:
    state = card.state_for(is_reverse)
    front, back = card.display_front, card.back
    if is_reverse:
        front, back = back, front
    return StudyItem(
        card_id=card.card_id,
        deck_name=card.deck_name,
        term=card.term,
        front=front,
        back=back,
        is_reverse=is_reverse,
        is_new=state is None,
        due=state.due if state else None,
    )


def _directions(card: Card) -> list[bool]:
    # A reverse state on a non-reversible card is ignored.
    return [False, True] if card.reversible else [False]


def compute_study_items(
    cards: Iterable[Card],
    new_cards_limit: int | None,
    end_of_day: datetime,
    introduced_today: set[str] | None = None,
) -> StudyQueue:
    """
    Partition a deck's cards into new and due study items.

    Args:
        cards: All cards of the deck (any order; document order is restored).
        new_cards_limit: Daily new-card slots. None means unbounded, 0 disables new cards.
        end_of_day: Inclusive due cutoff. Anything due later is left out.
        introduced_today: Direction keys already introduced today.

    Returns:
        StudyQueue with due items sorted by due date and new items in document order.
    """
    introduced = introduced_today or set()
    ordered = sorted(cards, key=lambda c: (c.deck_name, c.order))

    # Directions introduced earlier today that have since been reviewed still
    # used up a slot of today's budget.
    used = 0
    for card in ordered:
        if card.suspended:
            continue
        for is_reverse in _directions(card):
            key = direction_key(card.card_id, is_reverse)
            if key in introduced and card.state_for(is_reverse) is not None:
                used += 1

    new_items: list[StudyItem] = []
    due_items: list[StudyItem] = []

    for card in ordered:
        if card.suspended:
            continue
        for is_reverse in _directions(card):
            state = card.state_for(is_reverse)
            if state is None:
                if new_cards_limit == 0:
                    continue
                key = direction_key(card.card_id, is_reverse)
                if key in introduced or new_cards_limit is None or used < new_cards_limit:
                    new_items.append(_to_item(card, is_reverse))
                    used += 1
            elif state.due <= end_of_day:
                due_items.append(_to_item(card, is_reverse))

    due_items.sort(key=lambda item: item.due)

    logger.debug(
        f"[queue] new={len(new_items)} due={len(due_items)} "
        f"limit={new_cards_limit} introduced={len(introduced)}"
    )
    return StudyQueue(new_items=new_items, due_items=due_items)


def count_deck(
    deck_name: str,
    cards: Iterable[Card],
    new_cards_limit: int | None,
    end_of_day: datetime,
    introduced_today: set[str] | None = None,
) -> DeckCounts:
    """Summary counts for a deck listing."""
    cards = list(cards)
    queue = compute_study_items(cards, new_cards_limit, end_of_day, introduced_today)
    return DeckCounts(
        deck_name=deck_name,
        new=len(queue.new_items),
        due=len(queue.due_items),
        total=len(cards),
        suspended=sum(1 for c in cards if c.suspended),
    )

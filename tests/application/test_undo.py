from datetime import datetime, timedelta, timezone

from gitdeck.application.undo import UndoEngine
from gitdeck.domain.models import Card, Phase, Rating, ReviewLogEntry, SchedulingState

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def _state(**kwargs):
    defaults = {"due": T0 + timedelta(days=3), "stability": 3.0, "difficulty": 5.0, "reps": 2, "phase": Phase.REVIEW}
    defaults.update(kwargs)
    return SchedulingState(**defaults)


def _entry(card_id, at, prior_phase=Phase.REVIEW, prior_state=None, is_reverse=False):
    return ReviewLogEntry(
        id=f"{card_id}:{at.isoformat()}",
        card_id=card_id,
        deck_name="d",
        is_reverse=is_reverse,
        rating=Rating.GOOD,
        prior_phase=prior_phase,
        prior_state=prior_state,
        reviewed_at=at,
    )


def test_undo_picks_newest_entry_across_deck(card_store, review_log, wal):
    card_store.upsert(Card(deck_name="d", term="a", back="1", state=_state(reps=5)))
    card_store.upsert(Card(deck_name="d", term="b", back="2", state=_state(reps=7)))
    review_log.append(_entry("d|b", T0 + timedelta(minutes=5), prior_state=_state(reps=6)))
    review_log.append(_entry("d|a", T0, prior_state=_state(reps=4)))

    entry = UndoEngine(card_store, review_log, wal).undo("d")

    assert entry.card_id == "d|b"
    assert card_store.get("d|b").state.reps == 6
    assert card_store.get("d|a").state.reps == 5


def test_undo_to_new_writes_null_to_wal(card_store, review_log, wal):
    card_store.upsert(Card(deck_name="d", term="a", back="1", reversible=True, reverse_state=_state()))
    review_log.append(_entry("d|a", T0, prior_phase=Phase.NEW, is_reverse=True))

    UndoEngine(card_store, review_log, wal).undo("d")

    assert card_store.get("d|a").reverse_state is None
    [wal_entry] = wal.entries()
    assert wal_entry.is_reverse is True
    assert wal_entry.state is None


def test_undo_calls_on_change(card_store, review_log, wal):
    changed = []
    card_store.upsert(Card(deck_name="d", term="a", back="1", state=_state()))
    review_log.append(_entry("d|a", T0, prior_state=_state(reps=1)))

    UndoEngine(card_store, review_log, wal, on_change=changed.append).undo("d")

    assert changed == ["d|a"]


def test_undo_with_card_gone_still_removes_entry(card_store, review_log, wal):
    review_log.append(_entry("d|gone", T0, prior_state=_state()))
    engine = UndoEngine(card_store, review_log, wal)

    assert engine.undo("d").card_id == "d|gone"
    assert not engine.can_undo("d")


def test_undo_on_empty_log(card_store, review_log, wal):
    engine = UndoEngine(card_store, review_log, wal)
    assert engine.can_undo("d") is False
    assert engine.undo("d") is None
    assert wal.entries() == []

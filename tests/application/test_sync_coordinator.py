import asyncio
import json
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from gitdeck.application.repository_sync import PullResult, PushResult, RepositorySync
from gitdeck.application.review_service import ReviewService
from gitdeck.application.scheduler import SchedulerAdapter
from gitdeck.application.sync_coordinator import SyncCoordinator
from gitdeck.domain.constants import SYNC_RETRY_MESSAGE
from gitdeck.domain.errors import TransientNetworkError
from gitdeck.domain.models import Card, Phase, Rating, SchedulingState


def _state(clock, **kwargs):
    defaults = {
        "due": clock.now() + timedelta(days=2),
        "stability": 2.0,
        "difficulty": 5.0,
        "reps": 1,
        "phase": Phase.REVIEW,
    }
    defaults.update(kwargs)
    return SchedulingState(**defaults)


def _cards(n: int, deck: str = "d") -> list[Card]:
    return [Card(deck_name=deck, term=f"t{i}", back=str(i), order=i) for i in range(n)]


def _pushed_ids(repo) -> list[list[str]]:
    return [[c.card_id for c in call.args[0]] for call in repo.push_cards.await_args_list]


@pytest.fixture
def repo():
    mock = AsyncMock(spec=RepositorySync)

    async def push(cards):
        cards = list(cards)
        return PushResult(decks=sorted({c.deck_name for c in cards}))

    mock.push_cards.side_effect = push
    mock.pull_all_cards.return_value = PullResult()
    return mock


@pytest.fixture
def coordinator(repo, card_store, wal, clock):
    return SyncCoordinator(repo, card_store, wal, clock, debounce_seconds=10, max_batch_size=10)


@pytest.fixture
def stored(card_store):
    cards = _cards(12)
    for card in cards:
        card_store.upsert(card)
    return cards


# --- Debounce & batching ---


@pytest.mark.asyncio
async def test_burst_of_changes_produces_one_push(coordinator, repo, clock, stored):
    for _ in range(3):
        coordinator.notify_change("d|t0")
        clock.advance(3)

    await coordinator.wait_idle()
    repo.push_cards.assert_not_awaited()

    clock.advance(10)
    await coordinator.wait_idle()

    assert _pushed_ids(repo) == [["d|t0"]]
    assert coordinator.dirty_ids == frozenset()


@pytest.mark.asyncio
async def test_timer_rearms_on_every_change(coordinator, repo, clock, stored):
    coordinator.notify_change("d|t0")
    clock.advance(9)
    coordinator.notify_change("d|t1")
    clock.advance(9)
    await coordinator.wait_idle()
    repo.push_cards.assert_not_awaited()

    clock.advance(1)
    await coordinator.wait_idle()
    assert sorted(_pushed_ids(repo)[0]) == ["d|t0", "d|t1"]


@pytest.mark.asyncio
async def test_batch_size_flushes_immediately(coordinator, repo, clock, stored):
    for card in stored[:10]:
        coordinator.notify_change(card.card_id)

    await coordinator.wait_idle()

    assert len(_pushed_ids(repo)) == 1
    assert sorted(_pushed_ids(repo)[0]) == sorted(c.card_id for c in stored[:10])
    assert clock.pending_timers == []


@pytest.mark.asyncio
async def test_flush_sync_pushes_without_waiting(coordinator, repo, stored):
    coordinator.notify_change("d|t3")
    await coordinator.flush_sync()
    assert _pushed_ids(repo) == [["d|t3"]]


@pytest.mark.asyncio
async def test_flush_sync_when_clean_is_noop(coordinator, repo):
    await coordinator.flush_sync()
    repo.push_cards.assert_not_awaited()


@pytest.mark.asyncio
async def test_cancel_sync_discards_pending(coordinator, repo, clock, stored):
    coordinator.notify_change("d|t0")
    coordinator.cancel_sync()

    assert clock.pending_timers == []
    assert coordinator.dirty_ids == frozenset()
    clock.advance(60)
    await coordinator.wait_idle()
    repo.push_cards.assert_not_awaited()


@pytest.mark.asyncio
async def test_cancel_sync_when_idle(coordinator):
    coordinator.cancel_sync()
    assert coordinator.status() == "synced"


# --- Push outcomes & WAL ---


@pytest.mark.asyncio
async def test_failed_push_requeues_and_keeps_wal(coordinator, repo, wal, clock, stored):
    wal.record("d", "d|t0", False, _state(clock))
    repo.push_cards.side_effect = TransientNetworkError("offline")

    coordinator.notify_change("d|t0")
    await coordinator.flush_sync()

    assert coordinator.dirty_ids == {"d|t0"}
    assert len(wal.entries()) == 1
    assert coordinator.status() == "pending"


@pytest.mark.asyncio
async def test_successful_push_clears_wal(coordinator, wal, clock, stored):
    wal.record("d", "d|t0", False, _state(clock))
    wal.record("d", "d|t1", False, _state(clock))

    coordinator.notify_change("d|t0")
    await coordinator.flush_sync()

    assert [e.card_id for e in wal.entries()] == ["d|t1"]


@pytest.mark.asyncio
async def test_wal_entries_written_during_push_survive(coordinator, repo, wal, clock, stored):
    wal.record("d", "d|t0", False, _state(clock))
    newer = _state(clock, reps=2)

    async def push_while_rating(cards):
        wal.record("d", "d|t0", False, newer)
        return PushResult(decks=["d"])

    repo.push_cards.side_effect = push_while_rating
    coordinator.notify_change("d|t0")
    await coordinator.flush_sync()

    [entry] = wal.entries()
    assert entry.state == newer


@pytest.mark.asyncio
async def test_background_conflict_resets_to_remote(coordinator, repo, card_store, wal, clock, stored):
    remote_state = _state(clock, reps=9)
    remote_cards = [c.with_state(False, remote_state) if c.term == "t0" else c for c in stored]
    repo.push_cards.side_effect = None
    repo.push_cards.return_value = PushResult(status="conflict", branch="sync/x", decks=["d"])
    repo.pull_all_cards.return_value = PullResult(cards=remote_cards, decks=["d"])
    wal.record("d", "d|t0", False, _state(clock, reps=1))
    card_store.update_state("d|t0", False, _state(clock, reps=1))

    coordinator.notify_change("d|t0")
    await coordinator.flush_sync()

    repo.pull_all_cards.assert_awaited_once()
    assert card_store.get("d|t0").state == remote_state
    assert wal.entries() == []
    assert coordinator.status() == "conflict"
    assert coordinator.last_result.branch == "sync/x"

    await coordinator.run_sync()
    assert coordinator.status() == "synced"


@pytest.mark.asyncio
async def test_suspend_during_pull_is_not_lost(coordinator, repo, card_store, clock, stored):
    async def pull():
        # The user suspends a card while the pull is on the wire.
        card_store.set_suspended("d|t1", True)
        coordinator.notify_change("d|t1")
        return PullResult(cards=stored, decks=["d"])

    repo.pull_all_cards.side_effect = pull

    await coordinator.run_sync()
    assert card_store.get("d|t1").suspended is True

    clock.advance(10)
    await coordinator.wait_idle()

    [[pushed]] = [call.args[0] for call in repo.push_cards.await_args_list]
    assert pushed.card_id == "d|t1"
    assert pushed.suspended is True


# --- Full sync ---


@pytest.mark.asyncio
async def test_run_sync_replaces_local_store(coordinator, repo, card_store, clock, stored):
    remote_cards = _cards(2, deck="other")
    repo.pull_all_cards.return_value = PullResult(cards=remote_cards, decks=["other"])

    result = await coordinator.run_sync()

    assert result.status == "ok"
    assert result.pulled == 2
    assert card_store.deck_names() == ["other"]
    assert coordinator.last_sync_at == clock.now()
    assert coordinator.status() == "synced"


@pytest.mark.asyncio
async def test_run_sync_flushes_dirty_before_pull(coordinator, repo, stored):
    order = []

    async def push(cards):
        order.append("push")
        return PushResult(decks=["d"])

    async def pull():
        order.append("pull")
        return PullResult()

    repo.push_cards.side_effect = push
    repo.pull_all_cards.side_effect = pull
    coordinator.notify_change("d|t0")

    await coordinator.run_sync()

    assert order == ["push", "pull"]


@pytest.mark.asyncio
async def test_run_sync_error_skips_pull(coordinator, repo, card_store, stored):
    repo.push_cards.side_effect = TransientNetworkError("offline")
    coordinator.notify_change("d|t0")

    result = await coordinator.run_sync()

    assert result.status == "error"
    assert result.message == SYNC_RETRY_MESSAGE
    repo.pull_all_cards.assert_not_awaited()
    assert len(card_store.list_all()) == len(stored)
    assert "d|t0" in coordinator.dirty_ids


@pytest.mark.asyncio
async def test_run_sync_pull_error_is_reported(coordinator, repo):
    repo.pull_all_cards.side_effect = TransientNetworkError("offline")
    result = await coordinator.run_sync()
    assert result.status == "error"
    assert coordinator.last_result is result


@pytest.mark.asyncio
async def test_run_sync_reports_conflict(coordinator, repo, stored):
    repo.push_cards.side_effect = None
    repo.push_cards.return_value = PushResult(status="conflict", branch="sync/2024", decks=["d"])
    coordinator.notify_change("d|t0")

    result = await coordinator.run_sync()

    assert result.status == "conflict"
    assert result.branch == "sync/2024"
    repo.pull_all_cards.assert_awaited_once()


@pytest.mark.asyncio
async def test_run_sync_keeps_decks_that_failed_to_parse(coordinator, repo, card_store, stored):
    repo.pull_all_cards.return_value = PullResult(failed_decks={"d": "bad JSON"})

    result = await coordinator.run_sync()

    assert result.failed_decks == {"d": "bad JSON"}
    assert len(card_store.list_deck("d")) == len(stored)


@pytest.mark.asyncio
async def test_concurrent_run_sync_share_one_operation(coordinator, repo):
    gate = asyncio.Event()

    async def slow_pull():
        await gate.wait()
        return PullResult()

    repo.pull_all_cards.side_effect = slow_pull

    first = asyncio.ensure_future(coordinator.run_sync())
    await asyncio.sleep(0)
    second = asyncio.ensure_future(coordinator.run_sync())
    await asyncio.sleep(0)
    assert coordinator.status() == "syncing"

    gate.set()
    r1, r2 = await asyncio.gather(first, second)

    assert r1 is r2
    repo.pull_all_cards.assert_awaited_once()
    assert not coordinator.is_syncing


@pytest.mark.asyncio
async def test_flush_during_sync_is_deferred_then_retried_once(coordinator, repo, stored):
    gate = asyncio.Event()

    async def slow_pull():
        await gate.wait()
        return PullResult(cards=stored, decks=["d"])

    repo.pull_all_cards.side_effect = slow_pull

    sync_task = asyncio.ensure_future(coordinator.run_sync())
    for _ in range(3):
        await asyncio.sleep(0)
    assert coordinator.is_syncing

    for card in stored[:10]:
        coordinator.notify_change(card.card_id)
    coordinator.notify_change("d|t10")
    repo.push_cards.assert_not_awaited()

    gate.set()
    await sync_task
    await asyncio.sleep(0)
    await coordinator.wait_idle()

    assert len(_pushed_ids(repo)) == 1
    assert len(_pushed_ids(repo)[0]) == 11


# --- Recovery ---


@pytest.mark.asyncio
async def test_recover_replays_wal_and_pushes(coordinator, repo, card_store, wal, clock, stored):
    state = _state(clock)
    wal.record("d", "d|t4", False, state)

    result = await coordinator.recover()

    assert result.status == "ok"
    assert card_store.get("d|t4").state == state
    [[pushed]] = [call.args[0] for call in repo.push_cards.await_args_list]
    assert pushed.state == state
    assert wal.entries() == []


@pytest.mark.asyncio
async def test_recover_conflict_resets_to_remote(coordinator, repo, card_store, wal, clock, stored):
    remote_cards = [Card(deck_name="d", term="t4", back="REMOTE", order=4)]
    repo.push_cards.side_effect = None
    repo.push_cards.return_value = PushResult(status="conflict", branch="sync/y", decks=["d"])
    repo.pull_all_cards.return_value = PullResult(cards=remote_cards, decks=["d"])
    wal.record("d", "d|t4", False, _state(clock))

    result = await coordinator.recover()

    assert result.status == "conflict"
    assert result.branch == "sync/y"
    repo.pull_all_cards.assert_awaited_once()
    card = card_store.get("d|t4")
    assert card.back == "REMOTE"
    assert card.state is None
    assert wal.entries() == []
    assert coordinator.status() == "conflict"


@pytest.mark.asyncio
async def test_recover_waits_for_running_sync(coordinator, repo, card_store, wal, clock, stored):
    gate = asyncio.Event()
    order = []

    async def slow_pull():
        order.append("pull-start")
        await gate.wait()
        order.append("pull-end")
        return PullResult(cards=stored, decks=["d"])

    async def push(cards):
        order.append("push")
        return PushResult(decks=["d"])

    repo.pull_all_cards.side_effect = slow_pull
    repo.push_cards.side_effect = push

    sync_task = asyncio.ensure_future(coordinator.run_sync())
    for _ in range(3):
        await asyncio.sleep(0)
    assert coordinator.is_syncing

    state = _state(clock)
    wal.record("d", "d|t4", False, state)
    recover_task = asyncio.ensure_future(coordinator.recover())
    await asyncio.sleep(0)
    assert order == ["pull-start"]

    gate.set()
    await sync_task
    result = await recover_task

    assert order == ["pull-start", "pull-end", "push"]
    assert result.status == "ok"
    assert card_store.get("d|t4").state == state
    assert wal.entries() == []


@pytest.mark.asyncio
async def test_recover_failure_keeps_wal(coordinator, repo, wal, clock, stored):
    wal.record("d", "d|t4", False, _state(clock))
    repo.push_cards.side_effect = TransientNetworkError("offline")

    result = await coordinator.recover()

    assert result.status == "error"
    assert len(wal.entries()) == 1


@pytest.mark.asyncio
async def test_recover_with_empty_wal(coordinator, repo):
    result = await coordinator.recover()
    assert result.message == "Nothing to recover"
    repo.push_cards.assert_not_awaited()


@pytest.mark.asyncio
async def test_pending_count_includes_wal(coordinator, wal, clock, stored):
    wal.record("d", "d|t0", False, _state(clock))
    coordinator.notify_change("d|t0")
    coordinator.notify_change("d|t1")
    assert coordinator.pending_count == 2
    coordinator.cancel_sync()


@pytest.mark.asyncio
async def test_aclose_pushes_pending(coordinator, repo, clock, stored):
    coordinator.notify_change("d|t2")
    await coordinator.aclose()
    assert _pushed_ids(repo) == [["d|t2"]]
    assert clock.pending_timers == []


# --- End to end against a local remote ---


@pytest.mark.asyncio
async def test_rating_reaches_remote_document(remote, card_store, review_log, wal, tracker, clock):
    deck_dir = remote.root / "spanish-vocab"
    deck_dir.mkdir(parents=True)
    (deck_dir / "cards.json").write_text(json.dumps({"hola": {"back": "hello"}, "gato": {"back": "cat"}}))

    coordinator = SyncCoordinator(RepositorySync(remote, clock), card_store, wal, clock)
    service = ReviewService(card_store, review_log, wal, SchedulerAdapter(), coordinator, tracker)

    await coordinator.run_sync()
    item = service.study_queue("spanish-vocab", clock.now()).current
    state = service.rate(item, Rating.GOOD, clock.now())

    clock.advance(10)
    await coordinator.wait_idle()

    document = json.loads((deck_dir / "cards.json").read_text())
    assert document["hola"]["state"]["reps"] == state.reps == 1
    assert list(document) == ["hola", "gato"]
    assert wal.entries() == []
    assert coordinator.status() == "synced"

"""
Sync Coordinator: the offline-first synchronization engine.

Owns the dirty set and the debounce timer, runs full pull-and-replace syncs,
and replays the write-ahead log after a crash. There is at most one sync in
flight; everything runs on a single asyncio event loop.
"""

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from gitdeck.application.repository_sync import PushResult, RepositorySync
from gitdeck.domain.constants import DEBOUNCE_SECONDS, MAX_BATCH_SIZE, SYNC_RETRY_MESSAGE
from gitdeck.domain.errors import GitdeckError
from gitdeck.domain.ports import CardStore, Clock, TimerHandle, WriteAheadLog

logger = logging.getLogger(__name__)

SyncStatus = Literal["syncing", "pending", "conflict", "synced"]


@dataclass
class SyncResult:
    status: Literal["ok", "conflict", "error"] = "ok"
    message: str = ""
    branch: str | None = None  # Side branch used when a push conflicted
    pulled: int = 0
    failed_decks: dict[str, str] = field(default_factory=dict)


def _conflict_result(push: PushResult) -> SyncResult:
    return SyncResult(status="conflict", message=f"Pushed to branch {push.branch}", branch=push.branch)


class SyncCoordinator:
    """
    Debounced, batched pushes plus authoritative full syncs.

    Args:
        repository_sync: Push/pull against the remote.
        card_store: Local card store (replaced wholesale on pull).
        wal: Write-ahead log of review outcomes not yet pushed.
        clock: Time source and timer factory.
        debounce_seconds: Quiet period after the last change before pushing.
        max_batch_size: Dirty-set size that triggers an immediate push.
    """

    def __init__(
        self,
        repository_sync: RepositorySync,
        card_store: CardStore,
        wal: WriteAheadLog,
        clock: Clock,
        debounce_seconds: float = DEBOUNCE_SECONDS,
        max_batch_size: int = MAX_BATCH_SIZE,
    ):
        self.repository_sync = repository_sync
        self.card_store = card_store
        self.wal = wal
        self.clock = clock
        self.debounce_seconds = debounce_seconds
        self.max_batch_size = max_batch_size

        self._dirty: set[str] = set()
        self._timer: TimerHandle | None = None
        self._active_sync: asyncio.Task | None = None
        self._deferred_flush = False
        self._flush_tasks: set[asyncio.Task] = set()
        self.last_sync_at: datetime | None = None
        self.last_result: SyncResult | None = None

    # ---------- Change tracking ----------

    @property
    def dirty_ids(self) -> frozenset[str]:
        return frozenset(self._dirty)

    @property
    def pending_count(self) -> int:
        return len(self._dirty | {e.card_id for e in self.wal.entries()})

    @property
    def is_syncing(self) -> bool:
        return self._active_sync is not None and not self._active_sync.done()

    def notify_change(self, card_id: str) -> None:
        """Mark a card dirty and (re)arm the debounce timer, or flush at batch size."""
        self._dirty.add(card_id)
        if len(self._dirty) >= self.max_batch_size:
            logger.debug(f"[sync] batch of {len(self._dirty)} reached, flushing now")
            self._flush_changes()
            return
        self._cancel_timer()
        self._timer = self.clock.call_later(self.debounce_seconds, self._on_timer)

    async def flush_sync(self) -> None:
        """Push pending changes now instead of waiting for the debounce timer."""
        if self.is_syncing:
            await asyncio.shield(self._active_sync)
        if self._dirty:
            self._flush_changes()
        await self.wait_idle()

    def cancel_sync(self) -> None:
        """Drop the timer and pending changes without pushing (e.g. on logout)."""
        self._cancel_timer()
        if self._dirty:
            logger.info(f"[sync] cancelled, discarding {len(self._dirty)} pending change(s)")
        self._dirty.clear()

    async def wait_idle(self) -> None:
        """Wait for every flush started so far to finish."""
        while self._flush_tasks:
            await asyncio.gather(*list(self._flush_tasks), return_exceptions=True)

    # ---------- Flush plumbing ----------

    def _on_timer(self) -> None:
        self._timer = None
        self._flush_changes()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _flush_changes(self) -> asyncio.Task | None:
        self._cancel_timer()

        if self.is_syncing:
            # Retry exactly once after the in-flight sync finishes.
            if not self._deferred_flush:
                self._deferred_flush = True
                self._active_sync.add_done_callback(self._after_sync)
            return None

        if not self._dirty:
            return None

        ids = list(self._dirty)
        self._dirty.clear()
        task = asyncio.ensure_future(self._background_push(ids))
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)
        return task

    def _after_sync(self, _task: asyncio.Future) -> None:
        self._deferred_flush = False
        if self._dirty:
            self._flush_changes()

    async def _background_push(self, ids: list[str]) -> None:
        try:
            result = await self._push_ids(ids)
            if result is not None and result.status == "conflict":
                self.last_result = _conflict_result(result)
                await self._reset_to_remote()
        except (GitdeckError, ValueError) as e:
            logger.warning(f"[sync] push of {len(ids)} card(s) failed: {e}")

    async def _push_ids(self, ids: list[str]) -> PushResult | None:
        """
        Push the given cards. On failure the ids go back into the dirty set.

        WAL entries of the pushed decks are cleared up to the checkpoint taken
        before the push, so ratings recorded meanwhile survive.
        """
        cards = self.card_store.get_many(ids)
        if not cards:
            return None

        checkpoint = self.wal.checkpoint()
        try:
            result = await self.repository_sync.push_cards(cards)
        except (GitdeckError, ValueError):
            self._dirty.update(ids)
            raise

        pushed_ids = [c.card_id for c in cards]
        for deck_name in result.decks:
            self.wal.clear(deck_name, up_to=checkpoint, card_ids=pushed_ids)
        if result.status == "conflict":
            logger.info(f"[sync] conflict: local changes pushed to branch {result.branch}")
        return result

    async def _reset_to_remote(self) -> SyncResult:
        pulled = await self.repository_sync.pull_all_cards()
        # Cards still dirty carry local edits the remote copy does not have yet.
        suspended = {c.card_id: c.suspended for c in self.card_store.get_many(list(self._dirty))}
        self.card_store.replace_all(pulled.cards, keep_decks=pulled.failed_decks.keys())
        self._reapply_wal()
        for card_id, flag in suspended.items():
            card = self.card_store.get(card_id)
            if card is not None and card.suspended != flag:
                self.card_store.set_suspended(card_id, flag)
        return SyncResult(pulled=len(pulled.cards), failed_decks=pulled.failed_decks)

    # ---------- WAL ----------

    def _reapply_wal(self, deck_names: Iterable[str] | None = None) -> list[str]:
        """Apply WAL states to the store. Returns the affected card ids."""
        wanted = set(deck_names) if deck_names is not None else None
        card_ids: list[str] = []
        for entry in self.wal.entries():
            if wanted is not None and entry.deck_name not in wanted:
                continue
            if self.card_store.update_state(entry.card_id, entry.is_reverse, entry.state) is None:
                logger.warning(f"[wal] {entry.card_id} not in local store, keeping entry")
                continue
            card_ids.append(entry.card_id)
        return card_ids

    async def recover(self) -> SyncResult:
        """
        Replay the write-ahead log and commit it immediately.

        Called on startup, after any sync already in flight. Entries stay in
        the log until the push succeeds; a conflicting push resets the local
        store to the remote tip.
        """
        if self.is_syncing:
            await asyncio.shield(self._active_sync)

        entries = self.wal.entries()
        if not entries:
            return SyncResult(message="Nothing to recover")

        logger.info(f"[wal] replaying {len(entries)} entr{'y' if len(entries) == 1 else 'ies'}")
        ids = self._reapply_wal()
        self._dirty.update(ids)
        result = await self._flush_all()
        if result.status == "conflict":
            self.last_result = result
            try:
                await self._reset_to_remote()
            except GitdeckError as e:
                logger.warning(f"[wal] reset after conflict failed: {e}")
        return result

    async def _flush_all(self) -> SyncResult:
        self._cancel_timer()
        await self.wait_idle()
        if not self._dirty:
            return SyncResult()

        ids = list(self._dirty)
        self._dirty.clear()
        try:
            result = await self._push_ids(ids)
        except (GitdeckError, ValueError) as e:
            logger.warning(f"[sync] push failed: {e}")
            return SyncResult(status="error", message=SYNC_RETRY_MESSAGE)

        if result is not None and result.status == "conflict":
            return _conflict_result(result)
        return SyncResult()

    # ---------- Full sync ----------

    async def run_sync(self) -> SyncResult:
        """
        Full reconciliation: replay WAL, flush dirty cards, pull and replace.

        Concurrent callers share the in-flight sync. Errors are not raised;
        they come back as status "error" and the next trigger retries.
        """
        if self.is_syncing:
            return await asyncio.shield(self._active_sync)

        self._active_sync = asyncio.ensure_future(self._do_sync())
        try:
            result = await asyncio.shield(self._active_sync)
        finally:
            if self._active_sync is not None and self._active_sync.done():
                self._active_sync = None
        return result

    async def _do_sync(self) -> SyncResult:
        logger.info("[sync] starting")
        if self.wal.entries():
            self._dirty.update(self._reapply_wal())
        push = await self._flush_all()
        if push.status == "error":
            # Never pull over local edits that did not make it out.
            self.last_result = push
            return push

        try:
            pulled = await self._reset_to_remote()
        except GitdeckError as e:
            logger.warning(f"[sync] pull failed: {e}")
            self.last_result = SyncResult(status="error", message=SYNC_RETRY_MESSAGE)
            return self.last_result

        result = SyncResult(
            status=push.status,
            message=push.message or f"Pulled {pulled.pulled} cards",
            branch=push.branch,
            pulled=pulled.pulled,
            failed_decks=pulled.failed_decks,
        )
        self.last_sync_at = self.clock.now()
        self.last_result = result
        logger.info(f"[sync] done: {result.status} ({result.message})")
        return result

    def status(self) -> SyncStatus:
        if self.is_syncing:
            return "syncing"
        if self._dirty or self.wal.has_entries():
            return "pending"
        if self.last_result is not None and self.last_result.status == "conflict":
            return "conflict"
        return "synced"

    async def aclose(self) -> None:
        """Push what is pending and stop the timer."""
        self._cancel_timer()
        if self._dirty:
            self._flush_changes()
        await self.wait_idle()

"""
Conflict-aware sync against the version-controlled store.

Pushes merge local cards into each deck's document under an optimistic
version-token precondition. A rejected (non-fast-forward) write is never
retried against the main branch: the same changes go to a fresh side branch
and the caller resets its local state to the remote tip.
"""

import logging
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from gitdeck.application.serialization import (
    dump_document,
    load_document,
    merge_into_document,
    parse_deck_document,
)
from gitdeck.domain.constants import CARDS_FILE, DEFAULT_COMMIT_LIMIT, SIDE_BRANCH_PREFIX
from gitdeck.domain.errors import (
    ConflictError,
    DocumentNotFoundError,
    MalformedDocumentError,
    NotADeckError,
    RepositoryError,
)
from gitdeck.domain.models import Card, CommitInfo
from gitdeck.domain.ports import Clock, RepositoryClient, VersionToken

logger = logging.getLogger(__name__)


def deck_document_path(deck_name: str) -> str:
    return f"{deck_name}/{CARDS_FILE}"


@dataclass
class PushResult:
    status: Literal["ok", "conflict"] = "ok"
    branch: str | None = None  # Side branch holding the changes on conflict
    decks: list[str] = field(default_factory=list)


@dataclass
class PullResult:
    cards: list[Card] = field(default_factory=list)
    decks: list[str] = field(default_factory=list)  # Decks pulled successfully
    failed_decks: dict[str, str] = field(default_factory=dict)  # deck -> reason


class RepositorySync:
    def __init__(self, client: RepositoryClient, clock: Clock):
        self.client = client
        self.clock = clock
        self._last_branch: str | None = None

    # ---------- Push ----------

    async def push_cards(self, cards: Iterable[Card]) -> PushResult:
        """
        Merge the given cards into their decks' documents on the main branch.

        On a precondition failure the whole batch is pushed to a new side
        branch instead and the result has status "conflict".
        """
        by_deck: dict[str, list[Card]] = defaultdict(list)
        for card in cards:
            by_deck[card.deck_name].append(card)

        result = PushResult(decks=list(by_deck))
        for deck_name, deck_cards in by_deck.items():
            try:
                await self._push_deck(deck_name, deck_cards)
            except ConflictError:
                logger.warning(f"[push] {deck_name}: remote changed, pushing to a side branch")
                result.status = "conflict"
                result.branch = await self._push_to_side_branch(by_deck)
                return result
        return result

    async def _push_deck(
        self, deck_name: str, cards: list[Card], branch: str | None = None
    ) -> VersionToken:
        path = deck_document_path(deck_name)
        document, token = await self._read_document(deck_name, branch)
        merged = merge_into_document(document, cards)
        terms = ", ".join(c.term for c in cards)
        new_token = await self.client.write_file(
            path,
            dump_document(merged),
            version_token=token,
            message=f"sync: {deck_name} - {terms}",
            branch=branch,
        )
        logger.info(f"[push] {deck_name}: {len(cards)} card(s) on {branch or 'main'}")
        return new_token

    async def _read_document(
        self, deck_name: str, branch: str | None = None
    ) -> tuple[dict, VersionToken | None]:
        try:
            content, token = await self.client.read_file(deck_document_path(deck_name), branch)
        except DocumentNotFoundError:
            # New deck: the file does not exist yet.
            return {}, None
        return load_document(deck_name, content), token

    async def _push_to_side_branch(self, by_deck: dict[str, list[Card]]) -> str:
        branch = self.next_branch_name(self.clock.now())
        await self.client.create_branch(branch)
        try:
            for deck_name, deck_cards in by_deck.items():
                await self._push_deck(deck_name, deck_cards, branch=branch)
        except RepositoryError:
            logger.error(f"[push] side branch {branch} failed, removing it")
            try:
                await self.client.delete_branch(branch)
            except RepositoryError as e:
                logger.warning(f"[push] could not delete {branch}: {e}")
            raise
        logger.info(f"[push] local changes preserved on branch {branch}")
        return branch

    def next_branch_name(self, now: datetime) -> str:
        """`sync/<UTC timestamp>`; strictly increasing within this process."""
        stamp = now.strftime("%Y-%m-%dT%H-%M-%S-") + f"{now.microsecond // 1000:03d}Z"
        name = f"{SIDE_BRANCH_PREFIX}{stamp}"
        if self._last_branch is not None and name <= self._last_branch:
            base = self._last_branch.split("+")[0]
            suffix = int(self._last_branch.split("+")[1]) + 1 if "+" in self._last_branch else 1
            name = f"{base}+{suffix}"
        self._last_branch = name
        return name

    # ---------- Pull ----------

    async def pull_all_cards(self) -> PullResult:
        """
        Read every deck on the main branch.

        A directory without a cards document is not a deck and is skipped. A
        malformed document only fails its own deck.
        """
        result = PullResult()
        for deck_name in await self.client.list_directories():
            try:
                cards = await self.read_deck(deck_name)
            except NotADeckError:
                continue
            except MalformedDocumentError as e:
                logger.error(f"[pull] {e}")
                result.failed_decks[deck_name] = e.reason
                continue
            result.cards.extend(cards)
            result.decks.append(deck_name)

        logger.info(
            f"[pull] {len(result.cards)} cards from {len(result.decks)} deck(s)"
            + (f", {len(result.failed_decks)} failed" if result.failed_decks else "")
        )
        return result

    async def read_deck(self, deck_name: str) -> list[Card]:
        try:
            content, _ = await self.client.read_file(deck_document_path(deck_name))
        except DocumentNotFoundError as e:
            raise NotADeckError(e.path) from e
        return parse_deck_document(deck_name, content)

    # ---------- Misc ----------

    async def list_decks(self) -> list[str]:
        decks = []
        for name in await self.client.list_directories():
            try:
                await self.client.read_file(deck_document_path(name))
            except DocumentNotFoundError:
                continue
            decks.append(name)
        return decks

    async def recent_commits(self, limit: int = DEFAULT_COMMIT_LIMIT) -> list[CommitInfo]:
        return await self.client.list_commits(limit)

    async def validate_connection(self) -> bool:
        return await self.client.validate()

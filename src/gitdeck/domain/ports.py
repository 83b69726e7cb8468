"""
Ports (interfaces) for storage, transport and time.

These define the contract that infrastructure adapters must implement.
Application services depend on these abstractions, not concrete implementations.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import NewType, Protocol

from .models import Card, CommitInfo, ReviewLogEntry, SchedulingState

# Opaque optimistic-concurrency token (a blob SHA for GitHub). Only ever
# compared for equality by the transport.
VersionToken = NewType("VersionToken", str)


class RepositoryClient(ABC):
    """
    Port for the version-controlled remote store.

    Implementations:
        - GitHubRepositoryClient: GitHub REST contents API.
        - LocalRepositoryClient: a plain directory on disk.
    """

    @abstractmethod
    async def list_directories(self) -> list[str]:
        """Names of the top-level directories on the main branch."""
        pass

    @abstractmethod
    async def read_file(self, path: str, branch: str | None = None) -> tuple[str, VersionToken]:
        """
        Read a file and its version token.

        Raises:
            DocumentNotFoundError: the path does not exist.
        """
        pass

    @abstractmethod
    async def write_file(
        self,
        path: str,
        content: str,
        version_token: VersionToken | None = None,
        message: str = "",
        branch: str | None = None,
    ) -> VersionToken:
        """
        Create or update a file.

        When `version_token` is given the write only succeeds if the remote file
        still has that token.

        Raises:
            ConflictError: the precondition failed (non-fast-forward).
        """
        pass

    @abstractmethod
    async def list_commits(self, limit: int = 10) -> list[CommitInfo]:
        pass

    @abstractmethod
    async def create_branch(self, name: str, from_branch: str | None = None) -> None:
        pass

    @abstractmethod
    async def delete_branch(self, name: str) -> None:
        pass

    async def validate(self) -> bool:
        """Check that the repository is reachable with the current credentials."""
        try:
            await self.list_directories()
            return True
        except Exception:
            return False

    async def aclose(self) -> None:
        return None


class CardStore(ABC):
    """Port for the local mutable card store."""

    @abstractmethod
    def get(self, card_id: str) -> Card | None:
        pass

    @abstractmethod
    def get_many(self, card_ids: Iterable[str]) -> list[Card]:
        pass

    @abstractmethod
    def list_deck(self, deck_name: str) -> list[Card]:
        """Cards of one deck in document order."""
        pass

    @abstractmethod
    def list_all(self) -> list[Card]:
        pass

    @abstractmethod
    def deck_names(self) -> list[str]:
        pass

    @abstractmethod
    def upsert(self, card: Card) -> None:
        pass

    @abstractmethod
    def update_state(
        self, card_id: str, is_reverse: bool, state: SchedulingState | None
    ) -> Card | None:
        """Replace one direction's state. Returns the updated card, or None if unknown."""
        pass

    @abstractmethod
    def set_suspended(self, card_id: str, suspended: bool) -> Card | None:
        pass

    @abstractmethod
    def replace_all(self, cards: Iterable[Card], keep_decks: Iterable[str] = ()) -> None:
        """
        Replace the whole store with `cards`.

        Decks listed in `keep_decks` keep their current local cards (used when a
        deck could not be pulled).
        """
        pass

    @abstractmethod
    def subscribe(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Register a listener fired after every mutation. Returns an unsubscribe callable."""
        pass


class ReviewLogRepository(ABC):
    @abstractmethod
    def append(self, entry: ReviewLogEntry) -> None:
        pass

    @abstractmethod
    def remove(self, entry_id: str) -> None:
        pass

    @abstractmethod
    def latest(self, deck_name: str) -> ReviewLogEntry | None:
        """Entry with the maximum review timestamp across the whole deck."""
        pass

    @abstractmethod
    def list_deck(self, deck_name: str) -> list[ReviewLogEntry]:
        pass

    def has_entries(self, deck_name: str) -> bool:
        return self.latest(deck_name) is not None


@dataclass(frozen=True)
class WalEntry:
    seq: int
    deck_name: str
    card_id: str
    is_reverse: bool
    state: SchedulingState | None


class WriteAheadLog(ABC):
    """Durable record of review outcomes that have not reached the remote yet."""

    @abstractmethod
    def record(
        self, deck_name: str, card_id: str, is_reverse: bool, state: SchedulingState | None
    ) -> int:
        """Persist the latest state of one direction. Returns its sequence number."""
        pass

    @abstractmethod
    def entries(self, deck_name: str | None = None) -> list[WalEntry]:
        """Entries in sequence order."""
        pass

    @abstractmethod
    def checkpoint(self) -> int:
        """Highest sequence number recorded so far (0 when empty)."""
        pass

    @abstractmethod
    def clear(
        self,
        deck_name: str,
        up_to: int | None = None,
        card_ids: Iterable[str] | None = None,
    ) -> int:
        """
        Drop a deck's entries with seq <= up_to (all when None), optionally only
        for the given cards. Returns the number of entries removed.
        """
        pass

    def has_entries(self) -> bool:
        return bool(self.entries())


class IntroducedCardTracker(ABC):
    """Per-day record of card directions already introduced as new."""

    @abstractmethod
    def introduced_on(self, day: str) -> set[str]:
        pass

    @abstractmethod
    def mark(self, day: str, key: str) -> None:
        pass


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Clock(ABC):
    """Source of time and delayed callbacks, injected so tests can drive it."""

    @abstractmethod
    def now(self) -> datetime:
        """Current time, timezone-aware UTC."""
        pass

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        pass

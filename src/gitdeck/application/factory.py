"""
Composition root.
Centralizes the logic for selecting the repository client and wiring the
local store, sync coordinator and review service together.
"""

import logging
from dataclasses import dataclass
from datetime import tzinfo

from gitdeck.application.config import AppConfig
from gitdeck.application.repository_sync import RepositorySync
from gitdeck.application.review_service import ReviewService
from gitdeck.application.scheduler import SchedulerAdapter
from gitdeck.application.sync_coordinator import SyncCoordinator
from gitdeck.domain.ports import Clock, RepositoryClient
from gitdeck.infrastructure.adapters.github_client import GitHubRepositoryClient
from gitdeck.infrastructure.adapters.local_client import LocalRepositoryClient
from gitdeck.infrastructure.clock import AsyncioClock
from gitdeck.infrastructure.storage.sqlite_store import (
    LocalDatabase,
    SqliteCardStore,
    SqliteIntroducedTracker,
    SqliteReviewLog,
    SqliteWriteAheadLog,
)

logger = logging.getLogger(__name__)


def get_repository_client(config: AppConfig) -> RepositoryClient:
    """
    Returns the RepositoryClient implementation selected by config.

    Raises:
        ValueError: the selected backend is missing its settings.
    """
    if config.backend == "local":
        if config.local_root is None:
            raise ValueError("backend 'local' needs local_root")
        logger.debug(f"Backend: local directory {config.local_root}")
        return LocalRepositoryClient(config.local_root)

    if not config.repo_url or not config.token:
        raise ValueError("backend 'github' needs repo_url and token")
    logger.debug(f"Backend: GitHub {config.repo_url}")
    return GitHubRepositoryClient.from_url(
        config.repo_url,
        config.token,
        branch=config.branch,
        base_url=config.api_base_url,
    )


@dataclass
class App:
    """Everything a front end needs, built from one AppConfig."""

    config: AppConfig
    clock: Clock
    db: LocalDatabase
    client: RepositoryClient
    repository_sync: RepositorySync
    coordinator: SyncCoordinator
    service: ReviewService

    async def aclose(self) -> None:
        """Push pending changes, then release the client and the database."""
        try:
            await self.coordinator.aclose()
        finally:
            await self.client.aclose()
            self.db.close()


def build_app(
    config: AppConfig,
    clock: Clock | None = None,
    client: RepositoryClient | None = None,
    db: LocalDatabase | None = None,
    tz: tzinfo | None = None,
) -> App:
    clock = clock or AsyncioClock()
    client = client or get_repository_client(config)
    db = db or LocalDatabase(config.database_path)

    card_store = SqliteCardStore(db)
    review_log = SqliteReviewLog(db)
    wal = SqliteWriteAheadLog(db)

    repository_sync = RepositorySync(client, clock)
    coordinator = SyncCoordinator(
        repository_sync,
        card_store,
        wal,
        clock,
        debounce_seconds=config.debounce_seconds,
        max_batch_size=config.max_batch_size,
    )
    service = ReviewService(
        card_store,
        review_log,
        wal,
        SchedulerAdapter(),
        coordinator,
        SqliteIntroducedTracker(db),
        new_cards_per_day=config.new_cards_per_day,
        tz=tz,
    )
    return App(
        config=config,
        clock=clock,
        db=db,
        client=client,
        repository_sync=repository_sync,
        coordinator=coordinator,
        service=service,
    )

# Infrastructure Local Storage Package
from .sqlite_store import (
    LocalDatabase,
    SqliteCardStore,
    SqliteIntroducedTracker,
    SqliteReviewLog,
    SqliteWriteAheadLog,
)

__all__ = [
    "LocalDatabase",
    "SqliteCardStore",
    "SqliteReviewLog",
    "SqliteWriteAheadLog",
    "SqliteIntroducedTracker",
]

# Domain Package
from .errors import (
    ConflictError,
    DocumentNotFoundError,
    GitdeckError,
    MalformedDocumentError,
    NotADeckError,
    RepositoryError,
    TransientNetworkError,
)
from .models import Card, Phase, Rating, ReviewLogEntry, SchedulingState, StudyItem

__all__ = [
    "Card",
    "Phase",
    "Rating",
    "ReviewLogEntry",
    "SchedulingState",
    "StudyItem",
    "GitdeckError",
    "RepositoryError",
    "TransientNetworkError",
    "ConflictError",
    "DocumentNotFoundError",
    "NotADeckError",
    "MalformedDocumentError",
]

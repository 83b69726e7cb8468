"""Error taxonomy shared by the sync layers."""


class GitdeckError(Exception):
    """Base class for all gitdeck errors."""


class RepositoryError(GitdeckError):
    """The remote repository rejected or failed a request."""


class TransientNetworkError(RepositoryError):
    """Offline, timeout or server hiccup. Not retried by the core."""


class ConflictError(RepositoryError):
    """A write was rejected because the document changed since it was read."""

    def __init__(self, path: str, message: str = "not a simple fast-forward"):
        super().__init__(f"{path}: {message}")
        self.path = path


class DocumentNotFoundError(RepositoryError):
    def __init__(self, path: str):
        super().__init__(f"Not found: {path}")
        self.path = path


class NotADeckError(DocumentNotFoundError):
    """A top-level directory without a cards document."""


class MalformedDocumentError(GitdeckError, ValueError):
    """A deck document that is not valid JSON or has the wrong shape."""

    def __init__(self, deck_name: str, reason: str):
        super().__init__(f"Malformed deck document '{deck_name}': {reason}")
        self.deck_name = deck_name
        self.reason = reason

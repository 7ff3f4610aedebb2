"""Exception taxonomy for indexing, embedding, storage and watching.

Failures are local to the file or operation that caused them.  Only
``ConfigurationError`` is fatal for a bulk indexing run.
"""


class RagwatchError(Exception):
    """Base class for all ragwatch errors."""

    pass


class EmbeddingError(RagwatchError):
    """The embedding backend rejected a request (not retried)."""

    pass


class TransientBackendError(EmbeddingError):
    """Timeout, connection failure, rate limit or 5xx from the backend."""

    pass


class ConfigurationError(EmbeddingError):
    """Backend address, credentials or model are invalid or unavailable."""

    pass


class IndexingFailed(RagwatchError):
    """A single file could not be indexed."""

    def __init__(self, path: str, cause: BaseException | str) -> None:
        self.path = path
        self.cause = cause
        super().__init__(f"Failed to index {path}: {cause}")


class StorageError(RagwatchError):
    """The vector store could not complete an operation."""

    pass


class WatcherError(RagwatchError):
    """A directory could not be registered for notifications."""

    def __init__(self, path: str, cause: BaseException | str) -> None:
        self.path = path
        self.cause = cause
        super().__init__(f"Cannot watch directory {path}: {cause}")

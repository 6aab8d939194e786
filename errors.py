"""Exception types for mantis-mcp."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sync import SyncResult


class MantisMCPError(Exception):
    """Base class for all mantis-mcp errors."""


class ConfigurationError(MantisMCPError):
    """Invalid settings or an index that does not match the embedding model."""


class IssueFetchError(MantisMCPError):
    """A single issue could not be fetched from MantisBT."""

    def __init__(self, issue_id: int, message: str, not_found: bool = False) -> None:
        super().__init__(f"Failed to fetch issue #{issue_id}: {message}")
        self.issue_id = issue_id
        self.not_found = not_found  # MantisBT answered that the issue does not exist


class StorageError(MantisMCPError):
    """A store transaction failed and was rolled back."""


class EmbeddingError(MantisMCPError):
    """The embedding provider did not return vectors."""


class SyncInProgressError(MantisMCPError):
    """Another sync is already running on this engine."""

    def __init__(self) -> None:
        super().__init__("Sync already in progress. Please wait for it to finish.")


class SyncAbortedError(MantisMCPError):
    """A sync batch failed; earlier batches stay committed.

    `batch` is 1-based; 0 means the failure happened outside a batch (deleting
    issues or recording sync metadata).
    """

    def __init__(self, progress: SyncResult, batch: int, cause: BaseException) -> None:
        self.progress = progress
        self.batch = batch
        self.cause = cause
        state = "partial progress kept" if self.partial else "no progress"
        super().__init__(f"Sync aborted at batch {batch} ({state}): {cause}")

    @property
    def partial(self) -> bool:
        """True when some changes were committed before the failure."""
        p = self.progress
        return (p.added + p.updated + p.deleted) > 0

"""Incremental sync of MantisBT issues into the vector store.

One cycle: fetch lightweight headers, diff `updated_at` against the store,
delete issues that vanished remotely, then fetch, chunk, embed and persist
new and changed issues in fixed-size batches. Each batch is written in one
store transaction; a failing batch aborts the sync but earlier batches stay.

Change detection compares the remote `updated_at` strings for equality. Two
edits that produce the same string are indistinguishable and the second one
is not picked up until the next edit.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Protocol

from chunks import build_chunks
from embeddings import EmbeddingProvider
from errors import (
    ConfigurationError,
    EmbeddingError,
    IssueFetchError,
    StorageError,
    SyncAbortedError,
    SyncInProgressError,
)
from models import IssueHeader, IssueRecord, MantisIssue
from utils import batched, now_iso
from vector_store import VectorStore

logger = logging.getLogger(__name__)

LAST_SYNC_KEY = "last_sync"
LAST_SYNC_RESULT_KEY = "last_sync_result"


class RemoteSource(Protocol):
    def fetch_all_issue_headers(self, project_id: int | None = None) -> list[IssueHeader]: ...

    def get_issue(self, issue_id: int) -> MantisIssue: ...


@dataclass
class SyncResult:
    """Counts for one sync run.

    Issues that failed to fetch, and deletions that could not be confirmed, are
    only counted in `skipped`.
    """

    added: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    total_issues: int = 0
    total_chunks: int = 0
    duration_ms: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class SyncPlan:
    to_add: list[int]
    to_update: list[int]
    to_delete: list[int]


def plan_sync(
    headers: list[IssueHeader],
    stored: dict[int, str],
    in_scope: dict[int, str] | None = None,
) -> SyncPlan:
    """Classify remote headers against stored timestamps.

    `stored` is the full local map and decides add vs update; `in_scope` (the
    local issues of the synced project, defaults to `stored`) bounds deletion,
    so issues outside the scope are never deleted.
    """
    in_scope = stored if in_scope is None else in_scope
    to_add: list[int] = []
    to_update: list[int] = []
    remote_ids: set[int] = set()
    for header in headers:
        if header.id in remote_ids:
            continue
        remote_ids.add(header.id)
        stored_ts = stored.get(header.id)
        if stored_ts is None:
            to_add.append(header.id)
        elif stored_ts != header.updated_at:
            to_update.append(header.id)
    to_delete = [issue_id for issue_id in in_scope if issue_id not in remote_ids]
    return SyncPlan(to_add, to_update, to_delete)


class SyncEngine:
    """Keeps a VectorStore in step with a remote issue source.

    Single-flight: a second `sync()` while one is running raises
    `SyncInProgressError` immediately.
    """

    def __init__(
        self,
        source: RemoteSource,
        store: VectorStore,
        embedder: EmbeddingProvider,
        batch_size: int = 50,
    ) -> None:
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.source = source
        self.store = store
        self.embedder = embedder
        self.batch_size = batch_size
        self._syncing = False

    @property
    def in_progress(self) -> bool:
        return self._syncing

    async def sync(self, project_id: int | None = None) -> SyncResult:
        """Bring the store in line with the remote source.

        Args:
            project_id: Only diff issues of this project; other issues are
                left untouched.

        Raises:
            SyncInProgressError: another sync is running (no side effects).
            SyncAbortedError: a batch failed; `progress` holds what was committed.
            ConfigurationError: vectors do not match the index width.
        """
        # Check-and-set happens before the first await.
        if self._syncing:
            raise SyncInProgressError()
        self._syncing = True
        try:
            return await self._run(project_id)
        finally:
            self._syncing = False

    async def _run(self, project_id: int | None) -> SyncResult:
        started = time.monotonic()
        result = SyncResult()
        logger.info("Starting sync%s...", f" for project {project_id}" if project_id else "")

        headers = await asyncio.to_thread(self.source.fetch_all_issue_headers, project_id)
        logger.info("Fetched %d issue headers from MantisBT", len(headers))

        stored = self.store.get_stored_timestamps()
        in_scope = self.store.get_stored_timestamps(project_id) if project_id else stored
        plan = plan_sync(headers, stored, in_scope)
        if project_id and plan.to_delete:
            plan = await self._confirm_deletions(plan, result)
        logger.info(
            "Diff: %d new, %d updated, %d deleted",
            len(plan.to_add),
            len(plan.to_update),
            len(plan.to_delete),
        )

        for issue_id in plan.to_delete:
            try:
                self.store.delete_issue(issue_id)
            except StorageError as e:
                self._abort(result, started, batch=0, cause=e)
            result.deleted += 1

        updates = set(plan.to_update)
        pending = plan.to_add + plan.to_update
        processed = 0
        for number, batch_ids in enumerate(batched(pending, self.batch_size), start=1):
            try:
                await self._process_batch(batch_ids, updates, result)
            except (StorageError, EmbeddingError) as e:
                self._abort(result, started, batch=number, cause=e)
            except ConfigurationError:
                # Fatal and not wrapped, but committed batches are still recorded.
                self._record_partial(result, started)
                raise
            processed += len(batch_ids)
            logger.info("Processed %d/%d issues", processed, len(pending))

        try:
            self._finish(result, started)
        except StorageError as e:
            self._abort(result, started, batch=0, cause=e, record=False)
        logger.info(
            "Sync completed in %.1fs: +%d ~%d -%d",
            result.duration_ms / 1000,
            result.added,
            result.updated,
            result.deleted,
        )
        return result

    async def _confirm_deletions(self, plan: SyncPlan, result: SyncResult) -> SyncPlan:
        """Re-check deletion candidates of a project-scoped sync.

        A scoped sync only sees the project's headers, so an issue missing from
        them may have moved to another project. Only issues MantisBT reports as
        gone are deleted; moved issues are re-indexed as updates and issues that
        cannot be checked are left alone.
        """
        gone: list[int] = []
        moved: list[int] = []
        for issue_id in plan.to_delete:
            try:
                await asyncio.to_thread(self.source.get_issue, issue_id)
            except IssueFetchError as e:
                if e.not_found:
                    gone.append(issue_id)
                else:
                    logger.warning("Keeping issue #%d, deletion not confirmed: %s", issue_id, e)
                    result.skipped += 1
                continue
            moved.append(issue_id)
        if moved:
            logger.info("%d issues moved out of the synced project", len(moved))
        return SyncPlan(plan.to_add, plan.to_update + moved, gone)

    async def _process_batch(
        self, batch_ids: list[int], updates: set[int], result: SyncResult
    ) -> None:
        issues: list[MantisIssue] = []
        for issue_id in batch_ids:
            try:
                issues.append(await asyncio.to_thread(self.source.get_issue, issue_id))
            except IssueFetchError as e:
                logger.warning("%s", e)
                result.skipped += 1
        if not issues:
            return

        pairs = [(issue, chunk) for issue in issues for chunk in build_chunks(issue)]
        vectors = await self.embedder.embed_batch([chunk.text for _, chunk in pairs])
        if len(vectors) != len(pairs):
            raise EmbeddingError(f"Got {len(vectors)} vectors for {len(pairs)} chunks")

        # Nothing below awaits, so readers on the event loop see the batch all at once.
        with self.store.transaction():
            self.store.delete_chunks_for_issues([i.id for i in issues if i.id in updates])
            self.store.upsert_issues([IssueRecord.from_issue(i) for i in issues])
            self.store.insert_chunks([(chunk, vec) for (_, chunk), vec in zip(pairs, vectors)])

        for issue in issues:
            if issue.id in updates:
                result.updated += 1
            else:
                result.added += 1

    def _finish(self, result: SyncResult, started: float, aborted: bool = False) -> None:
        counts = self.store.get_counts()
        result.total_issues = counts["issues"]
        result.total_chunks = counts["chunks"]
        result.duration_ms = int((time.monotonic() - started) * 1000)
        summary = {
            "added": result.added,
            "updated": result.updated,
            "deleted": result.deleted,
            "skipped": result.skipped,
            "aborted": aborted,
        }
        with self.store.transaction():
            self.store.set_meta(LAST_SYNC_KEY, now_iso())
            self.store.set_meta(LAST_SYNC_RESULT_KEY, json.dumps(summary))

    def _record_partial(self, result: SyncResult, started: float) -> None:
        """Record an aborted run's metadata if anything was committed."""
        if result.added + result.updated + result.deleted == 0:
            result.duration_ms = int((time.monotonic() - started) * 1000)
            return
        try:
            self._finish(result, started, aborted=True)
        except StorageError as e:
            logger.warning("Could not record sync metadata: %s", e)

    def _abort(
        self,
        result: SyncResult,
        started: float,
        batch: int,
        cause: Exception,
        record: bool = True,
    ) -> None:
        error = SyncAbortedError(result, batch, cause)
        logger.error("%s", error)
        if record:
            self._record_partial(result, started)
        raise error from cause

    def status(self) -> dict[str, Any]:
        """Index counts, last sync time/result and whether a sync is running."""
        counts = self.store.get_counts()
        last_result = self.store.get_meta(LAST_SYNC_RESULT_KEY)
        return {
            "issues": counts["issues"],
            "chunks": counts["chunks"],
            "last_sync": self.store.get_meta(LAST_SYNC_KEY),
            "last_sync_result": json.loads(last_result) if last_result else None,
            "sync_in_progress": self._syncing,
        }

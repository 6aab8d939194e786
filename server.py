#!/usr/bin/env python3
"""
Mantis MCP Server - semantic search over MantisBT issues

Keeps a local LanceDB index of MantisBT issues and notes in sync with the
tracker and answers natural-language queries against it:
- FastMCP for clean, idiomatic MCP server patterns
- LanceDB for exact cosine nearest-neighbour search
- sentence-transformers (default), Ollama or Google Gemini for embeddings
- Incremental sync: only new, changed and deleted issues are touched
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading

from mcp.server.fastmcp import FastMCP

from config import Config
from embeddings import EmbeddingProvider, create_provider
from errors import ConfigurationError, IssueFetchError, SyncAbortedError, SyncInProgressError
from mantis_client import MAX_PAGE_SIZE, MantisClient
from search import MAX_LIMIT, semantic_search
from sync import SyncEngine
from utils import configure_logging
from vector_store import VectorStore

logger = logging.getLogger(__name__)

# =============================================================================
# Lazy Singletons (thread-safe)
# =============================================================================

_lock = threading.RLock()  # RLock allows reentrant calls (get_engine -> get_store)

_config: Config | None = None
_store: VectorStore | None = None
_embedder: EmbeddingProvider | None = None
_client: MantisClient | None = None
_engine: SyncEngine | None = None
_startup_sync_task: asyncio.Task | None = None


def get_config() -> Config:
    """Load configuration from the environment once."""
    global _config
    if _config is None:
        with _lock:
            if _config is None:  # Double-check after acquiring lock
                _config = Config.from_env()
    return _config


def get_store() -> VectorStore:
    """Get or open the vector store."""
    global _store
    if _store is None:
        with _lock:
            if _store is None:
                config = get_config()
                _store = VectorStore(config.db_path, config.embedding_dim)
    return _store


def get_embedder() -> EmbeddingProvider:
    """Get or create the embedding provider (model loads on first use)."""
    global _embedder
    if _embedder is None:
        with _lock:
            if _embedder is None:
                _embedder = create_provider(get_config())
    return _embedder


def get_client() -> MantisClient:
    """Get or create the MantisBT REST client."""
    global _client
    if _client is None:
        with _lock:
            if _client is None:
                config = get_config()
                _client = MantisClient(
                    config.mantis_api_url, config.mantis_api_key, config.http_timeout
                )
    return _client


def get_engine() -> SyncEngine:
    """Get or create the sync engine bound to the store and client."""
    global _engine
    if _engine is None:
        with _lock:
            if _engine is None:
                _engine = SyncEngine(
                    get_client(),
                    get_store(),
                    get_embedder(),
                    batch_size=get_config().sync_batch_size,
                )
    return _engine


# =============================================================================
# Formatting
# =============================================================================


def _format_result(index: int, result) -> str:
    meta = result.metadata
    similarity = result.similarity * 100
    header = f"Issue #{result.issue_id} | Type: {result.chunk_type}"
    if result.note_id is not None:
        header += f" | Note #{result.note_id}"
    lines = [
        f"--- Result {index} ({similarity:.1f}% match) ---",
        header,
        f"Project: {meta.project or 'N/A'} | Status: {getattr(meta, 'status', None) or 'N/A'}",
    ]
    if meta.reporter:
        lines.append(f"Reporter: {meta.reporter}")
    handler = getattr(meta, "handler", None)
    if handler:
        lines.append(f"Handler: {handler}")
    lines.extend(["", result.text])
    return "\n".join(lines)


def _format_counts(result) -> list[str]:
    return [
        f"  Added:   {result.added} issues",
        f"  Updated: {result.updated} issues",
        f"  Deleted: {result.deleted} issues",
        f"  Skipped: {result.skipped} issues (fetch failed)",
        f"  Total:   {result.total_issues} issues, {result.total_chunks} chunks",
        f"  Duration: {result.duration_ms / 1000:.1f}s",
    ]


# =============================================================================
# FastMCP Server
# =============================================================================

mcp = FastMCP(
    "mantis-mcp",
    instructions=(
        "Semantic search over MantisBT issues and notes. Run sync_index to build or refresh "
        "the local index, then query it with search."
    ),
)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def search(query: str, limit: int = 10) -> str:
    """Semantic search across all indexed MantisBT issues and notes.

    Returns ranked results with similarity scores. Requires a prior sync_index
    call to populate the index.

    Args:
        query: Natural language search query
        limit: Maximum results to return (default 10, max 50)
    """
    if not query.strip():
        return "Error: query is required"
    if limit <= 0:
        return f"Error: limit must be positive, got {limit}"
    if limit > MAX_LIMIT:
        return f"Error: limit cannot exceed {MAX_LIMIT}, got {limit}"

    try:
        response = await semantic_search(get_store(), get_embedder(), query, limit)
    except Exception as e:
        logger.exception("Search failed")
        return f"Search error: {e}"

    if response.index_empty:
        return "The search index is empty. Please run sync_index first to populate the index."
    if not response.results:
        return "No results found."
    return "\n\n".join(_format_result(i, r) for i, r in enumerate(response.results, 1))


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
    }
)
async def sync_index(project_id: int | None = None) -> str:
    """Synchronize MantisBT issues into the local vector index.

    Incremental: only new, updated and deleted issues are processed. The first
    sync may take several minutes for large trackers.

    Args:
        project_id: Optional: only sync issues from this project
    """
    if project_id is not None and project_id <= 0:
        return f"Error: project_id must be positive, got {project_id}"
    try:
        result = await get_engine().sync(project_id)
    except SyncInProgressError:
        return "A sync is already in progress. Please wait for it to finish."
    except SyncAbortedError as e:
        state = "Partial progress was kept" if e.partial else "No changes were committed"
        lines = [f"Sync aborted at batch {e.batch}: {e.cause}", f"{state}:", ""]
        return "\n".join(lines + _format_counts(e.progress))
    except Exception as e:
        logger.exception("Sync failed")
        return f"Sync error: {e}"

    return "\n".join(["Sync completed successfully!", ""] + _format_counts(result))


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def sync_status() -> str:
    """Check the current status of the vector search index (last sync, issue/chunk counts)."""
    try:
        status = get_engine().status()
    except Exception as e:
        return f"Error checking sync status: {e}"

    lines = [
        "Vector Index Status",
        "===================",
        f"Issues indexed: {status['issues']}",
        f"Chunks stored:  {status['chunks']}",
        f"Last sync:      {status['last_sync'] or 'never'}",
    ]
    last = status["last_sync_result"]
    if last:
        line = f"Last sync result: +{last['added']} added, ~{last['updated']} updated, -{last['deleted']} deleted"
        if last.get("aborted"):
            line += " (aborted)"
        lines.append(line)
    lines.append(f"Sync in progress: {'yes' if status['sync_in_progress'] else 'no'}")
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def get_issue_by_id(issue_id: int) -> str:
    """Get full details of an issue by its ID, straight from MantisBT.

    Args:
        issue_id: Issue ID
    """
    try:
        issue = await asyncio.to_thread(get_client().get_issue, issue_id)
    except IssueFetchError as e:
        return f"Error: {e}"
    return issue.model_dump_json(indent=2)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def get_projects() -> str:
    """List all MantisBT projects accessible with the configured API key."""
    try:
        projects = await asyncio.to_thread(get_client().get_projects)
    except Exception as e:
        return f"Error fetching projects: {e}"
    return json.dumps(projects, indent=2)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def get_issues(
    page: int = 1,
    page_size: int = 50,
    project_id: int | None = None,
    filter_id: int | None = None,
    select: str | None = None,
) -> str:
    """List issues straight from MantisBT with optional filters and pagination.

    Args:
        page: Page number (default 1)
        page_size: Items per page (default 50, max 200)
        project_id: Optional: only issues of this project
        filter_id: Optional: MantisBT saved filter ID
        select: Optional: comma-separated fields to return
    """
    if page <= 0:
        return f"Error: page must be positive, got {page}"
    if not 0 < page_size <= MAX_PAGE_SIZE:
        return f"Error: page_size must be between 1 and {MAX_PAGE_SIZE}, got {page_size}"
    for name, value in (("project_id", project_id), ("filter_id", filter_id)):
        if value is not None and value <= 0:
            return f"Error: {name} must be positive, got {value}"
    try:
        result = await asyncio.to_thread(
            get_client().get_issues, page, page_size, project_id, filter_id, select
        )
    except Exception as e:
        return f"Error fetching issues: {e}"
    return json.dumps(result, indent=2)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def get_user(username: str) -> str:
    """Look up a MantisBT user by username.

    Args:
        username: Username to look up
    """
    if not username.strip():
        return "Error: username is required"
    try:
        user = await asyncio.to_thread(get_client().get_user, username)
    except Exception as e:
        return f'Error looking up user "{username}": {e}'
    if user is None:
        return f'User "{username}" not found.'
    return json.dumps(user, indent=2)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def get_users_by_project_id(project_id: int) -> str:
    """List the members of a MantisBT project.

    Args:
        project_id: Project ID
    """
    if project_id <= 0:
        return f"Error: project_id must be positive, got {project_id}"
    try:
        users = await asyncio.to_thread(get_client().get_users_by_project_id, project_id)
    except Exception as e:
        return f"Error fetching users for project #{project_id}: {e}"
    return json.dumps(users, indent=2)


# =============================================================================
# Server Entry Point
# =============================================================================


async def _startup_sync() -> None:
    """Initial sync when SYNC_ON_STARTUP is set. Failures are logged only."""
    logger.info("SYNC_ON_STARTUP enabled, starting initial sync...")
    try:
        await get_engine().sync()
    except Exception as e:
        logger.error("Startup sync failed: %s", e)


async def run_server() -> None:
    """Validate the index against the embedding model and serve over stdio."""
    config = get_config()
    get_store().ensure_embedding_model(config.embedding_model, config.embedding_dim)
    logger.info("Starting mantis-mcp server (embedding model %s)", config.embedding_model)

    global _startup_sync_task
    if config.sync_on_startup:
        _startup_sync_task = asyncio.create_task(_startup_sync())
    await mcp.run_stdio_async()


def main() -> None:
    """Entry point."""
    try:
        config = get_config()
    except ConfigurationError as e:
        configure_logging("info")
        logger.error("%s", e)
        raise SystemExit(1) from e
    configure_logging(config.log_level)
    try:
        asyncio.run(run_server())
    except ConfigurationError as e:
        logger.error("%s", e)
        raise SystemExit(1) from e
    finally:
        if _client is not None:
            _client.close()
        logger.info("Shutting down...")


if __name__ == "__main__":
    main()

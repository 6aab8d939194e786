"""Natural-language search over the synced index."""

from __future__ import annotations

from dataclasses import dataclass, field

from embeddings import EmbeddingProvider
from models import SearchResult
from vector_store import VectorStore

MAX_LIMIT = 50


@dataclass(frozen=True, slots=True)
class SearchResponse:
    """Ranked results, or `index_empty` when nothing has been synced yet."""

    results: list[SearchResult] = field(default_factory=list)
    index_empty: bool = False


async def semantic_search(
    store: VectorStore, embedder: EmbeddingProvider, query: str, limit: int = 10
) -> SearchResponse:
    """Embed `query` and return the nearest chunks, closest first.

    Raises:
        ValueError: blank query or limit outside 1..50.
    """
    if not query.strip():
        raise ValueError("query is required")
    if not 0 < limit <= MAX_LIMIT:
        raise ValueError(f"limit must be between 1 and {MAX_LIMIT}, got {limit}")
    if store.get_counts()["chunks"] == 0:
        return SearchResponse(index_empty=True)
    vector = await embedder.embed(query)
    return SearchResponse(results=store.search(vector, limit))

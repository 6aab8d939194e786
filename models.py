"""Shared data models for mantis-mcp."""

import os
from dataclasses import dataclass
from typing import Annotated, Literal, Mapping, Union

from lancedb.pydantic import LanceModel, Vector
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

# Configuration
DEFAULT_EMBEDDING_DIM = 384


def embedding_dim_from_env(environ: Mapping[str, str]) -> int:
    """Vector width for the table schemas.

    Falls back to the default on a bad value; `Config.from_env` reports it.
    """
    try:
        dim = int(environ.get("EMBEDDING_DIM") or DEFAULT_EMBEDDING_DIM)
    except ValueError:
        return DEFAULT_EMBEDDING_DIM
    return dim if dim > 0 else DEFAULT_EMBEDDING_DIM


EMBEDDING_DIM = embedding_dim_from_env(os.environ)

ChunkType = Literal["issue", "note"]


# =============================================================================
# MantisBT payloads
# =============================================================================


class MantisRef(BaseModel):
    """An `{id, name}` reference as returned by the MantisBT REST API."""

    model_config = ConfigDict(extra="allow")

    id: int | None = None
    name: str = ""


class MantisNote(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int
    reporter: MantisRef = Field(default_factory=MantisRef)
    text: str = ""
    created_at: str = ""
    updated_at: str = ""


class IssueHeader(BaseModel):
    """Lightweight issue view used for change detection."""

    model_config = ConfigDict(extra="allow")

    id: int
    updated_at: str
    created_at: str = ""
    summary: str = ""
    project: MantisRef | None = None


class MantisIssue(BaseModel):
    """Full issue including notes; unknown fields are kept for display."""

    model_config = ConfigDict(extra="allow")

    id: int
    summary: str = ""
    description: str = ""
    project: MantisRef
    category: MantisRef | None = None
    status: MantisRef = Field(default_factory=MantisRef)
    reporter: MantisRef = Field(default_factory=MantisRef)
    handler: MantisRef | None = None
    created_at: str
    updated_at: str
    notes: list[MantisNote] = Field(default_factory=list)
    tags: list[MantisRef] = Field(default_factory=list)


# =============================================================================
# Chunks
# =============================================================================


class IssueChunkMetadata(BaseModel):
    """Display fields denormalized onto an issue-level chunk."""

    model_config = ConfigDict(frozen=True)

    chunk_type: Literal["issue"] = "issue"
    issue_id: int
    project: str
    status: str
    reporter: str
    handler: str | None = None
    category: str | None = None
    tags: tuple[str, ...] = ()


class NoteChunkMetadata(BaseModel):
    """Display fields denormalized onto a note-level chunk."""

    model_config = ConfigDict(frozen=True)

    chunk_type: Literal["note"] = "note"
    issue_id: int
    note_id: int
    project: str
    reporter: str
    created_at: str


ChunkMetadata = Annotated[
    Union[IssueChunkMetadata, NoteChunkMetadata], Field(discriminator="chunk_type")
]
CHUNK_METADATA = TypeAdapter(ChunkMetadata)


class Chunk(BaseModel):
    """One embeddable text unit derived from an issue or one of its notes."""

    model_config = ConfigDict(frozen=True)

    issue_id: int
    chunk_type: ChunkType
    note_id: int | None = None
    text: str
    metadata: ChunkMetadata

    @model_validator(mode="after")
    def _check_shape(self) -> "Chunk":
        if self.metadata.chunk_type != self.chunk_type:
            raise ValueError(
                f"metadata is for a {self.metadata.chunk_type} chunk, not {self.chunk_type}"
            )
        if self.metadata.issue_id != self.issue_id:
            raise ValueError("metadata issue_id does not match chunk issue_id")
        if self.chunk_type == "note":
            if self.note_id is None or self.note_id != self.metadata.note_id:
                raise ValueError("note chunks require a note_id matching their metadata")
        elif self.note_id is not None:
            raise ValueError("issue chunks must not carry a note_id")
        return self


@dataclass(frozen=True, slots=True)
class SearchResult:
    """A chunk returned by nearest-neighbour search."""

    chunk_id: int
    distance: float
    issue_id: int
    chunk_type: str
    note_id: int | None
    text: str
    metadata: IssueChunkMetadata | NoteChunkMetadata

    @property
    def similarity(self) -> float:
        """Cosine distance (0..2) mapped onto a 0..1 score."""
        return 1 - self.distance / 2


# =============================================================================
# LanceDB schemas
# =============================================================================


class IssueRecord(LanceModel):
    """LanceDB schema for cached issues. One row per remote issue."""

    id: int
    project_id: int
    project_name: str
    summary: str
    status: str
    handler: str | None = None
    reporter: str
    created_at: str
    updated_at: str  # Opaque; compared by equality only
    raw_json: str

    @classmethod
    def from_issue(cls, issue: MantisIssue) -> "IssueRecord":
        return cls(
            id=issue.id,
            project_id=issue.project.id or 0,
            project_name=issue.project.name,
            summary=issue.summary,
            status=issue.status.name,
            handler=issue.handler.name if issue.handler else None,
            reporter=issue.reporter.name,
            created_at=issue.created_at,
            updated_at=issue.updated_at,
            raw_json=issue.model_dump_json(),
        )


class ChunkRecord(LanceModel):
    """LanceDB schema for chunks. `id` is assigned by the store."""

    id: int
    issue_id: int
    chunk_type: str
    note_id: int | None = None
    text: str
    metadata_json: str


class VectorRecord(LanceModel):
    """LanceDB schema for chunk vectors, keyed by chunk id.

    IMPORTANT: The vector width is fixed when the table is created. Changing
    the embedding model requires dropping the index (see reindex.py).
    """

    chunk_id: int
    vector: Vector(EMBEDDING_DIM)  # type: ignore[valid-type]


class SyncMetaRecord(LanceModel):
    key: str
    value: str

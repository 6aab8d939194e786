"""Shared fixtures: isolated LanceDB path, fake embedder and fake MantisBT."""

from __future__ import annotations

import hashlib
import threading

import numpy as np
import pytest

from embeddings import EmbeddingProvider
from errors import IssueFetchError
from models import EMBEDDING_DIM, IssueHeader, MantisIssue
from vector_store import VectorStore


def fake_vector(text: str, dim: int = EMBEDDING_DIM) -> np.ndarray:
    """Deterministic pseudo-embedding seeded by the text."""
    seed = int.from_bytes(hashlib.sha256(text.encode()).digest()[:8], "little")
    return np.random.default_rng(seed).standard_normal(dim)


class FakeEmbedder(EmbeddingProvider):
    """Hash-seeded unit vectors; records every backend call."""

    def __init__(self, dim: int = EMBEDDING_DIM, model_name: str = "fake-model") -> None:
        super().__init__(model_name, dim)
        self.calls: list[list[str]] = []
        self.fail_on_call: int | None = None
        self.output_dim = dim

    def _embed_texts(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            raise RuntimeError("embedding backend down")
        return [self._normalize(fake_vector(t, self.output_dim)) for t in texts]


def make_issue(
    issue_id: int,
    updated_at: str = "2024-01-01T00:00:00+00:00",
    notes: list[str] | None = None,
    project_id: int = 1,
    description: str = "",
) -> MantisIssue:
    """Build a MantisBT issue payload with one note per entry in `notes`."""
    return MantisIssue.model_validate(
        {
            "id": issue_id,
            "summary": f"Issue {issue_id} summary",
            "description": description or f"Description of issue {issue_id}",
            "project": {"id": project_id, "name": f"Project {project_id}"},
            "category": {"id": 1, "name": "General"},
            "status": {"id": 10, "name": "new"},
            "reporter": {"id": 5, "name": "alice"},
            "handler": {"id": 6, "name": "bob"},
            "created_at": "2024-01-01T00:00:00+00:00",
            "updated_at": updated_at,
            "tags": [{"id": 1, "name": "backend"}],
            "notes": [
                {
                    "id": issue_id * 100 + n,
                    "reporter": {"id": 7, "name": "carol"},
                    "text": text,
                    "created_at": "2024-01-02T00:00:00+00:00",
                    "updated_at": "2024-01-02T00:00:00+00:00",
                }
                for n, text in enumerate(notes or [], start=1)
            ],
        }
    )


class FakeSource:
    """In-memory MantisBT: mutate `issues` between syncs."""

    def __init__(self, issues: list[MantisIssue] | None = None) -> None:
        self.issues: dict[int, MantisIssue] = {i.id: i for i in issues or []}
        self.fail_ids: set[int] = set()
        self.fetched: list[int] = []
        self.gate: threading.Event | None = None
        self.headers_requested = threading.Event()

    def put(self, issue: MantisIssue) -> None:
        self.issues[issue.id] = issue

    def fetch_all_issue_headers(self, project_id: int | None = None) -> list[IssueHeader]:
        self.headers_requested.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        return [
            IssueHeader(id=i.id, updated_at=i.updated_at, project=i.project)
            for i in self.issues.values()
            if project_id is None or i.project.id == project_id
        ]

    def get_issue(self, issue_id: int) -> MantisIssue:
        self.fetched.append(issue_id)
        if issue_id in self.fail_ids:
            raise IssueFetchError(issue_id, "503 Service Unavailable")
        if issue_id not in self.issues:
            raise IssueFetchError(issue_id, "404 Not Found", not_found=True)
        return self.issues[issue_id]


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "lancedb"


@pytest.fixture
def store(db_path) -> VectorStore:
    return VectorStore(db_path)


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()

"""Decompose a MantisBT issue into embeddable chunks."""

from __future__ import annotations

from models import Chunk, IssueChunkMetadata, MantisIssue, NoteChunkMetadata


def build_chunks(issue: MantisIssue) -> list[Chunk]:
    """Return the issue chunk followed by one chunk per non-blank note.

    Pure and deterministic: the same issue always yields the same chunks.
    """
    issue_text = "\n\n".join(
        part for part in (f"[Issue #{issue.id}] {issue.summary}", issue.description) if part
    )
    chunks = [
        Chunk(
            issue_id=issue.id,
            chunk_type="issue",
            text=issue_text,
            metadata=IssueChunkMetadata(
                issue_id=issue.id,
                project=issue.project.name,
                status=issue.status.name,
                reporter=issue.reporter.name,
                handler=issue.handler.name if issue.handler else None,
                category=issue.category.name if issue.category else None,
                tags=tuple(t.name for t in issue.tags),
            ),
        )
    ]

    for note in issue.notes:
        if not note.text or not note.text.strip():
            continue
        chunks.append(
            Chunk(
                issue_id=issue.id,
                chunk_type="note",
                note_id=note.id,
                text=f"[Issue #{issue.id} - Note by {note.reporter.name}]\n\n{note.text}",
                metadata=NoteChunkMetadata(
                    issue_id=issue.id,
                    note_id=note.id,
                    project=issue.project.name,
                    reporter=note.reporter.name,
                    created_at=note.created_at,
                ),
            )
        )
    return chunks

"""Tests for the index rebuild script."""

import lancedb
import pyarrow as pa
import pytest

from conftest import FakeEmbedder, FakeSource, make_issue
from errors import ConfigurationError
from models import EMBEDDING_DIM
from reindex import reindex
from sync import SyncEngine
from vector_store import VectorStore


@pytest.fixture
async def built_index(db_path):
    store = VectorStore(db_path)
    store.ensure_embedding_model("old-model", store.dim)
    engine = SyncEngine(FakeSource([make_issue(1, notes=["n"])]), store, FakeEmbedder())
    await engine.sync()
    return db_path


def test_missing_database(tmp_path, capsys):
    assert reindex(tmp_path / "nowhere", dry_run=False) == 0
    assert "Nothing to do" in capsys.readouterr().out


async def test_dry_run_keeps_tables(built_index, capsys):
    assert reindex(built_index, dry_run=True) == 0
    out = capsys.readouterr().out
    assert "old-model" in out
    assert "DRY RUN MODE" in out
    assert VectorStore(built_index).get_counts() == {"issues": 1, "chunks": 2}


async def test_drop_allows_new_model(built_index):
    store = VectorStore(built_index)
    with pytest.raises(ConfigurationError, match="mantis-mcp-reindex"):
        store.ensure_embedding_model("new-model", store.dim)

    assert reindex(built_index, dry_run=False) == 4

    rebuilt = VectorStore(built_index)
    assert rebuilt.get_counts() == {"issues": 0, "chunks": 0}
    rebuilt.ensure_embedding_model("new-model", rebuilt.dim)
    assert rebuilt.get_meta("embedding_model") == "new-model"


def test_drops_index_of_another_width(db_path):
    db_path.mkdir(parents=True)
    schema = pa.schema(
        [
            pa.field("chunk_id", pa.int64()),
            pa.field("vector", pa.list_(pa.float32(), EMBEDDING_DIM // 2)),
        ]
    )
    lancedb.connect(str(db_path)).create_table("vectors", schema=schema)
    with pytest.raises(ConfigurationError):
        VectorStore(db_path)

    assert reindex(db_path, dry_run=False) == 1
    assert VectorStore(db_path).get_counts() == {"issues": 0, "chunks": 0}

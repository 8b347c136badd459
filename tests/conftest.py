"""Shared fixtures: module-scoped DB template, fake providers, seeded blog content."""

import shutil

import pytest

from papergrid.retriever import Retriever
from papergrid.indexer.vector_index import VectorIndex
from papergrid.storage.sqlite_store import (
    ARCHIVED,
    DRAFT,
    Category,
    SqliteStore,
    Tag,
)
from papergrid.storage.vector_store import VectorStore

from tests.helpers import FAKE_DIMS, FakeEmbeddingProvider, make_post


@pytest.fixture(autouse=True)
def _no_env_api_key(monkeypatch):
    """Keep a developer's OPENAI_API_KEY out of the settings under test."""
    monkeypatch.setattr("papergrid.config.OPENAI_API_KEY_ENV", "")


@pytest.fixture(scope="module")
def _module_db_path(tmp_path_factory):
    """Create one fully-initialized DB per test module as a template."""
    db_path = tmp_path_factory.mktemp("db") / "test.db"
    s = SqliteStore(db_path)
    s.init_db()
    s._conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
    s._conn.close()
    return db_path


@pytest.fixture
def db_path(tmp_path, _module_db_path):
    """Copy the template DB into a per-test tmp dir (fast file copy, no init_db)."""
    path = tmp_path / "test.db"
    shutil.copy2(_module_db_path, path)
    return path


@pytest.fixture
def store(db_path):
    """Per-test SqliteStore backed by a pre-initialized DB copy."""
    s = SqliteStore(db_path)
    yield s
    s.close()


@pytest.fixture
def ai_settings(store):
    """Enable AI with a key and small embeddings; every retrieved score passes."""
    store.set_setting("ai.enabled", True)
    store.set_setting("ai.openai.apiKey", "sk-test")
    store.set_setting("ai.embedding.dimensions", FAKE_DIMS)
    store.set_setting("ai.rag.minScore", 0)
    return store


@pytest.fixture
def vectors(tmp_path):
    vs = VectorStore(tmp_path / "lancedb", dims=FAKE_DIMS)
    vs.init_table()
    return vs


@pytest.fixture
def embedder():
    return FakeEmbeddingProvider()


@pytest.fixture
def index(store, vectors, embedder, ai_settings):
    return VectorIndex(store, vectors, provider_factory=lambda settings: embedder)


@pytest.fixture
def retriever(index, store):
    return Retriever(index, store)


@pytest.fixture
def seeded(store):
    """A small blog: three published posts, one protected, one draft, one archived."""
    store.insert_category(Category(id="c1", name="Programming", slug="programming"))
    store.insert_category(Category(id="c2", name="Travel", slug="travel", description="Trips"))
    store.insert_tag(Tag(id="t1", name="Python", slug="python"))
    store.insert_tag(Tag(id="t2", name="Asyncio", slug="asyncio"))
    store.insert_tag(Tag(id="t3", name="Japan", slug="japan"))

    posts = [
        make_post(
            "p1", "Python asyncio basics",
            "Python asyncio event loop coroutines tasks await gather.",
            excerpt="An asyncio primer", category_id="c1",
            published_at="2024-03-01T00:00:00.000+00:00",
            updated_at="2024-03-01T00:00:00.000+00:00",
        ),
        make_post(
            "p2", "Travel notes from Kyoto",
            "Kyoto temples gardens trains autumn leaves travel.",
            category_id="c2",
            published_at="2024-02-01T00:00:00.000+00:00",
            updated_at="2024-02-01T00:00:00.000+00:00",
        ),
        make_post(
            "p3", "Secret asyncio internals",
            "Python asyncio event loop internals selectors coroutines.",
            is_protected=True, category_id="c1",
            published_at="2024-01-01T00:00:00.000+00:00",
            updated_at="2024-01-01T00:00:00.000+00:00",
        ),
        make_post(
            "p4", "Draft on python typing", "Python typing generics protocols.",
            status=DRAFT, category_id="c1",
            updated_at="2024-04-01T00:00:00.000+00:00",
        ),
        make_post(
            "p5", "Old archived post", "Archived words about nothing.",
            status=ARCHIVED,
            updated_at="2023-01-01T00:00:00.000+00:00",
        ),
    ]
    for p in posts:
        store.upsert_post(p)
    store.set_post_tags("p1", ["t1", "t2"])
    store.set_post_tags("p3", ["t1", "t2"])
    store.set_post_tags("p2", ["t3"])
    return store

"""Vector index engine: keeps post chunk embeddings in step with the content store."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from papergrid import config
from papergrid.agent.provider import EmbeddingProvider, create_provider
from papergrid.errors import UpstreamProviderError, VectorIndexNotReadyError
from papergrid.indexer.chunker import (
    build_embedding_input,
    build_post_checksum,
    split_post_content,
)
from papergrid.settings import AiRuntimeSettings, assert_ai_ready, get_ai_runtime_settings
from papergrid.storage.sqlite_store import (
    FAILED,
    INDEXED,
    PUBLISHED,
    IndexDocument,
    SqliteStore,
    utc_now_iso,
)
from papergrid.storage.vector_store import ChunkHit, VectorStore

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[AiRuntimeSettings], EmbeddingProvider]


class VectorIndex:
    """Chunking, embedding, similarity search, and per-post bookkeeping.

    Settings are re-read on every operation. A post's chunk set is only
    replaced after all of its new embeddings were produced.
    """

    def __init__(
        self,
        store: SqliteStore,
        vectors: VectorStore,
        provider_factory: ProviderFactory = create_provider,
        rebuild_concurrency: int | None = None,
    ) -> None:
        self._store = store
        self._vectors = vectors
        self._provider_factory = provider_factory
        self._rebuild_concurrency = rebuild_concurrency

    def _settings(self) -> AiRuntimeSettings:
        return get_ai_runtime_settings(self._store)

    # ── Writes ──

    async def rebuild_all_post_index(self) -> dict:
        """Re-embed every published post and drop entries of everything else."""
        settings = self._settings()
        assert_ai_ready(settings, require_enabled=False)
        t0 = time.perf_counter()

        published = self._store.list_published_post_ids()
        published_set = set(published)
        known = set(self._store.list_index_document_ids()) | set(self._vectors.list_post_ids())

        deleted = 0
        for post_id in sorted(known - published_set):
            self.delete_post_vector_index(post_id)
            deleted += 1

        summary = {
            "totalPublishedPosts": len(published),
            "indexed": 0,
            "unchanged": 0,
            "deleted": deleted,
            "failed": 0,
            "errors": [],
        }
        pending = iter(published)

        async def worker() -> None:
            for post_id in pending:
                try:
                    result = await self.index_post_by_id(post_id, force=True)
                except Exception as e:
                    logger.error("Rebuild: post %s failed: %s", post_id, e)
                    summary["failed"] += 1
                    summary["errors"].append({"postId": post_id, "error": str(e)})
                    continue
                if result["status"] == "indexed":
                    summary["indexed"] += 1
                elif result["status"] == "unchanged":
                    summary["unchanged"] += 1
                else:
                    summary["deleted"] += 1

        concurrency = self._rebuild_concurrency or config.INDEX_REBUILD_CONCURRENCY
        concurrency = max(1, min(2, concurrency))
        await asyncio.gather(*(worker() for _ in range(concurrency)))

        logger.info(
            "Rebuild done: %d indexed, %d deleted, %d failed, concurrency %d (%.2fs)",
            summary["indexed"], summary["deleted"], summary["failed"], concurrency,
            time.perf_counter() - t0,
        )
        return summary

    async def index_post_by_id(self, post_id: str, force: bool = False) -> dict:
        """Bring one post's chunks in line with its current content.

        Missing or unpublished posts lose their chunks. Unless ``force`` is set,
        a post whose checksum matches its indexed state is left untouched.
        """
        post = self._store.get_post(post_id)
        if post is None or post.status != PUBLISHED:
            self.delete_post_vector_index(post_id)
            return {
                "postId": post_id,
                "status": "deleted",
                "chunkCount": 0,
                "reason": "missing" if post is None else "unpublished",
            }

        settings = self._settings()
        checksum = build_post_checksum(
            post.title, post.excerpt, post.content,
            settings.embedding_model, settings.embedding_dimensions,
        )
        doc = self._store.get_index_document(post_id)
        if (
            not force
            and doc is not None
            and doc.status != FAILED
            and doc.content_checksum == checksum
            and self._vectors.count_post(post_id) == doc.chunk_count
        ):
            if doc.status != INDEXED:
                doc.status = INDEXED
                self._store.save_index_document(doc)
            return {"postId": post_id, "status": "unchanged", "chunkCount": doc.chunk_count}

        chunks = split_post_content(post.content)
        if not chunks:
            fallback = (post.excerpt or post.title).strip()
            chunks = [fallback] if fallback else []

        vectors: list[list[float]] = []
        if chunks:
            provider = self._provider_factory(settings)
            inputs = [build_embedding_input(post.title, post.excerpt, c) for c in chunks]
            t0 = time.perf_counter()
            try:
                vectors = await provider.embed(inputs)
                if len(vectors) != len(chunks):
                    raise UpstreamProviderError(
                        f"expected {len(chunks)} embeddings, got {len(vectors)}"
                    )
            except Exception as e:
                self._record_failure(post_id, doc, str(e))
                raise
            logger.debug("Embedded post %s: %d chunks (%.2fs)", post_id, len(chunks), time.perf_counter() - t0)

        try:
            if vectors and self._vectors.ensure_dims(len(vectors[0])):
                # Every stored vector was dropped with the old table
                self._store.clear_index_documents()
            self._vectors.replace_post_chunks(post_id, vectors, chunks)
        except Exception as e:
            self._record_failure(post_id, None, str(e))
            raise

        now = utc_now_iso()
        self._store.save_index_document(
            IndexDocument(
                post_id=post_id,
                status=INDEXED,
                content_checksum=checksum,
                chunk_count=len(chunks),
                indexed_at=now,
            )
        )
        logger.info("Indexed post %s (%d chunks)", post_id, len(chunks))
        return {"postId": post_id, "status": "indexed", "chunkCount": len(chunks)}

    def _record_failure(self, post_id: str, doc: IndexDocument | None, error: str) -> None:
        self._store.save_index_document(
            IndexDocument(
                post_id=post_id,
                status=FAILED,
                content_checksum=doc.content_checksum if doc else None,
                chunk_count=self._vectors.count_post(post_id),
                error=error[:2000],
                indexed_at=doc.indexed_at if doc else None,
            )
        )

    def delete_post_vector_index(self, post_id: str) -> dict:
        """Remove a post's chunks and bookkeeping. A post with nothing indexed is a no-op."""
        removed_chunks = self._vectors.delete_post(post_id)
        removed_doc = self._store.delete_index_document(post_id)
        if removed_chunks:
            logger.info("Deleted %d chunks of post %s", removed_chunks, post_id)
        return {"postId": post_id, "deleted": bool(removed_chunks or removed_doc)}

    def mark_post_queued(self, post_id: str) -> None:
        self._store.mark_index_document_queued(post_id)

    # ── Reads ──

    def get_readiness(self) -> dict:
        stats = self._store.index_document_stats()
        chunk_total = self._vectors.count()
        return {
            "ready": stats["indexedDocuments"] > 0 and chunk_total > 0,
            "indexedDocuments": stats["indexedDocuments"],
            "chunkTotal": chunk_total,
        }

    async def search_chunks_by_query(self, query: str, top_k: int) -> list[ChunkHit]:
        """Nearest chunks to ``query``, best first. Blank queries return nothing."""
        query = query.strip()
        if not query:
            return []
        if not self.get_readiness()["ready"]:
            raise VectorIndexNotReadyError()

        provider = self._provider_factory(self._settings())
        [query_vector] = await provider.embed([query])
        if len(query_vector) != self._vectors.dims:
            raise VectorIndexNotReadyError(
                "Embedding dimensions changed, please rebuild the vector index"
            )
        return self._vectors.search(query_vector, limit=max(top_k, 1))

    def get_post_chunks(self, post_id: str) -> list[dict]:
        return self._vectors.get_post_chunks(post_id)

    def list_indexed_post_ids(self) -> list[str]:
        return self._vectors.list_post_ids()

    def get_stats(self) -> dict:
        stats = self._store.index_document_stats()
        return {
            "documentTotal": stats["documentTotal"],
            "indexedDocuments": stats["indexedDocuments"],
            "failedDocuments": stats["failedDocuments"],
            "queuedDocuments": stats["queuedDocuments"],
            "chunkTotal": self._vectors.count(),
            "lastIndexedAt": stats["lastIndexedAt"],
        }

"""Query -> ranked, post-deduplicated, visibility-safe passages."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime

from papergrid.indexer.vector_index import VectorIndex
from papergrid.storage.sqlite_store import PUBLISHED, SqliteStore

logger = logging.getLogger(__name__)

CANDIDATE_MULTIPLIER = 6
SNIPPET_CHARS = 220

_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class QaCitation:
    post_id: str
    title: str
    slug: str
    url: str
    snippet: str
    score: float

    def to_dict(self) -> dict:
        return {
            "postId": self.post_id,
            "title": self.title,
            "slug": self.slug,
            "url": self.url,
            "snippet": self.snippet,
            "score": self.score,
        }


@dataclass
class RetrievedChunk:
    post_id: str
    slug: str
    title: str
    excerpt: str | None
    snippet: str
    score: float
    published_at: str | None
    is_protected: bool
    url: str

    def to_citation(self) -> QaCitation:
        return QaCitation(
            post_id=self.post_id,
            title=self.title,
            slug=self.slug,
            url=self.url,
            snippet=self.snippet,
            score=self.score,
        )


def build_snippet(content: str) -> str:
    normalized = _WHITESPACE.sub(" ", content).strip()
    if len(normalized) <= SNIPPET_CHARS:
        return normalized
    return normalized[:SNIPPET_CHARS] + "..."


def _timestamp(value: str | None) -> float:
    if not value:
        return 0.0
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return 0.0


class Retriever:
    def __init__(self, index: VectorIndex, store: SqliteStore) -> None:
        self._index = index
        self._store = store

    async def retrieve_relevant_post_chunks(
        self,
        query: str,
        top_k: int,
        min_score: float,
        include_protected: bool = False,
    ) -> list[RetrievedChunk]:
        """Best chunk per visible post, at least ``min_score``, best first.

        Over-fetches from the index since filtering and deduplication by post
        discard most candidates.
        """
        query = query.strip()
        if not query or top_k < 1:
            return []

        candidates = max(top_k * CANDIDATE_MULTIPLIER, top_k)
        hits = await self._index.search_chunks_by_query(query, top_k=candidates)
        if not hits:
            return []

        posts = self._store.get_posts_by_ids([h.post_id for h in hits])
        best: dict[str, RetrievedChunk] = {}
        for hit in hits:
            post = posts.get(hit.post_id)
            if post is None or post.status != PUBLISHED:
                continue
            if post.is_protected and not include_protected:
                continue
            if hit.score < min_score:
                continue
            existing = best.get(post.id)
            if existing is not None and existing.score >= hit.score:
                continue
            best[post.id] = RetrievedChunk(
                post_id=post.id,
                slug=post.slug,
                title=post.title,
                excerpt=post.excerpt,
                snippet=build_snippet(hit.content),
                score=hit.score,
                published_at=post.published_at,
                is_protected=post.is_protected,
                url=f"/posts/{post.slug}",
            )

        ranked = sorted(
            best.values(),
            key=lambda c: (-c.score, -_timestamp(c.published_at)),
        )
        logger.debug("Retrieved %d/%d posts for %r", len(ranked[:top_k]), len(hits), query[:80])
        return ranked[:top_k]

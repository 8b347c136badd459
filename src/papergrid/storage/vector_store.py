"""Vector storage using LanceDB for semantic search over post chunks."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import lancedb
import pyarrow as pa

logger = logging.getLogger(__name__)


@dataclass
class ChunkHit:
    chunk_id: str
    post_id: str
    chunk_index: int
    content: str
    distance: float
    score: float

    def to_dict(self) -> dict:
        return {
            "chunkId": self.chunk_id,
            "postId": self.post_id,
            "chunkIndex": self.chunk_index,
            "content": self.content,
            "distance": self.distance,
            "score": self.score,
        }


def make_chunk_id(post_id: str, chunk_index: int) -> str:
    return f"{post_id}:{chunk_index}"


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class VectorStore:
    """LanceDB vector store for post chunk embeddings.

    The vector column has a fixed size. When the embedding dimension changes,
    the table is dropped and recreated (see ``ensure_dims``).
    """

    TABLE_NAME = "post_chunks"

    def __init__(self, db_path: Path, dims: int = 1536) -> None:
        self._db_path = db_path
        self._dims = dims
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = lancedb.connect(str(db_path))
        self._table: lancedb.table.Table | None = None

    @property
    def dims(self) -> int:
        return self._dims

    def _schema(self) -> pa.Schema:
        return pa.schema(
            [
                pa.field("vector", pa.list_(pa.float32(), self._dims)),
                pa.field("chunk_id", pa.utf8()),
                pa.field("post_id", pa.utf8()),
                pa.field("chunk_index", pa.int32()),
                pa.field("content", pa.utf8()),
            ]
        )

    def init_table(self) -> None:
        """Create the chunks table if it doesn't exist, or open it.

        An existing table keeps its own vector size.
        """
        existing = self._db.list_tables().tables
        if self.TABLE_NAME in existing:
            self._table = self._db.open_table(self.TABLE_NAME)
            self._dims = self._table.schema.field("vector").type.list_size
        else:
            self._table = self._db.create_table(self.TABLE_NAME, schema=self._schema())

    def _get_table(self) -> lancedb.table.Table:
        if self._table is None:
            self.init_table()
        return self._table  # type: ignore[return-value]

    def ensure_dims(self, dims: int) -> bool:
        """Recreate the table with ``dims``-sized vectors if the size differs.

        Returns True when the table was reset (all chunks dropped).
        """
        self._get_table()
        if dims == self._dims:
            return False
        logger.warning("Embedding dimension changed %d -> %d, resetting vector table", self._dims, dims)
        self._db.drop_table(self.TABLE_NAME)
        self._dims = dims
        self._table = self._db.create_table(self.TABLE_NAME, schema=self._schema())
        return True

    def replace_post_chunks(
        self, post_id: str, vectors: list[list[float]], contents: list[str]
    ) -> None:
        """Swap the whole chunk set of a post for a new one."""
        table = self._get_table()
        table.delete(f"post_id = {_quote(post_id)}")
        if not vectors:
            return
        rows = [
            {
                "vector": vec,
                "chunk_id": make_chunk_id(post_id, i),
                "post_id": post_id,
                "chunk_index": i,
                "content": content,
            }
            for i, (vec, content) in enumerate(zip(vectors, contents))
        ]
        table.add(rows)

    def delete_post(self, post_id: str) -> int:
        """Remove every chunk of a post. Returns the number of chunks removed."""
        existing = self.count_post(post_id)
        if existing:
            self._get_table().delete(f"post_id = {_quote(post_id)}")
        return existing

    def search(self, query_vector: list[float], limit: int = 10) -> list[ChunkHit]:
        """Search for similar chunks by cosine distance.

        Returns results sorted by relevance; score is cosine similarity clamped to [0, 1].
        """
        table = self._get_table()
        if table.count_rows() == 0:
            return []
        results = (
            table.search(query_vector)
            .distance_type("cosine")
            .limit(limit)
            .to_list()
        )
        hits = []
        for r in results:
            distance = float(r["_distance"])
            hits.append(
                ChunkHit(
                    chunk_id=r["chunk_id"],
                    post_id=r["post_id"],
                    chunk_index=int(r["chunk_index"]),
                    content=r["content"],
                    distance=distance,
                    score=min(max(1.0 - distance, 0.0), 1.0),
                )
            )
        return hits

    def _select(self, columns: list[str], where: str | None = None) -> pa.Table:
        """Read only ``columns`` of the matching rows; vectors stay on disk."""
        table = self._get_table()
        total = table.count_rows(where)
        if not total:
            return pa.table({c: [] for c in columns})
        query = table.search().select(columns).limit(total)
        if where:
            query = query.where(where)
        return query.to_arrow()

    def get_post_chunks(self, post_id: str) -> list[dict]:
        """Chunks of one post ordered by chunk index (without vectors)."""
        rows = self._select(
            ["chunk_id", "post_id", "chunk_index", "content"], f"post_id = {_quote(post_id)}"
        )
        out = [
            {
                "chunkId": r["chunk_id"],
                "postId": r["post_id"],
                "chunkIndex": r["chunk_index"],
                "content": r["content"],
            }
            for r in rows.to_pylist()
        ]
        return sorted(out, key=lambda c: c["chunkIndex"])

    def count_post(self, post_id: str) -> int:
        return self._get_table().count_rows(f"post_id = {_quote(post_id)}")

    def list_post_ids(self) -> list[str]:
        rows = self._select(["post_id"])
        return sorted(set(rows.column("post_id").to_pylist()))

    def count(self) -> int:
        """Return the number of rows in the table."""
        return self._get_table().count_rows()

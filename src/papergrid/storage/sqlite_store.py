"""SQLite storage for posts, taxonomies, settings, and vector index bookkeeping."""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

PUBLISHED = "PUBLISHED"
DRAFT = "DRAFT"
ARCHIVED = "ARCHIVED"
POST_STATUSES = (PUBLISHED, DRAFT, ARCHIVED)

# Index document statuses
INDEXED = "indexed"
FAILED = "failed"
QUEUED = "queued"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


@dataclass
class Post:
    id: str
    title: str
    slug: str
    content: str
    excerpt: str | None = None
    status: str = PUBLISHED
    locale: str = "en"
    is_protected: bool = False
    published_at: str | None = None
    updated_at: str | None = None
    category_id: str | None = None


@dataclass
class Category:
    id: str
    name: str
    slug: str
    description: str | None = None


@dataclass
class Tag:
    id: str
    name: str
    slug: str


@dataclass
class IndexDocument:
    """Per-post bookkeeping row kept next to the vector table."""

    post_id: str
    status: str
    content_checksum: str | None = None
    chunk_count: int = 0
    error: str | None = None
    indexed_at: str | None = None
    updated_at: str | None = None


@dataclass
class PostFilters:
    status: str = "ALL"
    locale: str | None = None
    category_slug: str | None = None
    tag_slug: str | None = None
    search: str | None = None
    include_protected: bool = False


def _post_from_row(row: sqlite3.Row) -> Post:
    return Post(
        id=row["id"],
        title=row["title"],
        slug=row["slug"],
        content=row["content"],
        excerpt=row["excerpt"],
        status=row["status"],
        locale=row["locale"],
        is_protected=bool(row["is_protected"]),
        published_at=row["published_at"],
        updated_at=row["updated_at"],
        category_id=row["category_id"],
    )


def _document_from_row(row: sqlite3.Row) -> IndexDocument:
    return IndexDocument(
        post_id=row["post_id"],
        status=row["status"],
        content_checksum=row["content_checksum"],
        chunk_count=row["chunk_count"],
        error=row["error"],
        indexed_at=row["indexed_at"],
        updated_at=row["updated_at"],
    )


def _filters_clause(filters: PostFilters) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if filters.status and filters.status != "ALL":
        clauses.append("p.status = ?")
        params.append(filters.status)
    if filters.locale:
        clauses.append("p.locale = ?")
        params.append(filters.locale)
    if filters.category_slug:
        clauses.append("p.category_id IN (SELECT id FROM categories WHERE slug = ?)")
        params.append(filters.category_slug)
    if filters.tag_slug:
        clauses.append(
            "EXISTS (SELECT 1 FROM post_tags pt JOIN tags t ON t.id = pt.tag_id"
            " WHERE pt.post_id = p.id AND t.slug = ?)"
        )
        params.append(filters.tag_slug)
    if filters.search:
        clauses.append(
            "(instr(lower(p.title), lower(?)) > 0"
            " OR instr(lower(coalesce(p.excerpt, '')), lower(?)) > 0)"
        )
        params.extend([filters.search, filters.search])
    if not filters.include_protected:
        clauses.append("p.is_protected = 0")
    where = " WHERE " + " AND ".join(clauses) if clauses else ""
    return where, params


class SqliteStore:
    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        # Shared between the event loop thread and TestClient/uvicorn worker threads
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")

    def init_db(self) -> None:
        """Create all tables and indexes."""
        cur = self._conn.cursor()
        cur.executescript(
            """
            CREATE TABLE IF NOT EXISTS categories (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                slug TEXT NOT NULL UNIQUE,
                description TEXT
            );

            CREATE TABLE IF NOT EXISTS tags (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                slug TEXT NOT NULL UNIQUE
            );

            CREATE TABLE IF NOT EXISTS posts (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                slug TEXT NOT NULL UNIQUE,
                content TEXT NOT NULL DEFAULT '',
                excerpt TEXT,
                status TEXT NOT NULL DEFAULT 'DRAFT',
                locale TEXT NOT NULL DEFAULT 'en',
                is_protected INTEGER NOT NULL DEFAULT 0,
                published_at TEXT,
                updated_at TEXT NOT NULL,
                category_id TEXT,
                FOREIGN KEY (category_id) REFERENCES categories(id) ON DELETE SET NULL
            );
            CREATE INDEX IF NOT EXISTS idx_posts_status ON posts(status);
            CREATE INDEX IF NOT EXISTS idx_posts_updated ON posts(updated_at);

            CREATE TABLE IF NOT EXISTS post_tags (
                post_id TEXT NOT NULL,
                tag_id TEXT NOT NULL,
                PRIMARY KEY (post_id, tag_id),
                FOREIGN KEY (post_id) REFERENCES posts(id) ON DELETE CASCADE,
                FOREIGN KEY (tag_id) REFERENCES tags(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS index_documents (
                post_id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                content_checksum TEXT,
                chunk_count INTEGER NOT NULL DEFAULT 0,
                error TEXT,
                indexed_at TEXT,
                updated_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_index_documents_status ON index_documents(status);
            """
        )
        self._conn.commit()

    # ── Content writes (CMS side) ──

    def insert_category(self, category: Category) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO categories (id, name, slug, description) VALUES (?, ?, ?, ?)",
            (category.id, category.name, category.slug, category.description),
        )
        self._conn.commit()

    def insert_tag(self, tag: Tag) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO tags (id, name, slug) VALUES (?, ?, ?)",
            (tag.id, tag.name, tag.slug),
        )
        self._conn.commit()

    def upsert_post(self, post: Post) -> None:
        """Insert or update a post. Missing updated_at is stamped with now."""
        if post.updated_at is None:
            post.updated_at = utc_now_iso()
        self._conn.execute(
            """INSERT INTO posts
               (id, title, slug, content, excerpt, status, locale, is_protected,
                published_at, updated_at, category_id)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                 title = excluded.title, slug = excluded.slug, content = excluded.content,
                 excerpt = excluded.excerpt, status = excluded.status,
                 locale = excluded.locale, is_protected = excluded.is_protected,
                 published_at = excluded.published_at, updated_at = excluded.updated_at,
                 category_id = excluded.category_id""",
            (
                post.id, post.title, post.slug, post.content, post.excerpt, post.status,
                post.locale, int(post.is_protected), post.published_at, post.updated_at,
                post.category_id,
            ),
        )
        self._conn.commit()

    def delete_post(self, post_id: str) -> None:
        self._conn.execute("DELETE FROM posts WHERE id = ?", (post_id,))
        self._conn.commit()

    def set_post_tags(self, post_id: str, tag_ids: list[str]) -> None:
        self._conn.execute("DELETE FROM post_tags WHERE post_id = ?", (post_id,))
        self._conn.executemany(
            "INSERT INTO post_tags (post_id, tag_id) VALUES (?, ?)",
            [(post_id, tid) for tid in tag_ids],
        )
        self._conn.commit()

    # ── Post reads ──

    def get_post(self, post_id: str) -> Post | None:
        cur = self._conn.execute("SELECT * FROM posts WHERE id = ?", (post_id,))
        row = cur.fetchone()
        return _post_from_row(row) if row else None

    def get_post_by_slug(self, slug: str) -> Post | None:
        cur = self._conn.execute("SELECT * FROM posts WHERE slug = ?", (slug,))
        row = cur.fetchone()
        return _post_from_row(row) if row else None

    def get_posts_by_ids(self, post_ids: list[str]) -> dict[str, Post]:
        """Fetch many posts at once, keyed by id. Unknown ids are absent."""
        ids = list(dict.fromkeys(post_ids))
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        cur = self._conn.execute(
            f"SELECT * FROM posts WHERE id IN ({placeholders})", ids  # noqa: S608
        )
        return {row["id"]: _post_from_row(row) for row in cur.fetchall()}

    def list_published_post_ids(self) -> list[str]:
        cur = self._conn.execute(
            "SELECT id FROM posts WHERE status = ? ORDER BY id", (PUBLISHED,)
        )
        return [row[0] for row in cur.fetchall()]

    def count_published_posts(self) -> int:
        cur = self._conn.execute("SELECT count(*) FROM posts WHERE status = ?", (PUBLISHED,))
        return cur.fetchone()[0]

    def count_posts(self, filters: PostFilters) -> int:
        where, params = _filters_clause(filters)
        cur = self._conn.execute(f"SELECT count(*) FROM posts p{where}", params)  # noqa: S608
        return cur.fetchone()[0]

    def count_posts_by_status(self, filters: PostFilters) -> dict[str, int]:
        """Counts per post status under ``filters``; every status is present."""
        where, params = _filters_clause(filters)
        cur = self._conn.execute(
            f"SELECT p.status, count(*) FROM posts p{where} GROUP BY p.status",  # noqa: S608
            params,
        )
        counts = {status: 0 for status in POST_STATUSES}
        for status, n in cur.fetchall():
            counts[status] = n
        return counts

    def list_posts(self, filters: PostFilters, limit: int, offset: int) -> list[Post]:
        """Posts under ``filters``, most recently updated first."""
        where, params = _filters_clause(filters)
        cur = self._conn.execute(
            f"SELECT p.* FROM posts p{where} ORDER BY p.updated_at DESC, p.id"  # noqa: S608
            " LIMIT ? OFFSET ?",
            [*params, limit, offset],
        )
        return [_post_from_row(row) for row in cur.fetchall()]

    def get_category(self, category_id: str) -> Category | None:
        cur = self._conn.execute("SELECT * FROM categories WHERE id = ?", (category_id,))
        row = cur.fetchone()
        if not row:
            return None
        return Category(
            id=row["id"], name=row["name"], slug=row["slug"], description=row["description"]
        )

    def get_post_tags(self, post_id: str) -> list[Tag]:
        cur = self._conn.execute(
            """SELECT t.id, t.name, t.slug FROM tags t
               JOIN post_tags pt ON pt.tag_id = t.id
               WHERE pt.post_id = ? ORDER BY t.name""",
            (post_id,),
        )
        return [Tag(id=row["id"], name=row["name"], slug=row["slug"]) for row in cur.fetchall()]

    # ── Taxonomies ──

    def list_categories(
        self, query: str = "", limit: int = 20, include_post_count: bool = True
    ) -> list[dict]:
        """Categories matching ``query`` in name, slug, or description, by name."""
        sql = (
            "SELECT c.id, c.name, c.slug, c.description,"
            " (SELECT count(*) FROM posts p WHERE p.category_id = c.id) AS post_count"
            " FROM categories c"
        )
        params: list[Any] = []
        if query:
            sql += (
                " WHERE instr(lower(c.name), lower(?)) > 0"
                " OR instr(lower(c.slug), lower(?)) > 0"
                " OR instr(lower(coalesce(c.description, '')), lower(?)) > 0"
            )
            params.extend([query, query, query])
        sql += " ORDER BY c.name LIMIT ?"
        params.append(limit)
        items = []
        for row in self._conn.execute(sql, params).fetchall():
            item = {
                "id": row["id"],
                "name": row["name"],
                "slug": row["slug"],
                "description": row["description"],
            }
            if include_post_count:
                item["postCount"] = row["post_count"]
            items.append(item)
        return items

    def list_tags(
        self, query: str = "", limit: int = 20, include_post_count: bool = True
    ) -> list[dict]:
        """Tags matching ``query`` in name or slug, by name."""
        sql = (
            "SELECT t.id, t.name, t.slug,"
            " (SELECT count(*) FROM post_tags pt WHERE pt.tag_id = t.id) AS post_count"
            " FROM tags t"
        )
        params: list[Any] = []
        if query:
            sql += " WHERE instr(lower(t.name), lower(?)) > 0 OR instr(lower(t.slug), lower(?)) > 0"
            params.extend([query, query])
        sql += " ORDER BY t.name LIMIT ?"
        params.append(limit)
        items = []
        for row in self._conn.execute(sql, params).fetchall():
            item = {"id": row["id"], "name": row["name"], "slug": row["slug"]}
            if include_post_count:
                item["postCount"] = row["post_count"]
            items.append(item)
        return items

    # ── Settings ──
    # Values are stored as a JSON envelope {"value": ...}.

    def get_setting(self, key: str, default: Any = None) -> Any:
        cur = self._conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
        row = cur.fetchone()
        if not row:
            return default
        try:
            envelope = json.loads(row[0])
        except json.JSONDecodeError:
            return default
        if not isinstance(envelope, dict) or "value" not in envelope:
            return default
        return envelope["value"]

    def set_setting(self, key: str, value: Any) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO settings (key, value, updated_at) VALUES (?, ?, ?)",
            (key, json.dumps({"value": value}, ensure_ascii=False), utc_now_iso()),
        )
        self._conn.commit()

    def delete_setting(self, key: str) -> None:
        self._conn.execute("DELETE FROM settings WHERE key = ?", (key,))
        self._conn.commit()

    # ── Index documents ──

    def get_index_document(self, post_id: str) -> IndexDocument | None:
        cur = self._conn.execute("SELECT * FROM index_documents WHERE post_id = ?", (post_id,))
        row = cur.fetchone()
        return _document_from_row(row) if row else None

    def save_index_document(self, doc: IndexDocument) -> None:
        doc.updated_at = utc_now_iso()
        self._conn.execute(
            """INSERT OR REPLACE INTO index_documents
               (post_id, status, content_checksum, chunk_count, error, indexed_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                doc.post_id, doc.status, doc.content_checksum, doc.chunk_count,
                doc.error, doc.indexed_at, doc.updated_at,
            ),
        )
        self._conn.commit()

    def mark_index_document_queued(self, post_id: str) -> None:
        """Flag a post as waiting for the index worker, keeping its checksum."""
        now = utc_now_iso()
        self._conn.execute(
            """INSERT INTO index_documents (post_id, status, chunk_count, updated_at)
               VALUES (?, ?, 0, ?)
               ON CONFLICT(post_id) DO UPDATE SET
                 status = excluded.status, error = NULL, updated_at = excluded.updated_at""",
            (post_id, QUEUED, now),
        )
        self._conn.commit()

    def delete_index_document(self, post_id: str) -> bool:
        cur = self._conn.execute("DELETE FROM index_documents WHERE post_id = ?", (post_id,))
        self._conn.commit()
        return cur.rowcount > 0

    def clear_index_documents(self) -> None:
        self._conn.execute("DELETE FROM index_documents")
        self._conn.commit()

    def list_index_document_ids(self) -> list[str]:
        cur = self._conn.execute("SELECT post_id FROM index_documents ORDER BY post_id")
        return [row[0] for row in cur.fetchall()]

    def index_document_stats(self) -> dict:
        cur = self._conn.execute(
            """SELECT count(*) AS total,
                      coalesce(sum(status = 'indexed'), 0) AS indexed,
                      coalesce(sum(status = 'failed'), 0) AS failed,
                      coalesce(sum(status = 'queued'), 0) AS queued,
                      max(indexed_at) AS last_indexed_at
               FROM index_documents"""
        )
        row = cur.fetchone()
        return {
            "documentTotal": row["total"],
            "indexedDocuments": row["indexed"],
            "failedDocuments": row["failed"],
            "queuedDocuments": row["queued"],
            "lastIndexedAt": row["last_indexed_at"],
        }

    def close(self) -> None:
        self._conn.close()

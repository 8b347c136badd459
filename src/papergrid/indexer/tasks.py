"""Durable single-worker queue for index rebuild/upsert/delete tasks."""

from __future__ import annotations

import asyncio
import copy
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Literal, Protocol

from papergrid import config
from papergrid.errors import IndexQueueFullError
from papergrid.indexer.vector_index import VectorIndex
from papergrid.storage.sqlite_store import SqliteStore, utc_now_iso

logger = logging.getLogger(__name__)

TASK_STATE_SETTING_KEY = "ai.index.task.state"

TaskType = Literal["rebuild", "post-upsert", "post-delete"]
TaskStatus = Literal["pending", "running", "succeeded", "failed"]

TASK_TYPES = ("rebuild", "post-upsert", "post-delete")
TASK_STATUSES = ("pending", "running", "succeeded", "failed")
TASK_SOURCES = ("manual",)


def _clean_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


@dataclass
class IndexTask:
    id: str
    type: TaskType
    status: TaskStatus = "pending"
    source: str = "manual"
    post_id: str | None = None
    created_at: str = ""
    started_at: str | None = None
    finished_at: str | None = None
    requested_by: str | None = None
    error: str | None = None
    result: Any = None

    @classmethod
    def create(
        cls, type: TaskType, post_id: str | None = None, requested_by: str | None = None
    ) -> IndexTask:
        return cls(
            id=uuid.uuid4().hex,
            type=type,
            post_id=post_id,
            created_at=utc_now_iso(),
            requested_by=requested_by or None,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "status": self.status,
            "source": self.source,
            "postId": self.post_id,
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "requestedBy": self.requested_by,
            "error": self.error,
            "result": copy.deepcopy(self.result),
        }

    @classmethod
    def from_dict(cls, raw: Any) -> IndexTask | None:
        """Rebuild a task from a snapshot record; malformed records give None."""
        if not isinstance(raw, dict):
            return None
        task_id = _clean_str(raw.get("id"))
        if (
            task_id is None
            or raw.get("type") not in TASK_TYPES
            or raw.get("status") not in TASK_STATUSES
            or raw.get("source") not in TASK_SOURCES
        ):
            return None
        return cls(
            id=task_id,
            type=raw["type"],
            status=raw["status"],
            source=raw["source"],
            post_id=_clean_str(raw.get("postId")),
            created_at=_clean_str(raw.get("createdAt")) or utc_now_iso(),
            started_at=_clean_str(raw.get("startedAt")),
            finished_at=_clean_str(raw.get("finishedAt")),
            requested_by=_clean_str(raw.get("requestedBy")),
            error=_clean_str(raw.get("error")),
            result=raw.get("result"),
        )


# ── Persistence ──


class TaskStatePersistence(Protocol):
    def load(self) -> dict | None: ...

    def save(self, snapshot: dict) -> None: ...


class SettingsTaskStatePersistence:
    """Snapshot stored as one JSON value in the settings table."""

    def __init__(self, store: SqliteStore, key: str = TASK_STATE_SETTING_KEY) -> None:
        self._store = store
        self._key = key

    def load(self) -> dict | None:
        value = self._store.get_setting(self._key)
        return value if isinstance(value, dict) else None

    def save(self, snapshot: dict) -> None:
        self._store.set_setting(self._key, snapshot)


class MemoryTaskStatePersistence:
    def __init__(self, snapshot: dict | None = None) -> None:
        self.snapshot = copy.deepcopy(snapshot)
        self.saves = 0

    def load(self) -> dict | None:
        return copy.deepcopy(self.snapshot)

    def save(self, snapshot: dict) -> None:
        self.snapshot = copy.deepcopy(snapshot)
        self.saves += 1


# ── Queue ──


class IndexTaskQueue:
    """FIFO of index tasks drained by exactly one worker coroutine.

    Construct once per process, ``await init()`` inside the event loop, and
    ``await shutdown()`` on exit. Enqueue methods must be called from the
    event loop. State is snapshotted after every transition; a task that was
    running when the process died is put back at the head of the queue on
    the next ``init()``, so tasks run at least once.
    """

    def __init__(
        self,
        index: VectorIndex,
        store: SqliteStore,
        persistence: TaskStatePersistence,
        history_limit: int = config.INDEX_HISTORY_LIMIT,
        max_pending: int = config.INDEX_MAX_PENDING_TASKS,
    ) -> None:
        self._index = index
        self._store = store
        self._persistence = persistence
        self._history_limit = history_limit
        self._max_pending = max_pending

        self._queue: list[IndexTask] = []
        self._history: list[IndexTask] = []
        self._current: IndexTask | None = None
        self._running = False
        self._worker: asyncio.Task | None = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._initialized = False
        self._stopping = False

    # ── Lifecycle ──

    async def init(self) -> None:
        """Load the persisted snapshot and resume pending work."""
        if self._initialized:
            return
        self._initialized = True
        self._stopping = False
        snapshot = self._load_snapshot()
        self._restore(snapshot or {})
        self._persist()
        logger.info(
            "Index task queue ready: %d pending, %d in history", len(self._queue), len(self._history)
        )
        if self._queue:
            self._ensure_worker()

    async def shutdown(self) -> None:
        """Stop the worker. An interrupted task stays recorded and reruns on next init."""
        self._stopping = True
        worker = self._worker
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        self._initialized = False
        logger.info("Index task queue stopped (%d pending)", len(self._queue))

    def _load_snapshot(self) -> dict | None:
        try:
            return self._persistence.load()
        except Exception:
            logger.exception("Failed to load index task snapshot, starting empty")
            return None

    def _restore(self, snapshot: dict) -> None:
        raw_queue = snapshot.get("queue")
        raw_history = snapshot.get("history")
        queue = [t for t in map(IndexTask.from_dict, raw_queue if isinstance(raw_queue, list) else []) if t]
        history = [t for t in map(IndexTask.from_dict, raw_history if isinstance(raw_history, list) else []) if t]
        for task in queue:
            task.status = "pending"

        current = IndexTask.from_dict(snapshot.get("current"))
        if current is not None:
            logger.warning("Re-queueing interrupted index task %s (%s)", current.id, current.type)
            current.status = "pending"
            current.started_at = None
            current.finished_at = None
            current.error = None
            current.result = None
            queue.insert(0, current)

        self._queue = queue
        self._history = history[: self._history_limit]
        self._current = None
        self._running = False

    def snapshot(self) -> dict:
        return {
            "queue": [t.to_dict() for t in self._queue],
            "history": [t.to_dict() for t in self._history],
            "current": self._current.to_dict() if self._current else None,
            "running": self._running,
        }

    def _persist(self) -> None:
        try:
            self._persistence.save(self.snapshot())
        except Exception:
            # best effort
            logger.exception("Failed to persist index task snapshot")

    # ── Enqueue ──

    def _assert_capacity(self) -> None:
        if len(self._queue) >= self._max_pending:
            raise IndexQueueFullError("Index task queue is full, please retry later")

    def _remove_pending_post_tasks(self, post_id: str) -> None:
        before = len(self._queue)
        self._queue = [t for t in self._queue if t.post_id != post_id]
        if len(self._queue) != before:
            logger.debug("Superseded %d pending task(s) for post %s", before - len(self._queue), post_id)

    def _push(self, task: IndexTask) -> IndexTask:
        self._queue.append(task)
        self._persist()
        self._ensure_worker()
        logger.info("Enqueued index task %s (%s%s)", task.id, task.type,
                    f" post={task.post_id}" if task.post_id else "")
        return task

    def enqueue_rebuild(self, requested_by: str | None = None) -> IndexTask:
        """Queue a full rebuild, or return the rebuild already running or pending."""
        if self._current is not None and self._current.type == "rebuild":
            return self._current
        for task in self._queue:
            if task.type == "rebuild" and task.status == "pending":
                return task
        self._assert_capacity()
        return self._push(IndexTask.create("rebuild", requested_by=requested_by))

    def enqueue_post_upsert(self, post_id: str, requested_by: str | None = None) -> IndexTask:
        """Queue a reindex of one post, replacing any pending task for that post."""
        post_id = _require_post_id(post_id)
        self._remove_pending_post_tasks(post_id)
        self._index.mark_post_queued(post_id)
        self._assert_capacity()
        return self._push(IndexTask.create("post-upsert", post_id=post_id, requested_by=requested_by))

    def enqueue_post_delete(self, post_id: str, requested_by: str | None = None) -> IndexTask:
        """Queue removal of one post's chunks, replacing any pending task for that post."""
        post_id = _require_post_id(post_id)
        self._remove_pending_post_tasks(post_id)
        self._assert_capacity()
        return self._push(IndexTask.create("post-delete", post_id=post_id, requested_by=requested_by))

    # ── Worker ──

    def _ensure_worker(self) -> None:
        if self._running or self._stopping:
            return
        self._running = True
        self._idle.clear()
        self._worker = asyncio.get_running_loop().create_task(self._worker_main())

    async def _execute(self, task: IndexTask) -> Any:
        if task.type == "rebuild":
            return await self._index.rebuild_all_post_index()
        if not task.post_id:
            raise ValueError("task is missing postId")
        if task.type == "post-upsert":
            return await self._index.index_post_by_id(task.post_id)
        return self._index.delete_post_vector_index(task.post_id)

    async def _drain(self) -> None:
        while self._queue:
            task = self._queue.pop(0)
            task.status = "running"
            task.started_at = utc_now_iso()
            task.error = None
            self._current = task
            self._persist()

            t0 = time.perf_counter()
            try:
                task.result = await self._execute(task)
                task.status = "succeeded"
            except asyncio.CancelledError:
                self._persist()
                raise
            except Exception as e:
                logger.exception("Index task %s (%s) failed", task.id, task.type)
                task.status = "failed"
                task.error = str(e) or type(e).__name__

            task.finished_at = utc_now_iso()
            self._current = None
            self._history.insert(0, task)
            del self._history[self._history_limit:]
            self._persist()
            logger.info("Index task %s %s (%.2fs)", task.id, task.status, time.perf_counter() - t0)

    async def _worker_main(self) -> None:
        try:
            await self._drain()
        finally:
            self._running = False
            self._worker = None
            if not self._stopping:
                self._persist()
                if self._queue:
                    self._ensure_worker()
            if not self._running:
                self._idle.set()

    async def join(self) -> None:
        """Wait until the queue is drained and the worker is idle."""
        await self._idle.wait()

    # ── Read model ──

    def get_recent_tasks(self, limit: int = 20) -> list[dict]:
        limit = max(1, min(100, int(limit)))
        return [t.to_dict() for t in self._history[:limit]]

    def get_status(self) -> dict:
        return {
            "running": self._running,
            "queueSize": len(self._queue),
            "totalPublishedPosts": self._store.count_published_posts(),
            "vectorStats": self._index.get_stats(),
            "currentTask": self._current.to_dict() if self._current else None,
            "recentTasks": self.get_recent_tasks(20),
        }

    @property
    def pending_tasks(self) -> list[IndexTask]:
        return list(self._queue)


def _require_post_id(post_id: str) -> str:
    post_id = (post_id or "").strip()
    if not post_id:
        raise ValueError("postId is required")
    return post_id

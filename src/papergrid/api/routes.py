"""API router: health, chat streaming, index tasks, models."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from papergrid import config
from papergrid.agent.provider import create_provider
from papergrid.chat.service import AiChatService
from papergrid.chat.sse import encode_sse_event
from papergrid.chat.validation import normalize_chat_request
from papergrid.errors import (
    AiBaseUrlValidationError,
    AiConfigurationError,
    ChatValidationError,
    ClientAbortError,
    IndexQueueFullError,
    UpstreamProviderError,
    to_client_safe_error_message,
)
from papergrid.indexer.tasks import IndexTaskQueue, SettingsTaskStatePersistence
from papergrid.indexer.vector_index import ProviderFactory, VectorIndex
from papergrid.retriever import Retriever
from papergrid.settings import get_ai_runtime_settings
from papergrid.storage.sqlite_store import SqliteStore
from papergrid.storage.vector_store import VectorStore

logger = logging.getLogger(__name__)

router = APIRouter()

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
NO_STORE = {"Cache-Control": "no-store"}


# ── Services ──


@dataclass
class Services:
    store: SqliteStore
    vectors: VectorStore
    index: VectorIndex
    retriever: Retriever
    chat: AiChatService
    tasks: IndexTaskQueue
    provider_factory: ProviderFactory = create_provider


def build_services(
    sqlite_path: Path | None = None,
    lancedb_path: Path | None = None,
    provider_factory: ProviderFactory = create_provider,
) -> Services:
    """Wire stores, index, retriever, chat service and task queue together."""
    store = SqliteStore(sqlite_path or config.SQLITE_PATH)
    store.init_db()
    settings = get_ai_runtime_settings(store)
    vectors = VectorStore(lancedb_path or config.LANCEDB_PATH, dims=settings.embedding_dimensions)
    vectors.init_table()
    index = VectorIndex(store, vectors, provider_factory=provider_factory)
    retriever = Retriever(index, store)
    return Services(
        store=store,
        vectors=vectors,
        index=index,
        retriever=retriever,
        chat=AiChatService(store, retriever, provider_factory=provider_factory),
        tasks=IndexTaskQueue(index, store, SettingsTaskStatePersistence(store)),
        provider_factory=provider_factory,
    )


_services: Services | None = None


def set_services(services: Services | None) -> None:
    global _services
    _services = services


def _get_services() -> Services:
    if _services is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return _services


def _error(status_code: int, message: str, headers: dict | None = None) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code, headers=headers)


# ── Health ──


@router.get("/health")
def health():
    return {"status": "ok"}


# ── Chat ──


@router.post("/ai/chat/stream")
async def chat_stream(request: Request):
    """Stream one chat turn as server-sent events.

    Events: ready, reasoning, token, tool-call, tool-result, done, or a single
    error event. A client disconnect sets the abort signal and ends the stream.
    """
    services = _get_services()
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        body = None
    try:
        qa_input = normalize_chat_request(body)
    except ChatValidationError as e:
        return _error(400, str(e))

    abort = asyncio.Event()

    async def event_generator():
        t0 = time.perf_counter()
        try:
            async with aclosing(services.chat.stream_admin_ai_chat(qa_input, abort)) as events:
                async for event in events:
                    if abort.is_set():
                        return
                    yield encode_sse_event(event.event, event.data)
        except ClientAbortError:
            logger.info("Chat stream aborted by client")
        except Exception as e:
            if abort.is_set():
                return
            if isinstance(e, AiConfigurationError):
                logger.warning("Chat unavailable: %s", e)
            else:
                logger.exception("Chat stream failed after %.2fs", time.perf_counter() - t0)
            yield encode_sse_event("error", {"error": to_client_safe_error_message(e)})
        finally:
            # Starlette cancels the generator when the client disconnects
            abort.set()
            logger.debug("Chat stream closed (%.2fs)", time.perf_counter() - t0)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream; charset=utf-8",
        headers=SSE_HEADERS,
    )


# ── Index tasks ──


class IndexPostRequest(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True
    )

    post_id: str = Field(min_length=1)
    action: Literal["upsert", "delete"] = "upsert"


class IndexRebuildRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    requested_by: str | None = None


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return {}
    return body if isinstance(body, dict) else {}


@router.post("/ai/index/rebuild")
async def index_rebuild(request: Request):
    """Queue a full rebuild; an already queued or running rebuild is returned instead."""
    services = _get_services()
    try:
        req = IndexRebuildRequest.model_validate(await _json_body(request))
        task = services.tasks.enqueue_rebuild(requested_by=req.requested_by)
    except ValidationError as e:
        return _error(400, e.errors()[0]["msg"])
    except IndexQueueFullError as e:
        return _error(429, str(e))
    return JSONResponse({"ok": True, "task": task.to_dict()}, status_code=202)


@router.post("/ai/index/post")
async def index_post(request: Request):
    """Queue an upsert or delete for one post."""
    services = _get_services()
    try:
        req = IndexPostRequest.model_validate(await _json_body(request))
    except ValidationError:
        return _error(400, "postId is required and action must be upsert or delete")

    try:
        if req.action == "delete":
            task = services.tasks.enqueue_post_delete(req.post_id)
        else:
            task = services.tasks.enqueue_post_upsert(req.post_id)
    except IndexQueueFullError as e:
        return _error(429, str(e))
    except ValueError as e:
        return _error(400, str(e))
    return JSONResponse({"ok": True, "task": task.to_dict()}, status_code=202)


@router.get("/ai/index/status")
def index_status():
    services = _get_services()
    try:
        status = services.tasks.get_status()
    except Exception:
        logger.exception("Failed to read index status")
        return _error(500, "Failed to read index status")
    return JSONResponse(status, headers=NO_STORE)


# ── Models ──


@router.get("/ai/models")
async def list_models():
    """List the provider's models, split into chat and embedding models."""
    services = _get_services()
    settings = get_ai_runtime_settings(services.store)
    if not settings.has_api_key:
        return _error(400, "Please configure an API key first")

    t0 = time.perf_counter()
    try:
        provider = services.provider_factory(settings)
        result = await provider.list_models()
    except AiBaseUrlValidationError as e:
        return _error(400, str(e))
    except AiConfigurationError as e:
        return _error(503, str(e))
    except UpstreamProviderError as e:
        logger.warning("Model list failed: %s", e)
        return _error(
            502, "Model service request failed, check the base URL, network and API key"
        )
    except Exception:
        logger.exception("Model list failed")
        return _error(500, "Failed to list models")
    logger.info("Listed %d models (%.2fs)", len(result["models"]), time.perf_counter() - t0)
    return JSONResponse(result, headers=NO_STORE)

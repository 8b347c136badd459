"""Admin chat service: settings checks around one QA graph turn."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing

from papergrid.agent.provider import ChatProvider, create_provider
from papergrid.agent.qa_graph import ChatStreamEvent, QaGraph, QaInput
from papergrid.errors import ClientAbortError
from papergrid.retriever import Retriever
from papergrid.settings import AiRuntimeSettings, assert_ai_ready, get_ai_runtime_settings
from papergrid.storage.sqlite_store import SqliteStore

logger = logging.getLogger(__name__)

ChatProviderFactory = Callable[[AiRuntimeSettings], ChatProvider]


class AiChatService:
    def __init__(
        self,
        store: SqliteStore,
        retriever: Retriever,
        provider_factory: ChatProviderFactory = create_provider,
    ) -> None:
        self._store = store
        self._retriever = retriever
        self._provider_factory = provider_factory

    async def stream_admin_ai_chat(
        self, qa_input: QaInput, abort: asyncio.Event | None = None
    ) -> AsyncIterator[ChatStreamEvent]:
        """Yield ``ready``, the graph's events, and finally ``done``.

        Configuration errors are raised before anything is yielded. A client
        abort ends the stream quietly.
        """
        settings = get_ai_runtime_settings(self._store)
        assert_ai_ready(settings)
        provider = self._provider_factory(settings)
        graph = QaGraph(self._store, self._retriever, provider, settings)
        model = qa_input.model or settings.chat_model

        logger.info("Chat turn: model=%s question=%r", model, qa_input.question[:120])
        try:
            if abort is not None and abort.is_set():
                raise ClientAbortError()
            yield ChatStreamEvent("ready", {"model": model})
            async with aclosing(graph.stream(qa_input, abort)) as events:
                async for event in events:
                    yield event
        except ClientAbortError:
            logger.info("Chat turn aborted by client")

"""Gateway entry point: route caller requests to per-backend orchestrators.

A request is a mapping as received from an HTTP layer:

    {
        "message": "...",                  # required
        "conversation_id": "...",          # optional
        "parent_message_id": "...",        # optional
        "client_to_use": "octoai",         # optional, overrides the default client
        "client_options": {...},           # optional, filtered by the whitelist
    }

The gateway picks the client, filters the per-message client options through
``per_message_client_options_whitelist``, and hands the turn to that
client's :class:`ConversationOrchestrator`. All clients share one store,
namespaced by client name: a file store when ``storage_file_path`` is set,
otherwise an in-memory store.

Example:
    ```python
    from chatrelay_config import load_settings
    from chatrelay_llm.gateway import ChatGateway

    async with ChatGateway(load_settings()) as gateway:
        status, body = await gateway.send({"message": "Hello"})
        async for event in gateway.stream({"message": "Go on"}):
            print(event.to_sse())
    ```
"""

import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, Mapping, Tuple

import aiohttp

from chatrelay_common import RelayError, ValidationError
from chatrelay_config import DEFAULT_SETTINGS, filter_client_options
from chatrelay_llm.conversations.orchestrator import (
    ConversationOrchestrator,
    ProgressEvent,
    error_result,
)
from chatrelay_llm.conversations.storage import (
    ConversationStore,
    FileConversationStore,
    MemoryConversationStore,
)
from chatrelay_llm.llm.backends import resolve_backend
from chatrelay_llm.llm.base import LLMConfig
from chatrelay_llm.llm.transport import CompletionTransport

logger = logging.getLogger(__name__)


def create_store(settings: Mapping[str, Any]) -> ConversationStore:
    """Build the shared conversation store described by ``settings``."""
    path = settings.get("storage_file_path")
    if path:
        logger.info("Using conversation file store %s", path)
        return FileConversationStore(path)
    return MemoryConversationStore()


class ChatGateway:
    """Route requests to per-client conversation orchestrators.

    Args:
        settings: Settings as returned by ``chatrelay_config.load_settings``
        store: Shared store; built from settings when omitted
        session: aiohttp session shared by all transports (not closed here)
    """

    def __init__(
        self,
        settings: Mapping[str, Any] | None = None,
        store: ConversationStore | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.settings: Dict[str, Any] = {**DEFAULT_SETTINGS, **(settings or {})}
        self.store = store or create_store(self.settings)
        self.client_to_use: str = self.settings["client_to_use"]
        self.whitelist = self.settings.get("per_message_client_options_whitelist")
        self._session = session
        self._orchestrators: Dict[str, ConversationOrchestrator] = {}

    async def __aenter__(self) -> "ChatGateway":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        for orchestrator in self._orchestrators.values():
            await orchestrator.close()
        self._orchestrators.clear()

    def client_config(self, client_name: str) -> LLMConfig:
        """Configuration of a named client; the backend defaults to the client name."""
        data = dict((self.settings.get("clients") or {}).get(client_name) or {})
        data.setdefault("backend", client_name)
        if self.settings.get("debug"):
            data.setdefault("debug", True)
        return LLMConfig.from_dict(data)

    def get_orchestrator(self, client_name: str) -> ConversationOrchestrator:
        """Orchestrator for a client, created on first use.

        Raises:
            ConfigurationError: If the client's backend is unknown
        """
        orchestrator = self._orchestrators.get(client_name)
        if orchestrator is None:
            config = self.client_config(client_name)
            transport = CompletionTransport(resolve_backend(config), config, self._session)
            orchestrator = ConversationOrchestrator(
                config,
                self.store.with_namespace(client_name),
                transport=transport,
                serialize_turns=bool(self.settings.get("serialize_turns")),
            )
            self._orchestrators[client_name] = orchestrator
        return orchestrator

    def _prepare(self, request: Mapping[str, Any]) -> Tuple[str, Dict[str, Any]]:
        if not request.get("message"):
            raise ValidationError(
                "The message parameter is required.",
                context={"field": "message"},
            )

        client_name = request.get("client_to_use") or self.client_to_use
        client_options = filter_client_options(
            request.get("client_options"), client_name, self.whitelist
        )
        if client_options:
            client_name = client_options.pop("client_to_use", client_name)

        conversation_id = request.get("conversation_id")
        parent_message_id = request.get("parent_message_id")
        return client_name, {
            "message": request["message"],
            "conversation_id": str(conversation_id) if conversation_id else None,
            "parent_message_id": str(parent_message_id) if parent_message_id else None,
            "client_options": client_options,
        }

    async def send(self, request: Mapping[str, Any]) -> Tuple[int, Dict[str, Any]]:
        """Handle a buffered request.

        Returns:
            ``(200, result envelope)`` or ``(code, {"error": message})``
        """
        try:
            client_name, kwargs = self._prepare(request)
            result = await self.get_orchestrator(client_name).send_message(**kwargs)
        except RelayError as e:
            payload = error_result(e)
            if payload["code"] == 503:
                logger.error("Request failed: %s", e, exc_info=e)
            else:
                logger.debug("Request rejected: %s", e)
            return payload["code"], {"error": payload["error"]}
        return 200, result.to_dict()

    async def stream(self, request: Mapping[str, Any]) -> AsyncIterator[ProgressEvent]:
        """Handle a streaming request as a channel of progress events."""
        try:
            client_name, kwargs = self._prepare(request)
            orchestrator = self.get_orchestrator(client_name)
        except RelayError as e:
            yield ProgressEvent("error", error_result(e))
            return

        async with aclosing(orchestrator.stream_message(**kwargs)) as events:
            async for event in events:
                yield event

    def health(self) -> Dict[str, str]:
        return {"status": "alive"}

"""The send-message use case.

:class:`ConversationOrchestrator` runs one conversation turn end to end:

1. Load the conversation from the store (or start a new one)
2. Append the caller's message
3. Resolve the thread path ending at that message and assemble the prompt
4. Call the backend, buffered or streaming
5. Append the normalized reply and persist the conversation

Each turn does exactly one store read and one store write. Two turns racing
on the same conversation id both load the same state, and the later write
wins; pass ``serialize_turns=True`` to run such turns one after another.

Example:
    ```python
    orchestrator = ConversationOrchestrator(
        LLMConfig(backend="openrouter", api_key=key),
        MemoryConversationStore("openrouter"),
    )
    first = await orchestrator.send_message("Tell me a story")
    second = await orchestrator.send_message(
        "Go on",
        conversation_id=first.conversation_id,
        parent_message_id=first.message_id,
        on_progress=lambda token: print(token, end=""),
    )
    ```
"""

import asyncio
import itertools
import logging
import uuid
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Mapping, Union

from chatrelay_common import ValidationError
from chatrelay_llm.conversations.assembler import PromptAssembler
from chatrelay_llm.conversations.storage import Conversation, ConversationStore, Message
from chatrelay_llm.conversations.thread import MessageThread
from chatrelay_llm.exceptions import TransportError
from chatrelay_llm.llm.backends import resolve_backend
from chatrelay_llm.llm.base import DONE_SENTINEL, LLMConfig, normalize_llm_config
from chatrelay_llm.llm.transport import CompletionTransport, ProgressCallback, invoke_callback
from chatrelay_llm.llm.utils import normalize_reply

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    """Result envelope of one turn.

    Attributes:
        response: Normalized reply text
        conversation_id: Conversation the turn belongs to
        message_id: Id of the stored reply message
        details: Raw backend response for buffered calls, empty when streamed
    """
    response: str
    conversation_id: str
    message_id: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "response": self.response,
            "conversationId": self.conversation_id,
            "messageId": self.message_id,
            "details": self.details,
        }


@dataclass
class ProgressEvent:
    """One event on a streaming turn's progress channel.

    ``type`` is ``token``, ``result``, ``error`` or ``done``.
    """
    type: str
    data: Any = None
    id: Union[int, str] = ""

    def to_sse(self) -> Dict[str, Any]:
        """Fields for a server-sent event carrying this progress event."""
        sse: Dict[str, Any] = {"id": self.id, "data": self.data}
        if self.type in ("result", "error"):
            sse["event"] = self.type
        return sse


def error_result(exc: BaseException) -> Dict[str, Any]:
    """Map a failed turn to the caller-visible error envelope.

    Returns:
        ``{"code": 400 | 401 | 503, "error": message}``
    """
    if isinstance(exc, ValidationError):
        code = 400
    elif isinstance(exc, TransportError) and exc.status == 401:
        code = 401
    else:
        code = 503
    return {
        "code": code,
        "error": str(exc) or "There was an error communicating with the backend.",
    }


class ConversationOrchestrator:
    """Run conversation turns against one backend.

    Args:
        config: Backend configuration (LLMConfig or dict)
        store: Conversation store, normally namespaced by backend
        transport: Transport to use; built from ``config`` when omitted
        serialize_turns: Run concurrent turns on one conversation id in order
    """

    def __init__(
        self,
        config: Union[LLMConfig, Mapping[str, Any]],
        store: ConversationStore,
        transport: CompletionTransport | None = None,
        serialize_turns: bool = False,
    ) -> None:
        self.config = normalize_llm_config(config)
        self.store = store
        self.transport = transport or CompletionTransport(
            resolve_backend(self.config), self.config
        )
        self.serialize_turns = serialize_turns
        self._locks: Dict[str, List[Any]] = {}

    async def close(self) -> None:
        await self.transport.close()

    async def __aenter__(self) -> "ConversationOrchestrator":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @asynccontextmanager
    async def _turn_lock(self, conversation_id: str) -> AsyncIterator[None]:
        entry = self._locks.setdefault(conversation_id, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[conversation_id]

    async def send_message(
        self,
        message: str,
        conversation_id: str | None = None,
        parent_message_id: str | None = None,
        on_progress: ProgressCallback | None = None,
        client_options: Mapping[str, Any] | None = None,
        conversation: Conversation | None = None,
    ) -> SendResult:
        """Run one turn.

        Args:
            message: Caller's message text
            conversation_id: Existing conversation, or None to start one
            parent_message_id: Message this one replies to; None starts a new root
            on_progress: Called with each streamed token (never with the
                ``[DONE]`` sentinel); enables streaming mode
            client_options: Per-message config overrides (already whitelisted)
            conversation: Conversation to use instead of loading it from the store

        Returns:
            SendResult for the stored reply

        Raises:
            ValidationError: If the message is missing or blank
            TransportError: If the backend answers with a non-200 status
            StreamError: If the event stream fails
        """
        if not isinstance(message, str) or not message.strip():
            raise ValidationError(
                "The message parameter is required.",
                context={"field": "message"},
            )

        config = self.config.with_client_options(client_options)
        conversation_id = conversation_id or str(uuid.uuid4())
        logger.info(
            "Send message. ConversationId: %s, ParentId: %s",
            conversation_id, parent_message_id,
        )

        if self.serialize_turns:
            async with self._turn_lock(conversation_id):
                return await self._run_turn(
                    message, conversation_id, parent_message_id,
                    on_progress, config, conversation,
                )
        return await self._run_turn(
            message, conversation_id, parent_message_id,
            on_progress, config, conversation,
        )

    async def _run_turn(
        self,
        text: str,
        conversation_id: str,
        parent_message_id: str | None,
        on_progress: ProgressCallback | None,
        config: LLMConfig,
        conversation: Conversation | None,
    ) -> SendResult:
        profile = resolve_backend(config)

        if conversation is None:
            conversation = await self.store.get(conversation_id)
        if conversation is None:
            conversation = Conversation()

        if config.opening_directive and not conversation.messages:
            seed = conversation.append(
                Message(str(uuid.uuid4()), parent_message_id, profile.system_label, text)
            )
            user_message = conversation.append(
                Message(str(uuid.uuid4()), seed.id, profile.user_label, config.opening_directive)
            )
        else:
            user_message = conversation.append(
                Message(str(uuid.uuid4()), parent_message_id, profile.user_label, text)
            )

        path = MessageThread(conversation.messages).resolve_path(user_message.id)
        assembled = await PromptAssembler(profile).assemble(path)
        logger.info(
            "Prompt built. ConversationId: %s, messages: %d",
            conversation_id, len(assembled.context),
        )

        bridge = None
        if on_progress is not None:
            async def bridge(token: str) -> None:
                if token != DONE_SENTINEL:
                    await invoke_callback(on_progress, token)

        await self.transport.initialize()
        transport = self.transport.with_config(config)
        result = await transport.execute(assembled, bridge)
        reply = normalize_reply(result.text, truncate=profile.truncate_to_sentence)

        reply_message = conversation.append(
            Message(str(uuid.uuid4()), user_message.id, profile.bot_label, reply)
        )
        await self.store.set(conversation_id, conversation)

        return SendResult(
            response=reply_message.content,
            conversation_id=conversation_id,
            message_id=reply_message.id,
            details=result.raw,
        )

    async def stream_message(
        self,
        message: str,
        conversation_id: str | None = None,
        parent_message_id: str | None = None,
        client_options: Mapping[str, Any] | None = None,
        conversation: Conversation | None = None,
    ) -> AsyncIterator[ProgressEvent]:
        """Run a streaming turn as a channel of progress events.

        Yields numbered ``token`` events, then one ``result`` event carrying
        the result envelope and a final ``done`` event. On failure a single
        ``error`` event carrying ``{"code", "error"}`` ends the channel.

        Closing the generator before it finishes cancels the turn: the
        connection is released and nothing is persisted.
        """
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
        counter = itertools.count(1)

        async def on_token(token: str) -> None:
            await queue.put(ProgressEvent("token", token, next(counter)))

        async def run() -> None:
            try:
                result = await self.send_message(
                    message,
                    conversation_id=conversation_id,
                    parent_message_id=parent_message_id,
                    on_progress=on_token,
                    client_options=client_options,
                    conversation=conversation,
                )
            except Exception as e:
                payload = error_result(e)
                if payload["code"] == 503:
                    logger.error("Streaming turn failed: %s", e, exc_info=e)
                else:
                    logger.debug("Streaming turn rejected: %s", e)
                await queue.put(ProgressEvent("error", payload))
            else:
                await queue.put(ProgressEvent("result", result.to_dict()))

        task = asyncio.create_task(run())
        try:
            while True:
                event = await queue.get()
                yield event
                if event.type == "result":
                    yield ProgressEvent("done", DONE_SENTINEL)
                    break
                if event.type == "error":
                    break
        finally:
            if not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task

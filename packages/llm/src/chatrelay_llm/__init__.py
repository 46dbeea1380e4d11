"""Multi-provider chat-completion gateway.

Stores conversations as message trees, assembles per-backend prompts from
the thread path of each new turn, and relays the turn to the backend,
buffered or streaming.

Example:
    ```python
    from chatrelay_llm import ConversationOrchestrator, LLMConfig, MemoryConversationStore

    orchestrator = ConversationOrchestrator(
        LLMConfig(backend="octoai", api_key="..."),
        MemoryConversationStore("octoai"),
    )
    result = await orchestrator.send_message("Hello")
    ```
"""

from chatrelay_llm.conversations import (
    AssembledPrompt,
    Conversation,
    ConversationOrchestrator,
    ConversationStore,
    FileConversationStore,
    MemoryConversationStore,
    Message,
    MessageThread,
    ProgressEvent,
    PromptAssembler,
    SendResult,
    error_result,
)
from chatrelay_llm.exceptions import (
    LLMError,
    SchemaVersionError,
    StorageError,
    StreamError,
    TransportError,
)
from chatrelay_llm.gateway import ChatGateway
from chatrelay_llm.llm import (
    BackendProfile,
    BackendRegistry,
    CompletionTransport,
    LLMConfig,
    LLMResponse,
    LLMStreamEvent,
    PayloadShape,
    StreamEventType,
    get_backend,
    normalize_reply,
)

__version__ = "0.1.0"

__all__ = [
    "AssembledPrompt",
    "BackendProfile",
    "BackendRegistry",
    "ChatGateway",
    "CompletionTransport",
    "Conversation",
    "ConversationOrchestrator",
    "ConversationStore",
    "FileConversationStore",
    "LLMConfig",
    "LLMError",
    "LLMResponse",
    "LLMStreamEvent",
    "MemoryConversationStore",
    "Message",
    "MessageThread",
    "PayloadShape",
    "ProgressEvent",
    "PromptAssembler",
    "SchemaVersionError",
    "SendResult",
    "StorageError",
    "StreamError",
    "StreamEventType",
    "TransportError",
    "error_result",
    "get_backend",
    "normalize_reply",
]

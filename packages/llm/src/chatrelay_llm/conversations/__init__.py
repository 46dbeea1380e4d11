"""Conversation storage, threading, prompt assembly and turn orchestration."""

from chatrelay_llm.conversations.assembler import (
    AssembledPrompt,
    PromptAssembler,
    normalize_system_roles,
)
from chatrelay_llm.conversations.orchestrator import (
    ConversationOrchestrator,
    ProgressEvent,
    SendResult,
    error_result,
)
from chatrelay_llm.conversations.storage import (
    Conversation,
    ConversationStore,
    FileConversationStore,
    MemoryConversationStore,
    Message,
)
from chatrelay_llm.conversations.thread import MessageThread, get_messages_for_conversation

__all__ = [
    "AssembledPrompt",
    "Conversation",
    "ConversationOrchestrator",
    "ConversationStore",
    "FileConversationStore",
    "MemoryConversationStore",
    "Message",
    "MessageThread",
    "ProgressEvent",
    "PromptAssembler",
    "SendResult",
    "error_result",
    "get_messages_for_conversation",
    "normalize_system_roles",
]

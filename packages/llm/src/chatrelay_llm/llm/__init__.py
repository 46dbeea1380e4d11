"""Backend profiles, configuration and HTTP transport."""

from chatrelay_llm.llm.backends import (
    BackendProfile,
    BackendRegistry,
    PayloadShape,
    get_backend,
    resolve_backend,
)
from chatrelay_llm.llm.base import (
    DONE_SENTINEL,
    LLMConfig,
    LLMResponse,
    LLMStreamEvent,
    StreamEventType,
    normalize_llm_config,
)
from chatrelay_llm.llm.transport import CompletionTransport, TransportResult
from chatrelay_llm.llm.utils import normalize_reply

__all__ = [
    "BackendProfile",
    "BackendRegistry",
    "CompletionTransport",
    "DONE_SENTINEL",
    "LLMConfig",
    "LLMResponse",
    "LLMStreamEvent",
    "PayloadShape",
    "StreamEventType",
    "TransportResult",
    "get_backend",
    "normalize_llm_config",
    "normalize_reply",
    "resolve_backend",
]

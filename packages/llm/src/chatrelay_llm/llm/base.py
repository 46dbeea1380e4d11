"""Base LLM configuration and result types.

This module defines the values that flow between the gateway components:

Key Components:
    - LLMConfig: Immutable per-call backend configuration
    - LLMResponse: Normalized buffered completion
    - LLMStreamEvent: One normalized event from a streaming completion,
      discriminated by StreamEventType (token, done or error)

Backends answer with differently shaped JSON (legacy ``choices[0].text``
completions or chat ``choices[0].message.content`` / ``delta.content``).
Those shapes are normalized into these types by the transport, so nothing
past the transport inspects raw provider payloads.

Example:
    ```python
    from chatrelay_llm.llm.base import LLMConfig

    config = LLMConfig(backend="openrouter", api_key="sk-...")
    tuned = config.with_client_options({"model_options": {"temperature": 0.4}})
    assert config.temperature == 0.1
    assert tuned.temperature == 0.4
    ```
"""

from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Dict, Mapping, Union

from chatrelay_common import ValidationError

DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class LLMConfig:
    """Configuration for one backend client.

    Instances are immutable: per-message overrides produce a new config via
    :meth:`with_client_options` or :meth:`clone` instead of mutating a shared
    client.

    Attributes:
        backend: Name of the backend profile (openrouter, octoai, ...)
        model: Model identifier, or None for the backend's default model
        api_key: Bearer token sent to the backend
        api_base: Completions URL override
        temperature: Sampling temperature
        top_p: Nucleus sampling parameter
        presence_penalty: Presence penalty
        max_tokens: Maximum tokens to generate
        headers: Extra HTTP headers merged over the backend defaults
        user_label: Stored role for caller messages (backend default if None)
        bot_label: Stored role for reply messages (backend default if None)
        opening_directive: When set, the first message of a new conversation
            is stored as a system prompt and this text becomes the user turn
        timeout: Total request timeout in seconds, None for no timeout
        debug: Log every streamed token at DEBUG level
        options: Additional request body parameters
    """
    backend: str = "openrouter"
    model: str | None = None
    api_key: str | None = None
    api_base: str | None = None
    temperature: float = 0.1
    top_p: float = 0.9
    presence_penalty: float = 0.25
    max_tokens: int | None = None
    headers: Dict[str, str] = field(default_factory=dict)
    user_label: str | None = None
    bot_label: str | None = None
    opening_directive: str | None = None
    timeout: float | None = None
    debug: bool = False
    options: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, config_dict: Mapping[str, Any]) -> "LLMConfig":
        """Create an LLMConfig from a dictionary.

        Unknown keys are ignored. A nested ``model_options`` mapping is
        flattened onto the config, with unknown model options collected
        into ``options``.

        Args:
            config_dict: Configuration dictionary

        Returns:
            LLMConfig instance

        Raises:
            ValidationError: If ``model_options`` is not a mapping
        """
        valid_fields = {f.name for f in fields(cls)}
        data = {k: v for k, v in config_dict.items() if k in valid_fields}
        data.update(_split_model_options(config_dict.get("model_options"), data.get("options")))
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        """Convert LLMConfig to a dictionary, omitting unset optional fields."""
        result: Dict[str, Any] = {}
        for field_info in fields(self):
            value = getattr(self, field_info.name)
            if value is not None:
                result[field_info.name] = value
        return result

    def clone(self, **overrides: Any) -> "LLMConfig":
        """Create a copy of this config with optional overrides.

        Example:
            >>> base = LLMConfig(backend="octoai")
            >>> warmer = base.clone(temperature=0.7)
        """
        return replace(self, **overrides)

    def with_client_options(self, client_options: Mapping[str, Any] | None) -> "LLMConfig":
        """Return a new config with per-message client options applied.

        Top-level keys override fields directly; ``model_options`` entries
        override sampling fields; ``headers`` and ``options`` are merged over
        the existing values. ``client_to_use`` is ignored here.

        Args:
            client_options: Options supplied with a message, or None

        Returns:
            New LLMConfig (``self`` when there is nothing to apply)
        """
        if not client_options:
            return self

        valid_fields = {f.name for f in fields(self)} - {"backend"}
        overrides = {k: v for k, v in client_options.items() if k in valid_fields}
        model_overrides = _split_model_options(
            client_options.get("model_options"), overrides.get("options")
        )
        overrides.update(model_overrides)

        if "headers" in overrides:
            overrides["headers"] = {**self.headers, **(overrides["headers"] or {})}
        if "options" in overrides:
            overrides["options"] = {**self.options, **(overrides["options"] or {})}

        return replace(self, **overrides) if overrides else self


def _split_model_options(
    model_options: Any,
    options: Dict[str, Any] | None,
) -> Dict[str, Any]:
    if model_options is None:
        return {}
    if not isinstance(model_options, Mapping):
        raise ValidationError(
            "model_options must be a mapping",
            context={"model_options": model_options},
        )

    sampling = {"model", "temperature", "top_p", "presence_penalty", "max_tokens"}
    result: Dict[str, Any] = {k: v for k, v in model_options.items() if k in sampling}
    extra = {k: v for k, v in model_options.items() if k not in sampling}
    if extra:
        result["options"] = {**(options or {}), **extra}
    return result


def normalize_llm_config(config: Union["LLMConfig", Mapping[str, Any]]) -> "LLMConfig":
    """Normalize an LLMConfig or plain dictionary to LLMConfig.

    Raises:
        TypeError: If config type is not supported
    """
    if isinstance(config, LLMConfig):
        return config

    if isinstance(config, Mapping):
        return LLMConfig.from_dict(config)

    raise TypeError(
        f"Unsupported config type: {type(config).__name__}. "
        f"Expected LLMConfig or dict."
    )


@dataclass
class LLMResponse:
    """Normalized buffered completion.

    Attributes:
        content: Completion text extracted from the backend response
        model: Model that produced it, when reported
        finish_reason: Why generation stopped, when reported
        raw: The full decoded backend response
    """
    content: str
    model: str | None = None
    finish_reason: str | None = None
    raw: Dict[str, Any] = field(default_factory=dict)


class StreamEventType(Enum):
    """Kinds of normalized streaming events."""

    TOKEN = "token"
    DONE = "done"
    ERROR = "error"


@dataclass
class LLMStreamEvent:
    """One normalized event from a streaming completion.

    Attributes:
        type: Event kind
        token: Incremental text for TOKEN events
        error: The failure for ERROR events
    """
    type: StreamEventType
    token: str = ""
    error: Exception | None = None

    @classmethod
    def token_event(cls, token: str) -> "LLMStreamEvent":
        return cls(StreamEventType.TOKEN, token=token)

    @classmethod
    def done(cls) -> "LLMStreamEvent":
        return cls(StreamEventType.DONE)

    @classmethod
    def failed(cls, error: Exception) -> "LLMStreamEvent":
        return cls(StreamEventType.ERROR, error=error)

    @property
    def is_final(self) -> bool:
        return self.type is not StreamEventType.TOKEN

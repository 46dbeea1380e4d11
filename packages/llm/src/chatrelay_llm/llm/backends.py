"""Backend profiles: per-provider prompt and wire-format rules.

Every supported provider speaks a slightly different dialect of the
completions API and expects conversation history relabeled differently.
Rather than one client class per provider, each provider is described by a
:class:`BackendProfile` value that the shared assembler and transport read.

Built-in profiles:
    - openrouter: chat payload, story-mode masking of older user turns
    - octoai: chat payload, oldest and newest user turns kept verbatim
    - openai: plain chat completions, no masking
    - text-completion: legacy single-prompt completions endpoint

Example:
    ```python
    from chatrelay_llm.llm.backends import BackendRegistry, BackendProfile

    profile = BackendRegistry.get("octoai")

    BackendRegistry.register(
        BackendProfile(
            name="local",
            completions_url="http://localhost:8000/v1/chat/completions",
            default_model="llama3",
        )
    )
    ```
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List

from chatrelay_common import ConfigurationError

if TYPE_CHECKING:
    from chatrelay_llm.llm.base import LLMConfig


class PayloadShape(Enum):
    """How the assembled conversation is sent to the backend."""

    TEXT = "text"  # single concatenated prompt string
    CHAT = "chat"  # ordered list of role/content pairs


@dataclass(frozen=True)
class BackendProfile:
    """Description of one completion backend.

    Attributes:
        name: Registry name of the backend
        completions_url: Endpoint receiving the POST request
        default_model: Model used when the config names none
        payload_shape: Whether the backend takes a prompt string or messages
        user_label: Stored (and rendered) role of caller messages
        bot_label: Stored role of replies and the rendered label of non-user turns
        system_label: Role kept only once by the single-system pass
        assistant_label: Role that demoted bot/system turns receive
        start_token: Rendered before each text prompt turn
        end_token: Rendered after each text prompt turn; streamed tokens
            equal to it are dropped
        collapse_after: In text prompts, non-user turns whose iteration
            (counted from the newest message) exceeds this value are
            labeled ``assistant_label``; None disables the demotion
        continuation_placeholder: Replacement content for historical user
            turns; None disables masking
        protect_oldest: Whether the oldest message of the path keeps its
            content when masking
        single_system: Whether chat payloads keep only the first system turn
        emits_done_sentinel: Whether the backend reliably ends streams with
            ``[DONE]``
        truncate_to_sentence: Whether replies are cut at the last sentence end
        default_headers: Headers sent with every request
    """
    name: str
    completions_url: str
    default_model: str
    payload_shape: PayloadShape = PayloadShape.CHAT
    user_label: str = "user"
    bot_label: str = "assistant"
    system_label: str = "system"
    assistant_label: str = "assistant"
    start_token: str = ""
    end_token: str = ""
    collapse_after: int | None = None
    continuation_placeholder: str | None = None
    protect_oldest: bool = False
    single_system: bool = True
    emits_done_sentinel: bool = True
    truncate_to_sentence: bool = True
    default_headers: Dict[str, str] = field(default_factory=dict)

    @property
    def prompt_suffix(self) -> str:
        """Empty turn opener appended to text prompts to elicit the reply."""
        return f"{self.start_token}{self.bot_label}:\n"


OPENROUTER = BackendProfile(
    name="openrouter",
    completions_url="https://openrouter.ai/api/v1/chat/completions",
    default_model="mistralai/mistral-7b-instruct",
    user_label="user",
    bot_label="system",
    start_token="||>",
    collapse_after=1,
    continuation_placeholder="Continue the story",
    protect_oldest=False,
    emits_done_sentinel=False,
    default_headers={
        "HTTP-Referer": "https://play.v3rpg.com",
        "X-Title": "v3rpg",
    },
)

OCTOAI = BackendProfile(
    name="octoai",
    completions_url="https://text.octoai.run/v1/chat/completions",
    default_model="mixtral-8x7b-instruct-fp16",
    user_label="user",
    bot_label="system",
    continuation_placeholder="Some rules/instructions on how DM should continue the story...",
    protect_oldest=True,
    single_system=False,
    truncate_to_sentence=False,
)

OPENAI = BackendProfile(
    name="openai",
    completions_url="https://api.openai.com/v1/chat/completions",
    default_model="gpt-4o-mini",
)

TEXT_COMPLETION = BackendProfile(
    name="text-completion",
    completions_url="https://api.openai.com/v1/completions",
    default_model="gpt-3.5-turbo-instruct",
    payload_shape=PayloadShape.TEXT,
    user_label="User",
    bot_label="Assistant",
    assistant_label="Assistant",
    end_token="<|im_end|>",
)


class BackendRegistry:
    """Registry of named backend profiles.

    Example:
        ```python
        profile = BackendRegistry.get("openrouter")
        names = BackendRegistry.names()
        ```
    """

    _profiles: Dict[str, BackendProfile] = {
        profile.name: profile
        for profile in (OPENROUTER, OCTOAI, OPENAI, TEXT_COMPLETION)
    }

    @classmethod
    def get(cls, name: str) -> BackendProfile:
        """Look up a profile by name (case-insensitive).

        Raises:
            ConfigurationError: If no profile has that name
        """
        profile = cls._profiles.get(name.lower())
        if profile is None:
            raise ConfigurationError(
                f"Unknown backend: {name}. Available backends: {cls.names()}",
                context={"backend": name},
            )
        return profile

    @classmethod
    def register(cls, profile: BackendProfile) -> None:
        """Register (or replace) a custom backend profile."""
        cls._profiles[profile.name.lower()] = profile

    @classmethod
    def names(cls) -> List[str]:
        return sorted(cls._profiles)


def get_backend(name: str) -> BackendProfile:
    """Convenience wrapper for :meth:`BackendRegistry.get`."""
    return BackendRegistry.get(name)


def resolve_backend(config: "LLMConfig") -> BackendProfile:
    """Return the profile named by ``config`` with its overrides applied.

    ``api_base``, ``user_label`` and ``bot_label`` on the config replace the
    profile's endpoint and role labels. Without an opening directive the
    first user turn carries the conversation premise, so a masking profile
    keeps the oldest message unmasked.
    """
    profile = BackendRegistry.get(config.backend)
    overrides: Dict[str, Any] = {}
    if config.api_base:
        overrides["completions_url"] = config.api_base
    if config.user_label:
        overrides["user_label"] = config.user_label
    if config.bot_label:
        overrides["bot_label"] = config.bot_label
    if (
        profile.continuation_placeholder is not None
        and not profile.protect_oldest
        and not config.opening_directive
    ):
        overrides["protect_oldest"] = True
    return replace(profile, **overrides) if overrides else profile

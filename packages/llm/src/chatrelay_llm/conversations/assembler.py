"""Prompt assembly from a resolved conversation path.

The assembler walks a root-to-leaf path from the newest message back to the
oldest, rewriting each turn according to the backend profile:

- **Relabeling**: in text prompts non-user turns carry the backend's bot
  label, demoted to the assistant label once they are older than
  ``collapse_after`` turns. Chat payloads keep stored roles, then keep only
  the first system turn (``single_system``).
- **Continuation masking**: historical user turns are replaced by the
  backend's continuation placeholder. The newest turn always keeps its
  content; the oldest does too when ``protect_oldest`` is set.

Masking works on copies. Stored messages are never modified.

The walk yields to the event loop between messages so that assembling a very
long conversation cannot starve other requests. Yielding never changes the
result.

Example:
    ```python
    assembler = PromptAssembler(get_backend("openrouter"))
    assembled = await assembler.assemble(path)
    body = {"messages": assembled.messages}
    ```
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Sequence

from chatrelay_llm.conversations.storage import Message
from chatrelay_llm.llm.backends import BackendProfile, PayloadShape

logger = logging.getLogger(__name__)


@dataclass
class AssembledPrompt:
    """Result of assembling one turn's prompt.

    Attributes:
        shape: Payload shape expected by the backend
        prompt: Concatenated text prompt (empty for an empty path)
        messages: Role/content pairs for chat backends
        context: Transformed message copies actually used, oldest first
    """
    shape: PayloadShape
    prompt: str = ""
    messages: List[Dict[str, str]] = field(default_factory=list)
    context: List[Message] = field(default_factory=list)

    @property
    def payload(self) -> Any:
        """The provider-facing part: prompt string or message list."""
        if self.shape is PayloadShape.TEXT:
            return self.prompt
        return self.messages

    @property
    def is_empty(self) -> bool:
        return not self.context


def normalize_system_roles(
    messages: Sequence[Dict[str, str]],
    system_label: str = "system",
    assistant_label: str = "assistant",
) -> List[Dict[str, str]]:
    """Keep the first system-role entry and relabel later ones as assistant.

    Providers reject requests with several system turns.

    Returns:
        New list; the input entries are not modified
    """
    result = []
    system_seen = False
    for message in messages:
        if message.get("role") == system_label:
            if system_seen:
                message = {**message, "role": assistant_label}
            system_seen = True
        result.append(message)
    return result


class PromptAssembler:
    """Build provider payloads from resolved paths for one backend profile."""

    def __init__(self, profile: BackendProfile) -> None:
        self.profile = profile

    def text_label(self, message: Message, iteration: int) -> str:
        """Label used for ``message`` in a text prompt.

        Args:
            message: Stored message
            iteration: Position counted from the newest message (0)
        """
        profile = self.profile
        if message.role == profile.user_label:
            return profile.user_label
        if profile.collapse_after is not None and iteration > profile.collapse_after:
            return profile.assistant_label
        return profile.bot_label

    def is_masked(self, message: Message, iteration: int, total: int) -> bool:
        """Whether ``message`` content is replaced by the continuation placeholder."""
        profile = self.profile
        if profile.continuation_placeholder is None:
            return False
        if message.role != profile.user_label or iteration == 0:
            return False
        if profile.protect_oldest and iteration == total - 1:
            return False
        return True

    async def assemble(
        self,
        path: Sequence[Message],
        cooperative: bool = True,
    ) -> AssembledPrompt:
        """Assemble the payload and context for a resolved path.

        Args:
            path: Messages ordered oldest to newest
            cooperative: Yield to the event loop after each message

        Returns:
            AssembledPrompt; empty payload and context for an empty path
        """
        profile = self.profile
        pending = list(path)
        total = len(pending)
        turns: deque[str] = deque()
        context: deque[Message] = deque()

        iteration = 0
        while pending:
            message = pending.pop()
            label = self.text_label(message, iteration)
            if self.is_masked(message, iteration, total):
                message = replace(message, content=profile.continuation_placeholder)
            else:
                message = replace(message)

            turns.appendleft(
                f"{profile.start_token}{label}:\n{message.content}{profile.end_token}\n"
            )
            context.appendleft(message)
            iteration += 1
            if cooperative:
                await asyncio.sleep(0)

        if not context:
            return AssembledPrompt(shape=profile.payload_shape)

        messages = [{"role": m.role, "content": m.content} for m in context]
        if profile.single_system:
            messages = normalize_system_roles(
                messages, profile.system_label, profile.assistant_label
            )

        return AssembledPrompt(
            shape=profile.payload_shape,
            prompt="".join(turns) + profile.prompt_suffix,
            messages=messages,
            context=list(context),
        )

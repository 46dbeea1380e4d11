"""Path resolution over stored message trees.

A conversation stores its messages in creation order; the tree is given by
each message's ``parent_message_id``. To build a prompt for a new turn we
need only the single root-to-leaf path that ends at that turn.

Example:
    ```python
    thread = MessageThread(conversation.messages)
    path = thread.resolve_path(user_message.id)
    # path[0] is the root, path[-1] is user_message
    ```
"""

from typing import Dict, Iterable, List

from chatrelay_llm.conversations.storage import Message


class MessageThread:
    """Id-indexed view of a conversation's message tree.

    Args:
        messages: Messages in any order. If two messages share an id the
            first one wins, matching a front-to-back scan.
    """

    def __init__(self, messages: Iterable[Message]) -> None:
        self.messages: List[Message] = list(messages)
        self._by_id: Dict[str, Message] = {}
        for message in self.messages:
            self._by_id.setdefault(message.id, message)

    def get(self, message_id: str) -> Message | None:
        return self._by_id.get(message_id)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._by_id

    def resolve_path(self, leaf_id: str | None) -> List[Message]:
        """Return the ordered path from the root down to ``leaf_id``.

        Resolution follows parent links upward and stops at a message with no
        parent, or silently at the first id that is not in the conversation.
        A missing leaf therefore yields an empty path; a dangling parent
        yields the path truncated just below the missing ancestor. A parent
        cycle also ends resolution, at the first repeated message.

        Args:
            leaf_id: Id of the newest message of the path

        Returns:
            Messages ordered oldest to newest
        """
        path: List[Message] = []
        seen = set()
        current_id = leaf_id
        while current_id and current_id not in seen:
            message = self._by_id.get(current_id)
            if message is None:
                break
            seen.add(current_id)
            path.append(message)
            current_id = message.parent_message_id

        path.reverse()
        return path

    def children(self, message_id: str) -> List[Message]:
        """Messages replying directly to ``message_id``, in creation order."""
        return [m for m in self.messages if m.parent_message_id == message_id]

    def leaves(self) -> List[Message]:
        """Messages nothing replies to, one per branch tip, in creation order."""
        parents = {m.parent_message_id for m in self.messages}
        return [m for m in self.messages if m.id not in parents]


def get_messages_for_conversation(
    messages: Iterable[Message],
    leaf_id: str | None,
) -> List[Message]:
    """Resolve the root-to-leaf path ending at ``leaf_id``.

    Shorthand for ``MessageThread(messages).resolve_path(leaf_id)``.
    """
    return MessageThread(messages).resolve_path(leaf_id)

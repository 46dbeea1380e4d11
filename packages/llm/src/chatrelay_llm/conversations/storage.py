"""Conversation storage.

This module provides:
- Message: One stored turn, linked to the turn it replies to
- Conversation: Append-only collection of messages
- ConversationStore: Abstract key/value storage interface
- MemoryConversationStore: In-process store (development/testing)
- FileConversationStore: JSON file store for single-server deployments

Storage Architecture:
    Messages are stored in creation order, not tree order. The tree is
    implied by each message's ``parent_message_id``; replying to an older
    message starts a new branch without moving or copying anything. See
    :mod:`chatrelay_llm.conversations.thread` for path resolution.

    Stores are namespaced (normally by backend name) so the same
    conversation id used against two backends never collides. Every
    ``set`` overwrites the whole conversation.

Schema Versioning:
    Current schema version: 1.0.0

Serialization Format:
    ```python
    {
        "schema_version": "1.0.0",
        "created_at": "2024-01-01T00:00:00",
        "updated_at": "2024-01-01T00:05:00",
        "messages": [
            {
                "id": "5b0c...",
                "parent_message_id": None,
                "role": "user",
                "content": "Hello",
                "created_at": "2024-01-01T00:00:00"
            },
            {
                "id": "9e1f...",
                "parent_message_id": "5b0c...",
                "role": "assistant",
                "content": "Hi!",
                "created_at": "2024-01-01T00:00:02"
            }
        ]
    }
    ```
"""

import asyncio
import copy
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List

from chatrelay_common import SerializationError
from chatrelay_llm.exceptions import SchemaVersionError, StorageError

SCHEMA_VERSION = "1.0.0"

logger = logging.getLogger(__name__)


@dataclass
class Message:
    """A single stored conversation turn.

    Attributes:
        id: Unique identifier within the conversation
        parent_message_id: Id of the message this one replies to, None for a root
        role: Backend-specific role label
        content: Message text
        created_at: Creation timestamp
    """
    id: str
    parent_message_id: str | None
    role: str
    content: str
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "parent_message_id": self.parent_message_id,
            "role": self.role,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        created_at = data.get("created_at")
        return cls(
            id=data["id"],
            parent_message_id=data.get("parent_message_id"),
            role=data["role"],
            content=data["content"],
            created_at=datetime.fromisoformat(created_at) if created_at else datetime.now(),
        )


@dataclass
class Conversation:
    """Append-only list of messages forming one conversation tree.

    Attributes:
        messages: Messages in creation order
        created_at: When the conversation was first created
        updated_at: When a message was last appended
        schema_version: Version of the storage schema used
    """
    messages: List[Message] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    schema_version: str = SCHEMA_VERSION

    def append(self, message: Message) -> Message:
        """Append a message; existing messages are never changed."""
        self.messages.append(message)
        self.updated_at = datetime.now()
        return message

    def __len__(self) -> int:
        return len(self.messages)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "messages": [m.to_dict() for m in self.messages],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conversation":
        """Create a conversation from its stored dictionary.

        Handles schema version migration if needed.

        Raises:
            SchemaVersionError: If the data was written by a newer major schema
            SerializationError: If a required field is missing or malformed
        """
        stored_version = data.get("schema_version", "0.0.0")
        if stored_version != SCHEMA_VERSION:
            data = cls._migrate_schema(dict(data), stored_version, SCHEMA_VERSION)

        try:
            created_at = datetime.fromisoformat(data["created_at"])
            updated_at = data.get("updated_at")
            return cls(
                messages=[Message.from_dict(m) for m in data.get("messages", [])],
                created_at=created_at,
                updated_at=datetime.fromisoformat(updated_at) if updated_at else created_at,
                schema_version=SCHEMA_VERSION,
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise SerializationError(
                f"Malformed stored conversation: {e!r}",
                context={"schema_version": stored_version},
            ) from e

    @staticmethod
    def _migrate_schema(
        data: Dict[str, Any],
        from_version: str,
        to_version: str
    ) -> Dict[str, Any]:
        """Migrate data from one schema version to another.

        Raises:
            SchemaVersionError: If migration path is not supported
        """
        from_major = int(from_version.split(".")[0])
        to_major = int(to_version.split(".")[0])

        # Unversioned data has the same layout as 1.0.0
        if from_version == "0.0.0":
            logger.debug("Migrating unversioned conversation to schema %s", to_version)
            data["schema_version"] = to_version
            return data

        if from_major > to_major:
            raise SchemaVersionError(
                f"Cannot downgrade from schema {from_version} to {to_version}",
                context={"from_version": from_version, "to_version": to_version},
            )

        logger.warning(
            "No migration path defined from %s to %s. Using data as-is.",
            from_version, to_version,
        )
        data["schema_version"] = to_version
        return data


class ConversationStore(ABC):
    """Abstract key/value storage for conversations.

    Keys are conversation ids; each store is namespaced so several backends
    can share one underlying store.
    """

    def __init__(self, namespace: str = "default") -> None:
        self.namespace = namespace

    def _key(self, conversation_id: str) -> str:
        return f"{self.namespace}:{conversation_id}"

    @abstractmethod
    async def get(self, conversation_id: str) -> Conversation | None:
        """Load a conversation.

        Returns:
            The conversation, or None if absent
        """
        pass

    @abstractmethod
    async def set(self, conversation_id: str, conversation: Conversation) -> None:
        """Store a conversation, overwriting any previous state."""
        pass

    @abstractmethod
    async def delete(self, conversation_id: str) -> bool:
        """Delete a conversation.

        Returns:
            True if deleted, False if not found
        """
        pass

    @abstractmethod
    def with_namespace(self, namespace: str) -> "ConversationStore":
        """Return a store over the same data under another namespace."""
        pass


class MemoryConversationStore(ConversationStore):
    """In-memory store.

    Conversations are kept serialized, so a loaded conversation never shares
    state with the stored one or with other loads.
    """

    def __init__(self, namespace: str = "default", data: Dict[str, Any] | None = None) -> None:
        super().__init__(namespace)
        self._data: Dict[str, Dict[str, Any]] = data if data is not None else {}

    async def get(self, conversation_id: str) -> Conversation | None:
        raw = self._data.get(self._key(conversation_id))
        if raw is None:
            return None
        return Conversation.from_dict(copy.deepcopy(raw))

    async def set(self, conversation_id: str, conversation: Conversation) -> None:
        self._data[self._key(conversation_id)] = conversation.to_dict()

    async def delete(self, conversation_id: str) -> bool:
        return self._data.pop(self._key(conversation_id), None) is not None

    def with_namespace(self, namespace: str) -> "MemoryConversationStore":
        """Return a store over the same data under another namespace."""
        return MemoryConversationStore(namespace, self._data)


class FileConversationStore(ConversationStore):
    """Store all conversations in one JSON file.

    The file maps namespaced keys to serialized conversations. Writes go to a
    temporary file that then replaces the original, so a crash never leaves a
    half-written file. An ``asyncio.Lock`` shared by every namespace view of
    the same file serializes read-modify-write cycles within the process.

    Example:
        ```python
        store = FileConversationStore("./cache/conversations.json", namespace="octoai")
        await store.set("conv-1", conversation)
        loaded = await store.get("conv-1")
        ```
    """

    def __init__(
        self,
        path: str | Path,
        namespace: str = "default",
        lock: asyncio.Lock | None = None,
    ) -> None:
        super().__init__(namespace)
        self.path = Path(path)
        self._lock = lock or asyncio.Lock()

    def with_namespace(self, namespace: str) -> "FileConversationStore":
        """Return a store over the same file under another namespace."""
        return FileConversationStore(self.path, namespace, self._lock)

    def _load_all(self) -> Dict[str, Any]:
        if not self.path.exists() or self.path.stat().st_size == 0:
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(
                f"Failed to read conversation store {self.path}: {e}",
                context={"path": str(self.path)},
            ) from e
        if not isinstance(data, dict):
            logger.warning("Conversation store %s is not a JSON object", self.path)
            raise StorageError(
                f"Conversation store {self.path} is corrupt",
                context={"path": str(self.path)},
            )
        return data

    def _save_all(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp_path, self.path)
        except OSError as e:
            tmp = Path(tmp_path)
            if tmp.exists():
                tmp.unlink()
            raise StorageError(
                f"Failed to write conversation store {self.path}: {e}",
                context={"path": str(self.path)},
            ) from e

    async def get(self, conversation_id: str) -> Conversation | None:
        async with self._lock:
            raw = self._load_all().get(self._key(conversation_id))
        if raw is None:
            return None
        return Conversation.from_dict(raw)

    async def set(self, conversation_id: str, conversation: Conversation) -> None:
        async with self._lock:
            data = self._load_all()
            data[self._key(conversation_id)] = conversation.to_dict()
            self._save_all(data)

    async def delete(self, conversation_id: str) -> bool:
        async with self._lock:
            data = self._load_all()
            if data.pop(self._key(conversation_id), None) is None:
                return False
            self._save_all(data)
            return True

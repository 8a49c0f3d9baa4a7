"""Conversation data model and the store contract the coordinator writes through."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Literal, Protocol, runtime_checkable

logger = logging.getLogger("silicon_stream")

Role = Literal["system", "user", "assistant"]
VALID_ROLES: frozenset[str] = frozenset({"system", "user", "assistant"})


def utc_now_iso() -> str:
    """Return a stable UTC timestamp string."""
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(frozen=True)
class ChatMessage:
    role: Role
    content: str
    token_count: int | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: str = field(default_factory=utc_now_iso)


@dataclass
class Conversation:
    """Snapshot of the model-visible history, as the budgeter sees it."""

    model_id: str
    messages: list[ChatMessage] = field(default_factory=list)


@runtime_checkable
class ConversationStore(Protocol):
    """Narrow store contract; persistence itself lives outside this package."""

    def append_message(
        self, role: Role, text: str, token_count: int | None = None
    ) -> ChatMessage: ...

    def history_for_model(self) -> list[ChatMessage]: ...

    def archive_messages(self, ids: Iterable[str]) -> None: ...

    def clear(self) -> None: ...


class InMemoryConversationStore:
    """Process-local store for one conversation.

    Keeps the active (model-visible) messages separate from archived ones. When a
    system prompt is configured it is kept as the first active message and is
    never archived. A user message appended directly after another user message
    replaces it, since the earlier turn never received an answer.
    """

    def __init__(self, model_id: str, system_prompt: str | None = None) -> None:
        self.model_id = model_id
        self.system_prompt = (system_prompt or "").strip() or None
        self.messages: list[ChatMessage] = []
        self.archived: list[ChatMessage] = []
        self._ensure_system_message()

    def _ensure_system_message(self) -> None:
        if self.system_prompt is None:
            return
        if any(message.role == "system" for message in self.messages):
            return
        self.messages.insert(0, ChatMessage(role="system", content=self.system_prompt))

    def append_message(
        self, role: Role, text: str, token_count: int | None = None
    ) -> ChatMessage:
        if role not in VALID_ROLES:
            raise ValueError(f"Unsupported message role: {role!r}")
        message = ChatMessage(role=role, content=text, token_count=token_count)
        if role == "user" and self.messages and self.messages[-1].role == "user":
            replaced = self.messages.pop()
            logger.debug(
                "[SiliconStream Store] Replacing unanswered user message %s.", replaced.id
            )
        self.messages.append(message)
        return message

    def history_for_model(self) -> list[ChatMessage]:
        return list(self.messages)

    def archive_messages(self, ids: Iterable[str]) -> None:
        wanted = set(ids)
        if not wanted:
            return
        moved = [m for m in self.messages if m.id in wanted and m.role != "system"]
        self.archived.extend(moved)
        moved_ids = {m.id for m in moved}
        self.messages = [m for m in self.messages if m.id not in moved_ids]
        logger.info(
            "[SiliconStream Store] Archived %d message(s); %d remain active.",
            len(moved),
            len(self.messages),
        )

    def clear(self) -> None:
        self.messages = []
        self.archived = []
        self._ensure_system_message()

    def __repr__(self) -> str:
        return (
            f"InMemoryConversationStore(model_id={self.model_id!r}, "
            f"active={len(self.messages)}, archived={len(self.archived)})"
        )

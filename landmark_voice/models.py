"""Shared dataclasses for the guide."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence


@dataclass
class ChoiceOption:
    """A single quick-reply option offered by the bot."""

    label: str
    value: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChoiceOption":
        label = str(data.get("label") or "")
        value = data.get("value")
        return cls(label=label, value=str(value) if value is not None else label)


@dataclass
class MessagePayload:
    """Payload of a chat message (``text`` or ``choice`` cards)."""

    type: str
    text: str = ""
    options: List[ChoiceOption] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MessagePayload":
        raw_options = data.get("options")
        if not isinstance(raw_options, list):
            raw_options = []
        options = [ChoiceOption.from_dict(opt) for opt in raw_options if isinstance(opt, dict)]
        text = data.get("text")
        return cls(
            type=str(data.get("type") or ""),
            text=text if isinstance(text, str) else "",
            options=options,
        )


@dataclass
class ChatMessage:
    """
    One entry of the conversation log returned by the chat backend.

    Attributes:
        id: Backend-assigned identifier, used as the dedup cursor.
        user_id: Author id; the assistant is recognised by an id prefix.
        payload: Parsed message payload, ``None`` if the entry had none.
    """

    id: str
    user_id: str
    payload: Optional[MessagePayload]
    conversation_id: str = ""
    created_at: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        payload = data.get("payload")
        return cls(
            id=str(data.get("id") or ""),
            user_id=str(data.get("userId") or ""),
            payload=MessagePayload.from_dict(payload) if isinstance(payload, dict) else None,
            conversation_id=str(data.get("conversationId") or ""),
            created_at=str(data.get("createdAt") or ""),
        )


@dataclass
class BotMessage:
    """Assistant message delivered by a poll, ready to be voiced."""

    text: str
    is_choice: bool = False
    options: List[ChoiceOption] = field(default_factory=list)
    message_id: str = ""


@dataclass
class Conversation:
    """Conversation owned by the orchestrator."""

    id: str
    landmarks: Sequence[str]
    active: bool = True
    created_at: float = field(default_factory=time.time)


@dataclass
class Detection:
    """A labelled detection returned by the vision endpoint."""

    label: str
    confidence: float
    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0
    class_id: Optional[int] = None
    detection_id: Optional[str] = None


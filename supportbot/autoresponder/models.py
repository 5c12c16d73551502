"""
Queue model for the support autoresponder.

Defines:
- Message: a normalized chat message waiting for a reply
- Channel: per-channel queue and last agent activity
- ReplyDecision: outcome of evaluating a queued message
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loguru import logger


class MalformedMessageError(ValueError):
    """Raised when a message payload is missing required fields."""


class ReplyDecision(str, Enum):
    """Outcome of evaluating a queued message on a tick."""
    SEND = "send"       # Reply now and remove from the queue
    DROP = "drop"       # Remove from the queue without replying
    DEFER = "defer"     # Keep queued, check again next tick


# Fields that must be present (and non-empty strings) on every message
_REQUIRED_STR_FIELDS = ("id", "user_id", "channel_id", "channel_name", "type")


@dataclass(frozen=True)
class Message:
    """
    A user message as seen by the autoresponder.

    Attributes:
        id: Message identifier (the Slack event ts)
        user_id: Author's user ID
        email_address: Author's email, if known
        channel_id: Channel the message was posted in
        channel_name: Human-readable channel name (matched against rooms)
        timestamp: POSIX seconds when the message was posted
        type: Event type, "message" for user messages
        subtype: Event subtype; set for system and bot events
        text: Raw message text
        is_agent: Whether the author is a support agent
    """
    id: str
    user_id: str
    channel_id: str
    channel_name: str
    timestamp: float
    type: str = "message"
    subtype: str | None = None
    text: str = ""
    email_address: str | None = None
    is_agent: bool = False

    def __post_init__(self) -> None:
        for name in _REQUIRED_STR_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, str) or not value:
                raise MalformedMessageError(f"Message field '{name}' is missing or empty")
        if isinstance(self.timestamp, bool) or not isinstance(self.timestamp, (int, float)):
            raise MalformedMessageError(f"Message timestamp must be a number, got {self.timestamp!r}")
        if not isinstance(self.text, str):
            raise MalformedMessageError("Message text must be a string")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "email_address": self.email_address,
            "channel_id": self.channel_id,
            "channel_name": self.channel_name,
            "timestamp": self.timestamp,
            "type": self.type,
            "subtype": self.subtype,
            "text": self.text,
            "is_agent": self.is_agent,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        """
        Create from dictionary.

        Raises:
            MalformedMessageError: If required fields are missing or invalid.
        """
        if not isinstance(data, dict):
            raise MalformedMessageError(f"Expected a mapping, got {type(data).__name__}")
        try:
            return cls(
                id=data["id"],
                user_id=data["user_id"],
                channel_id=data["channel_id"],
                channel_name=data["channel_name"],
                timestamp=data["timestamp"],
                type=data.get("type", "message"),
                subtype=data.get("subtype") or None,
                text=data.get("text") or "",
                email_address=data.get("email_address"),
                is_agent=bool(data.get("is_agent", False)),
            )
        except KeyError as e:
            raise MalformedMessageError(f"Message field {e} is missing") from e


@dataclass
class Channel:
    """
    A monitored channel and its pending messages.

    Messages are kept in arrival order. last_agent_message_time only
    moves forward.
    """
    id: str
    last_agent_message_time: float = 0.0
    messages: list[Message] = field(default_factory=list)

    def record_agent_activity(self, timestamp: float) -> None:
        """Advance last agent activity and clear the pending queue."""
        if self.last_agent_message_time < timestamp:
            self.last_agent_message_time = timestamp
        self.messages.clear()

    def remove(self, message_ids: set[str]) -> None:
        """Remove messages by ID, keeping the order of the rest."""
        if message_ids:
            self.messages = [m for m in self.messages if m.id not in message_ids]

    @property
    def is_empty(self) -> bool:
        return not self.messages

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "last_agent_message_time": self.last_agent_message_time,
            "messages": [m.to_dict() for m in self.messages],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Channel":
        """
        Create from dictionary.

        Stored messages that no longer validate are skipped with a warning
        rather than failing the whole channel.
        """
        messages = []
        for raw in data.get("messages", []):
            try:
                messages.append(Message.from_dict(raw))
            except MalformedMessageError as e:
                logger.warning(f"Discarding malformed queued message in channel {data.get('id')}: {e}")

        return cls(
            id=data["id"],
            last_agent_message_time=float(data.get("last_agent_message_time") or 0),
            messages=messages,
        )

"""Chat channel integrations for SupportBot."""

from supportbot.channels.slack import SlackChannel, message_from_event

__all__ = ["SlackChannel", "message_from_event"]

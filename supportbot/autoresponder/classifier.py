"""
Enqueue classifier for the support autoresponder.

Decides whether an incoming message should wait for an automatic reply.
A message is skipped when:
1. It was posted outside the monitored rooms
2. It is not a plain user message (joins, bot posts, edits)
3. Agents are on shift (office hours)
4. It opens by addressing someone else (a reply, not a new request)
5. An agent wrote it (also clears the channel's queue)
6. It follows an agent message closely enough to be part of that conversation
"""

import re

from loguru import logger

from supportbot.autoresponder.models import Channel, Message
from supportbot.config.schema import AutoresponderConfig


MESSAGE_MENTION_REGEX = re.compile(r"^<@.*>", re.IGNORECASE)


def is_directed_mention(text: str) -> bool:
    """Check if a message opens by mentioning a user."""
    return bool(MESSAGE_MENTION_REGEX.match(text or ""))


def _should_enqueue(
    channel: Channel,
    message: Message,
    config: AutoresponderConfig,
    now: float,
) -> bool:
    # Only certain rooms get responders
    if message.channel_name not in config.rooms:
        logger.info(f"Skipping message: Not responding to '{message.channel_name}' channel.")
        return False

    # Only handle normal user messages
    if message.type != "message" or message.subtype:
        logger.info("Skipping message: Message is not a user generated message")
        return False

    if config.is_office_hours(now):
        logger.info("Skipping message: We are inside office hours, agents will respond.")
        return False

    if is_directed_mention(message.text):
        logger.info("Skipping message: Message is a reply to somebody")
        return False

    # Agent messages are never answered and invalidate whatever is queued
    if message.is_agent:
        logger.info("Skipping message: Message is from an agent.")
        channel.record_agent_activity(message.timestamp)
        logger.info(f"Agent active in {channel.id}, cleared message queue.")
        return False

    if message.timestamp - config.conversation_timeout < channel.last_agent_message_time:
        logger.info("Skipping message: This message seems like it might be a reply to an agent")
        return False

    return True


def should_enqueue(
    channel: Channel,
    message: Message,
    config: AutoresponderConfig,
    now: float,
) -> bool:
    """
    Check if a message should be added to the channel's pending queue.

    May mutate the channel: an agent message advances
    last_agent_message_time and empties the queue.

    Args:
        channel: The channel the message was posted in
        message: The incoming message
        config: Autoresponder settings
        now: Current POSIX time, used for the office-hours check

    Returns:
        True if the message should be queued. Any error while inspecting
        the message counts as not eligible.
    """
    try:
        return _should_enqueue(channel, message, config, now)
    except Exception as e:
        logger.warning(f"Skipping message: could not classify {getattr(message, 'id', '?')}: {e}")
        return False

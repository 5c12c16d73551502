"""
Autoresponder engine for SupportBot.

Owns the pending-message queues and decides, on every scheduler tick,
which queued messages get an automatic reply:
1. Enqueue incoming messages that pass the classifier
2. Evaluate each queued message (send, drop or defer)
3. Enforce the per-user reply cooldown
4. Hand due replies to the message sender
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from loguru import logger

from supportbot.autoresponder.classifier import should_enqueue
from supportbot.autoresponder.models import Channel, Message, ReplyDecision
from supportbot.autoresponder.ratelimit import UserReplyLimiter
from supportbot.config.schema import AutoresponderConfig
from supportbot.store.base import StateStore


CHANNELS_KEY = "support_channels"

# Async function(message) that posts the automatic reply; raising means failure
MessageSender = Callable[[Message], Awaitable[None]]


def should_send_reply(
    channel: Channel,
    message: Message,
    config: AutoresponderConfig,
    now: float,
    last_reply: float | None,
) -> ReplyDecision:
    """
    Decide what to do with a queued message.

    Timing checks come before the cooldown check so that a deferred
    message never uses up the user's reply slot.

    Args:
        channel: The channel the message is queued in
        message: The queued message
        config: Autoresponder settings
        now: Current POSIX time
        last_reply: When the user last got an automatic reply, if ever

    Returns:
        SEND to reply now, DROP to discard, DEFER to check again later.
    """
    if message.timestamp > now - config.timeout:
        logger.info("Check later: Message is not old enough to respond.")
        return ReplyDecision.DEFER

    # It is weird to have the bot reply instantly
    if message.timestamp > now - config.minimum_reply_timeout:
        logger.info("Check later: Too soon to reply to message, skipping for now.")
        return ReplyDecision.DEFER

    if now - config.agent_wait_timeout < channel.last_agent_message_time:
        logger.info("Check later: Agents have been in the room recently, dont respond just yet")
        return ReplyDecision.DEFER

    if last_reply is not None and last_reply > now - config.user_limit_timeout:
        logger.info("Skipping message: We already sent this user a message in the allowed time.")
        return ReplyDecision.DROP

    return ReplyDecision.SEND


@dataclass
class TickResult:
    """Summary of one evaluation tick."""
    channels: int = 0
    sent: int = 0
    dropped: int = 0
    deferred: int = 0
    errors: int = 0
    failed_sends: int = 0
    decisions: list[tuple[Message, ReplyDecision]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "channels": self.channels,
            "sent": self.sent,
            "dropped": self.dropped,
            "deferred": self.deferred,
            "errors": self.errors,
            "failed_sends": self.failed_sends,
        }


class AutoresponderEngine:
    """
    Queues unanswered messages and sends automatic replies when due.

    All reads and writes of the channel collection happen under one
    asyncio lock, so the enqueue path and the evaluation tick never
    overwrite each other's updates. Replies are sent after the lock is
    released, each bounded by send_timeout.
    """

    def __init__(
        self,
        store: StateStore,
        config: AutoresponderConfig | None = None,
        sender: MessageSender | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the engine.

        Args:
            store: State store holding channel queues and reply times
            config: Autoresponder settings
            sender: Async function that posts the automatic reply
            clock: Returns the current POSIX time
        """
        self.store = store
        self.config = config or AutoresponderConfig()
        self.sender = sender
        self.clock = clock
        self.limiter = UserReplyLimiter(store, self.config.user_limit_timeout)

        self._lock = asyncio.Lock()
        self._inflight: set[asyncio.Task] = set()

        # Stats
        self._total_enqueued = 0
        self._total_sent = 0
        self._total_dropped = 0
        self._total_failed = 0
        self._last_tick: float | None = None

    # ========== Persistence ==========

    def _load_channels(self) -> list[Channel]:
        """Load all channels from the store."""
        raw = self.store.get(CHANNELS_KEY) or []
        channels = []
        for data in raw:
            if not isinstance(data, dict):
                logger.warning(f"Discarding unreadable channel record: {data!r}")
                continue
            try:
                channels.append(Channel.from_dict(data))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Discarding unreadable channel record: {e}")
        return channels

    def _save_channels(self, channels: list[Channel]) -> None:
        """Write the full channel collection back to the store."""
        self.store.set(CHANNELS_KEY, [c.to_dict() for c in channels])

    def _is_stale(self, channel: Channel, now: float) -> bool:
        """
        Check if an empty channel can be dropped from storage.

        Once agent activity is older than every window that reads it, a
        fresh channel record behaves the same as the stored one.
        """
        if not channel.is_empty:
            return False
        horizon = max(self.config.conversation_timeout, self.config.agent_wait_timeout)
        return channel.last_agent_message_time < now - horizon

    # ========== Enqueue path ==========

    async def enqueue(self, message: Message) -> bool:
        """
        Handle an incoming message.

        Creates the channel record on first sight, runs the classifier and
        queues the message if it is eligible. The channel collection is
        persisted either way, since agent messages change channel state.

        Returns:
            True if the message was queued.
        """
        logger.debug(f"Received message {message.id} in {message.channel_id}")

        async with self._lock:
            channels = self._load_channels()
            channel = next((c for c in channels if c.id == message.channel_id), None)
            if channel is None:
                channel = Channel(id=message.channel_id)
                channels.append(channel)

            queued = False
            if any(m.id == message.id for m in channel.messages):
                logger.debug(f"Message {message.id} already queued")
            elif should_enqueue(channel, message, self.config, self.clock()):
                channel.messages.append(message)
                queued = True
                self._total_enqueued += 1
                logger.info(f"Message {message.id} queued in {channel.id}")

            self._save_channels(channels)

        return queued

    # ========== Evaluation ==========

    def evaluate(
        self,
        channel: Channel,
        message: Message,
        now: float,
        replied: dict[str, float] | None = None,
    ) -> ReplyDecision:
        """
        Evaluate a queued message against the stored reply history.

        Args:
            channel: Channel the message is queued in
            message: The queued message
            now: Current POSIX time
            replied: Replies decided earlier in the same tick (user_id -> time)
        """
        last_reply = (replied or {}).get(message.user_id)
        if last_reply is None:
            last_reply = self.limiter.last_reply(message.user_id)
        return should_send_reply(channel, message, self.config, now, last_reply)

    async def run_tick(self, now: float | None = None, dry_run: bool = False) -> TickResult:
        """
        Run one evaluation pass over every queued message.

        A failure in one channel or message is logged and skipped. A failure
        before the updated queue is stored makes the whole tick a no-op, and
        the next tick starts over from the persisted state. Messages already
        taken off the queue are always sent.

        Args:
            now: Evaluation time, defaults to the engine clock
            dry_run: Only report decisions; leave state untouched, send nothing

        Returns:
            Counts of what happened, plus each decision made.
        """
        now = self.clock() if now is None else now
        result = TickResult()
        to_send: list[Message] = []

        logger.info("Running scheduled job...")

        # Set once the due messages are out of the stored queue; from then
        # on they must be dispatched whatever fails afterwards
        committed = False

        async with self._lock:
            try:
                channels = self._load_channels()
                replied: dict[str, float] = {}

                for channel in channels:
                    try:
                        to_send.extend(self._evaluate_channel(channel, now, replied, result))
                    except Exception:
                        result.errors += 1
                        logger.exception(f"Failed to process channel {channel.id}")

                result.channels = len(channels)

                if not dry_run:
                    # Queue and cooldowns go to storage in one write
                    with self.store.batch():
                        kept = [c for c in channels if not self._is_stale(c, now)]
                        self._save_channels(kept)
                        committed = True
                        for user_id, replied_at in replied.items():
                            self.limiter.record(user_id, replied_at)
            except Exception:
                logger.exception("Scheduled job failed")
                result.errors += 1
                if not committed:
                    return result
            finally:
                self._last_tick = now

        if dry_run:
            return result

        self._total_sent += result.sent
        self._total_dropped += result.dropped

        if to_send:
            result.failed_sends = await self._dispatch(to_send)

        return result

    def _evaluate_channel(
        self,
        channel: Channel,
        now: float,
        replied: dict[str, float],
        result: TickResult,
    ) -> list[Message]:
        """Evaluate one channel's queue and return the messages to reply to."""
        logger.info(f"Channel {channel.id} currently has {len(channel.messages)} message(s) in the queue.")

        due = []
        removed: set[str] = set()

        # Iterate a snapshot; the queue is compacted afterwards
        for message in list(channel.messages):
            try:
                decision = self.evaluate(channel, message, now, replied)
            except Exception:
                # Never keep a message that cannot be evaluated
                logger.exception(f"Failed to evaluate message {message.id}, removing it")
                result.errors += 1
                removed.add(message.id)
                continue

            result.decisions.append((message, decision))

            if decision == ReplyDecision.SEND:
                logger.info(f"Replying to message {message.id}")
                replied[message.user_id] = now
                due.append(message)
                removed.add(message.id)
                result.sent += 1
            elif decision == ReplyDecision.DROP:
                logger.info(f"Deleting message {message.id}")
                removed.add(message.id)
                result.dropped += 1
            else:
                logger.info(f"Keeping message {message.id}")
                result.deferred += 1

        channel.remove(removed)
        return due

    # ========== Sending ==========

    async def _dispatch(self, messages: list[Message]) -> int:
        """
        Send replies concurrently.

        The sends are shielded: cancelling the caller leaves them running
        in _inflight, where close() waits for them.

        Returns:
            Number of sends that failed or timed out.
        """
        tasks = [asyncio.create_task(self._send_one(m)) for m in messages]
        for task in tasks:
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

        results = await asyncio.gather(*(asyncio.shield(t) for t in tasks))
        return sum(1 for ok in results if not ok)

    async def _send_one(self, message: Message) -> bool:
        """Send one reply. Failures are logged and never retried."""
        if self.sender is None:
            logger.warning(f"No message sender configured, not replying to {message.id}")
            return False

        try:
            await asyncio.wait_for(self.sender(message), timeout=self.config.send_timeout)
            return True
        except asyncio.TimeoutError:
            logger.error(f"Timed out replying to message {message.id} after {self.config.send_timeout}s")
        except Exception as e:
            logger.error(f"Failed to reply to message {message.id}: {e}")

        self._total_failed += 1
        return False

    # ========== Lifecycle ==========

    async def close(self) -> None:
        """Wait for in-flight replies and flush state."""
        if self._inflight:
            logger.info(f"Waiting for {len(self._inflight)} in-flight replies")
            await asyncio.gather(*self._inflight, return_exceptions=True)

        async with self._lock:
            self.store.flush()

    # ========== Status ==========

    def get_channels(self) -> list[Channel]:
        """Get a snapshot of all stored channels."""
        return self._load_channels()

    def get_stats(self) -> dict[str, Any]:
        """Get engine statistics."""
        return {
            "total_enqueued": self._total_enqueued,
            "total_sent": self._total_sent,
            "total_dropped": self._total_dropped,
            "total_failed": self._total_failed,
            "inflight": len(self._inflight),
            "last_tick": self._last_tick,
        }

    def get_status(self) -> dict[str, Any]:
        """Get queue status per channel."""
        channels = self._load_channels()
        return {
            "enabled": self.config.enabled,
            "rooms": list(self.config.rooms),
            "channels": [
                {
                    "id": c.id,
                    "queued": len(c.messages),
                    "last_agent_message_time": c.last_agent_message_time,
                    "oldest_message": min((m.timestamp for m in c.messages), default=None),
                }
                for c in channels
            ],
            "queued_total": sum(len(c.messages) for c in channels),
            **self.get_stats(),
        }

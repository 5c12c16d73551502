"""
Support autoresponder for SupportBot.

Provides:
- Message classification (what gets queued)
- Per-channel pending queues
- Timed reply decisions with per-user cooldown
- Fixed-interval scheduling
"""

from supportbot.autoresponder.models import (
    Channel,
    Message,
    ReplyDecision,
    MalformedMessageError,
)
from supportbot.autoresponder.classifier import (
    should_enqueue,
    is_directed_mention,
)
from supportbot.autoresponder.engine import (
    AutoresponderEngine,
    MessageSender,
    TickResult,
    should_send_reply,
)
from supportbot.autoresponder.ratelimit import UserReplyLimiter
from supportbot.autoresponder.scheduler import AutoresponderScheduler

__all__ = [
    # Models
    "Channel",
    "Message",
    "ReplyDecision",
    "MalformedMessageError",
    # Classifier
    "should_enqueue",
    "is_directed_mention",
    # Engine
    "AutoresponderEngine",
    "MessageSender",
    "TickResult",
    "should_send_reply",
    "UserReplyLimiter",
    # Scheduler
    "AutoresponderScheduler",
]

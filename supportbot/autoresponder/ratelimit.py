"""
Per-user rate limiting for automatic replies.

Each user gets at most one automatic reply per cooldown window, across
all channels. The last reply time is kept in the state store so the
limit survives restarts.
"""

from loguru import logger

from supportbot.store.base import StateStore


USER_MESSAGE_KEY = "user_message_"


class UserReplyLimiter:
    """Tracks when each user last received an automatic reply."""

    def __init__(self, store: StateStore, cooldown_seconds: float):
        self.store = store
        self.cooldown_seconds = cooldown_seconds

    @staticmethod
    def _key(user_id: str) -> str:
        return USER_MESSAGE_KEY + user_id

    def last_reply(self, user_id: str) -> float | None:
        """Get the time of the last automatic reply to a user, if any."""
        value = self.store.get(self._key(user_id))
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring unreadable reply time for {user_id}: {value!r}")
            return None

    def is_limited(self, user_id: str, now: float) -> bool:
        """Check if the user was already messaged inside the cooldown window."""
        last = self.last_reply(user_id)
        return last is not None and last > now - self.cooldown_seconds

    def record(self, user_id: str, now: float) -> None:
        """Record an automatic reply attempt to a user."""
        self.store.set(self._key(user_id), now)

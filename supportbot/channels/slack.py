"""
Slack channel integration for SupportBot.

Uses Slack Bolt SDK in Socket Mode for:
- Feeding channel messages to the autoresponder
- Posting automatic replies
- Welcoming users who join support rooms
"""

from typing import Any

from loguru import logger
from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler
from slack_bolt.async_app import AsyncApp

from supportbot.autoresponder.engine import AutoresponderEngine
from supportbot.autoresponder.models import MalformedMessageError, Message
from supportbot.config.schema import Config


def message_from_event(
    event: dict[str, Any],
    channel_name: str,
    email_address: str | None,
    is_agent: bool,
) -> Message:
    """
    Build a Message from a raw Slack message event.

    Args:
        event: Slack "message" event payload
        channel_name: Resolved name of event["channel"]
        email_address: Author's email, if it could be resolved
        is_agent: Whether the author is a support agent

    Raises:
        MalformedMessageError: If the event lacks required fields.
    """
    ts = event.get("ts")
    try:
        timestamp = float(ts)
    except (TypeError, ValueError) as e:
        raise MalformedMessageError(f"Slack event has no usable ts: {ts!r}") from e

    return Message(
        id=str(ts),
        user_id=event.get("user") or "",
        email_address=email_address,
        channel_id=event.get("channel") or "",
        channel_name=channel_name,
        timestamp=timestamp,
        type=event.get("type") or "",
        subtype=event.get("subtype") or None,
        text=event.get("text") or "",
        is_agent=is_agent,
    )


class SlackChannel:
    """
    Slack integration using Slack Bolt SDK.

    Configuration (via Config):
    - slack.bot_token: Bot User OAuth Token (xoxb-...)
    - slack.app_token: App-Level Token for Socket Mode (xapp-...)
    - slack.signing_secret: Signing secret for request verification
    - slack.username / slack.icon_url: How automatic replies appear
    - company_email_domain: Authors at this domain are agents
    """

    name = "slack"

    def __init__(
        self,
        config: Config,
        engine: AutoresponderEngine,
        app: AsyncApp | None = None,
    ):
        """
        Initialize Slack channel.

        Args:
            config: Root configuration.
            engine: Autoresponder that receives incoming messages.
            app: Pre-built Bolt app, mainly for tests.
        """
        self.config = config
        self.engine = engine

        self.app = app or AsyncApp(
            token=config.slack.bot_token,
            signing_secret=config.slack.signing_secret,
        )

        self._handler: AsyncSocketModeHandler | None = None
        self._bot_user_id: str = ""
        self._running = False

        # Lookup caches: channel_id -> name, user_id -> email
        self._channel_names: dict[str, str] = {}
        self._user_emails: dict[str, str | None] = {}

        self._setup_handlers()

    def _setup_handlers(self) -> None:
        """Set up Slack event handlers."""

        @self.app.event("message")
        async def handle_message(event, client):
            await self._handle_message_event(event, client)

        @self.app.event("member_joined_channel")
        async def handle_member_joined(event, client):
            await self._handle_member_joined(event, client)

    async def _channel_name(self, client, channel_id: str) -> str:
        """Resolve a channel ID to its name, cached."""
        if channel_id not in self._channel_names:
            response = await client.conversations_info(channel=channel_id)
            self._channel_names[channel_id] = response["channel"].get("name", "")
        return self._channel_names[channel_id]

    async def _user_email(self, client, user_id: str) -> str | None:
        """Resolve a user ID to their profile email, cached."""
        if user_id not in self._user_emails:
            try:
                response = await client.users_info(user=user_id)
                profile = response["user"].get("profile", {})
                self._user_emails[user_id] = profile.get("email") or None
            except Exception as e:
                # Missing users:read.email scope or deleted user; treat as non-agent
                logger.warning(f"Could not look up email for {user_id}: {e}")
                return None
        return self._user_emails[user_id]

    async def _handle_message_event(self, event: dict[str, Any], client) -> None:
        """Normalize a message event and hand it to the autoresponder."""
        user_id = event.get("user", "")

        # Skip our own posts and events without an author (edits, deletions)
        if event.get("bot_id") or not user_id or user_id == self._bot_user_id:
            return

        try:
            channel_name = await self._channel_name(client, event.get("channel", ""))
            email = await self._user_email(client, user_id)
            message = message_from_event(
                event,
                channel_name=channel_name,
                email_address=email,
                is_agent=self.config.is_agent_email(email),
            )
            await self.engine.enqueue(message)
        except MalformedMessageError as e:
            logger.warning(f"Ignoring malformed Slack event: {e}")
        except Exception as e:
            logger.error(f"Failed to handle Slack message: {e}")

    async def _handle_member_joined(self, event: dict[str, Any], client) -> None:
        """Welcome a user who joined one of the welcome rooms."""
        welcome = self.config.welcome
        if not welcome.enabled:
            return

        user_id = event.get("user", "")
        if not user_id or user_id == self._bot_user_id:
            return

        try:
            channel_name = await self._channel_name(client, event.get("channel", ""))
            if channel_name not in welcome.rooms:
                return

            logger.info(f"Welcoming user {user_id}")
            await self._post(
                client,
                channel=user_id,
                text=welcome.message.format(support_email=self.config.support_email),
            )
        except Exception as e:
            logger.error(f"Failed to welcome user {user_id}: {e}")

    async def _post(self, client, channel: str, text: str) -> None:
        kwargs: dict[str, Any] = {
            "channel": channel,
            "text": text,
            "username": self.config.slack.username,
        }
        if self.config.slack.icon_url:
            kwargs["icon_url"] = self.config.slack.icon_url
        await client.chat_postMessage(**kwargs)

    def format_autoresponse(self, message: Message) -> str:
        """Render the automatic reply for a message's author."""
        return self.config.autoresponder.message.format(
            user=message.user_id,
            support_email=self.config.support_email,
        )

    async def send_autoresponse(self, message: Message) -> None:
        """
        Post the automatic reply in the message's channel.

        Errors propagate so the engine can log the failed send.
        """
        await self._post(
            self.app.client,
            channel=message.channel_id,
            text=self.format_autoresponse(message),
        )

    async def start(self) -> None:
        """Start the Slack channel."""
        logger.info("Starting Slack channel")
        self._running = True

        # Get bot user ID
        try:
            auth_response = await self.app.client.auth_test()
            self._bot_user_id = auth_response.get("user_id", "")
            logger.info(f"Slack bot authenticated as {auth_response.get('user', 'unknown')}")
        except Exception as e:
            logger.error(f"Failed to authenticate Slack bot: {e}")
            self._running = False
            return

        self._handler = AsyncSocketModeHandler(self.app, self.config.slack.app_token)

        try:
            await self._handler.start_async()
        except Exception as e:
            logger.error(f"Slack channel error: {e}")
            self._running = False

    async def stop(self) -> None:
        """Stop the Slack channel."""
        logger.info("Stopping Slack channel")
        self._running = False

        if self._handler:
            await self._handler.close_async()
            self._handler = None

    @property
    def is_running(self) -> bool:
        """Check if the channel is running."""
        return self._running

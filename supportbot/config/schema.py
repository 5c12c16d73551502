"""Configuration schema using Pydantic."""

import re
from datetime import datetime, time
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

_HHMM_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")

DEFAULT_AUTORESPOND_MESSAGE = (
    "<@{user}> It doesn't look like anyone is available right now to help out in chat. "
    "If you would like you can open a support ticket by emailing {support_email}."
)

DEFAULT_WELCOME_MESSAGE = (
    "Welcome! Our support team watches this channel during office hours. "
    "Outside of those hours you can reach us at {support_email}."
)


def _parse_hhmm(value: str) -> time:
    match = _HHMM_RE.match(value.strip())
    if not match:
        raise ValueError(f"Expected HH:MM, got {value!r}")
    return time(int(match.group(1)), int(match.group(2)))


class OfficeHours(BaseModel):
    """Office hours for one day of the week."""
    start: str = "09:00"  # HH:MM
    end: str = "17:00"  # HH:MM

    @field_validator("start", "end")
    @classmethod
    def _check_hhmm(cls, v: str) -> str:
        _parse_hhmm(v)
        return v.strip()

    @property
    def start_time(self) -> time:
        return _parse_hhmm(self.start)

    @property
    def end_time(self) -> time:
        return _parse_hhmm(self.end)

    def contains(self, moment: time) -> bool:
        """Check if a wall-clock time falls strictly inside these hours."""
        return self.start_time < moment < self.end_time


def _default_office_hours() -> dict[str, OfficeHours]:
    return {day: OfficeHours() for day in WEEKDAYS[:5]}


class SlackConfig(BaseModel):
    """Slack connection configuration."""
    bot_token: str = ""  # Bot User OAuth Token (xoxb-...)
    app_token: str = ""  # App-Level Token for Socket Mode (xapp-...)
    signing_secret: str = ""  # Signing secret for verification
    username: str = "support"  # Display name for bot posts
    icon_url: str = ""


class AutoresponderConfig(BaseModel):
    """Autoresponder timing and scope. Durations are in seconds."""
    enabled: bool = True
    rooms: list[str] = Field(default_factory=lambda: ["general"])  # Channel names to watch
    job_interval: int = Field(30, gt=0)  # Seconds between evaluation ticks
    timeout: int = Field(300, ge=0)  # Message age before replying
    agent_wait_timeout: int = Field(600, ge=0)  # Grace period after agent activity
    conversation_timeout: int = Field(120, ge=0)  # Messages this soon after an agent are replies
    user_limit_timeout: int = Field(36000, ge=0)  # Minimum time between replies to one user
    minimum_reply_timeout: int = Field(15, ge=0)  # Never reply faster than this
    send_timeout: float = Field(10.0, gt=0)  # Bound on a single send
    office_hours: dict[str, OfficeHours] = Field(default_factory=_default_office_hours)
    office_hours_timezone: str = "UTC"  # IANA zone name
    message: str = DEFAULT_AUTORESPOND_MESSAGE  # {user}, {support_email}

    @field_validator("rooms", mode="before")
    @classmethod
    def _split_rooms(cls, v):
        # Allow "general,help" from env vars
        if isinstance(v, str):
            return [r.strip() for r in v.split(",") if r.strip()]
        return v

    @field_validator("office_hours")
    @classmethod
    def _check_weekdays(cls, v: dict[str, OfficeHours]) -> dict[str, OfficeHours]:
        normalized = {}
        for day, hours in v.items():
            key = day.strip().lower()
            if key not in WEEKDAYS:
                raise ValueError(f"Unknown weekday in office_hours: {day!r}")
            normalized[key] = hours
        return normalized

    @field_validator("office_hours_timezone")
    @classmethod
    def _check_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v!r}") from e
        return v

    def hours_for(self, moment: datetime) -> OfficeHours | None:
        """Get office hours for the weekday of a datetime."""
        return self.office_hours.get(WEEKDAYS[moment.weekday()])

    def is_office_hours(self, timestamp: float) -> bool:
        """Check if a POSIX timestamp falls inside office hours."""
        moment = datetime.fromtimestamp(timestamp, ZoneInfo(self.office_hours_timezone))
        hours = self.hours_for(moment)
        if hours is None:
            return False
        return hours.contains(moment.time())


class WelcomeConfig(BaseModel):
    """Welcome message for users joining support rooms."""
    enabled: bool = False
    rooms: list[str] = Field(default_factory=lambda: ["general"])
    message: str = DEFAULT_WELCOME_MESSAGE  # {support_email}

    @field_validator("rooms", mode="before")
    @classmethod
    def _split_rooms(cls, v):
        if isinstance(v, str):
            return [r.strip() for r in v.split(",") if r.strip()]
        return v


class Config(BaseSettings):
    """Root configuration for SupportBot."""
    slack: SlackConfig = Field(default_factory=SlackConfig)
    autoresponder: AutoresponderConfig = Field(default_factory=AutoresponderConfig)
    welcome: WelcomeConfig = Field(default_factory=WelcomeConfig)
    company_email_domain: str = ""  # example.com; authors at this domain are agents
    support_email: str = ""
    state_path: str = "~/.supportbot/state.json"

    @property
    def state_file(self) -> Path:
        """Get expanded state file path."""
        return Path(self.state_path).expanduser()

    def is_agent_email(self, email: str | None) -> bool:
        """
        Check if an email address belongs to a support agent.

        Args:
            email: Author email, possibly empty.

        Returns:
            True if the address is at the company domain.
        """
        domain = self.company_email_domain.strip().lstrip("@").lower()
        if not email or not domain:
            return False
        return email.strip().lower().endswith("@" + domain)

    class Config:
        env_prefix = "SUPPORTBOT_"
        env_nested_delimiter = "__"

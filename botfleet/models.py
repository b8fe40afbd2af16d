# FilePath: "/botfleet/models.py"
# Project: BotFleet
# Description: Data models for bot configuration records, session handles and inbound messages.
# Author: "Michael Landbo"
# Date created: "19/10/2026"
# Version: "v.1.0.0"

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BotConfig(BaseModel):
    """
    Configuration record for one bot identity.

    Stored with camelCase keys (`systemPolicy`, `authorizedOperatorIds`, `createdAt`)
    so the dashboard and the fleet share one file format.
    """
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., min_length=1, description="Opaque, unique bot identifier")
    name: Optional[str] = Field(None, description="Display name shown to operators")
    platform: str = Field("telegram", description="Messaging transport tag")
    token: Optional[str] = Field(None, description="Transport secret; absent means the bot is never started")
    enabled: bool = True
    system_policy: str = Field("", alias="systemPolicy")
    authorized_operator_ids: List[str] = Field(default_factory=list, alias="authorizedOperatorIds")
    created_at: datetime = Field(default_factory=_utcnow, alias="createdAt")

    @field_validator("token", mode="before")
    @classmethod
    def _blank_token_is_absent(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("system_policy", mode="before")
    @classmethod
    def _none_policy_is_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("authorized_operator_ids", mode="before")
    @classmethod
    def _operator_ids_as_strings(cls, value: Any) -> Any:
        # Telegram ids arrive as numbers from older records
        if value is None:
            return []
        if isinstance(value, (list, tuple, set)):
            return [str(v) for v in value if v is not None and str(v) != ""]
        return value

    @property
    def is_launchable(self) -> bool:
        """True when the fleet should run a session for this bot"""
        return self.enabled and bool(self.token)

    def to_record(self) -> Dict[str, Any]:
        """Serialize to the on-disk JSON shape"""
        return self.model_dump(by_alias=True, mode="json")

    def masked(self) -> Dict[str, Any]:
        """Record with the token hidden, for operator-facing output"""
        record = self.to_record()
        if self.token:
            record["token"] = f"{self.token[:4]}…{self.token[-2:]}" if len(self.token) > 8 else "***"
        return record


class SessionState(Enum):
    """BotSession lifecycle states"""
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.STOPPED, SessionState.ERRORED)


@dataclass(frozen=True)
class SessionHandle:
    """Read-only snapshot of one session as seen by the fleet manager"""
    bot_id: str
    state: SessionState
    last_error: Optional[str] = None
    started_at: Optional[datetime] = None
    platform: str = "telegram"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bot_id": self.bot_id,
            "state": self.state.value,
            "last_error": self.last_error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "platform": self.platform,
        }


@dataclass
class InboundMessage:
    """A text message received by a bot, normalized across transports"""
    sender_id: str
    chat_id: str
    text: str
    message_id: Optional[str] = None
    extras: Dict[str, Any] = field(default_factory=dict)
    received_at: datetime = field(default_factory=_utcnow)


@dataclass
class ContextRecord:
    """Private knowledge blob for one bot"""
    bot_id: str
    text: str


@dataclass
class CompletionOptions:
    """Knobs for a single completion request"""
    max_tokens: int = 300
    temperature: float = 0.2
    timeout: float = 30.0
    model: Optional[str] = None


__all__ = [
    "BotConfig",
    "SessionState",
    "SessionHandle",
    "InboundMessage",
    "ContextRecord",
    "CompletionOptions",
]

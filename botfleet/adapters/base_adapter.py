# FILEPATH: botfleet/adapters/base_adapter.py
# PROJECT: BotFleet
# COMPONENT: Messaging Transport Base Classes
#
# LICENSE: Apache-2.0
# AUTHOR: Michael Landbo
#
# DESCRIPTION:
#   Defines the transport contract every bot session runs against: begin
#   receiving (dropping anything buffered before start), receive the next
#   inbound text message, send a text reply, stop receiving.
#   QueuedTransport is the shared base for transports that pull updates in a
#   background task and hand them to the session through an asyncio.Queue.
#
# VERSION: 1.0.0
# CREATED: 2026-10-19
# LAST EDIT: 2026-10-19

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union
import asyncio
import logging

from ..exceptions import TransportError
from ..models import InboundMessage

# =========================
# Core Enums & Data Models
# =========================

class TransportStatus(Enum):
    """Transport lifecycle states"""
    INITIALIZING = "initializing"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass
class SendResult:
    """Result of a message send operation"""
    success: bool
    platform_message_id: Optional[str] = None
    error_message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    timestamp: Optional[datetime] = None

    def __post_init__(self):
        if self.details is None:
            self.details = {}
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc)

# ==================
# Transport Contract
# ==================

class MessagingTransport(ABC):
    """
    Base class for all messaging transports.

    One instance serves exactly one bot token. Instances are not reusable:
    once stopped, the session builds a fresh one.
    """

    def __init__(self, bot_id: str, token: str, config: Optional[Dict[str, Any]] = None):
        self.bot_id = bot_id
        self.token = token
        self.config = config or {}
        self.status = TransportStatus.INITIALIZING
        self.logger = logging.getLogger(f"botfleet.adapter.{self.platform_name}")

    @property
    @abstractmethod
    def platform_name(self) -> str:
        """Platform identifier (e.g., 'telegram')"""
        pass

    @abstractmethod
    async def start(self) -> None:
        """
        Connect and begin receiving. Updates queued on the platform before
        this call are discarded. Raises TransportAuthError on a rejected token.
        """
        pass

    @abstractmethod
    async def receive(self) -> InboundMessage:
        """Suspend until the next inbound text message arrives"""
        pass

    @abstractmethod
    async def send_text(self, chat_id: str, text: str) -> SendResult:
        """Send a plain-text reply. Failures are reported in the result, not raised."""
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop receiving and release connections. Safe to call more than once."""
        pass


class QueuedTransport(MessagingTransport):
    """
    Transport whose receive side is an asyncio.Queue fed by a background
    producer. A fatal producer error is queued too and re-raised by receive().
    """

    def __init__(self, bot_id: str, token: str, config: Optional[Dict[str, Any]] = None):
        super().__init__(bot_id, token, config)
        self._inbox: asyncio.Queue[Union[InboundMessage, Exception]] = asyncio.Queue(
            maxsize=self.config.get("queue_size", 1000)
        )

    def _deliver(self, message: InboundMessage) -> None:
        try:
            self._inbox.put_nowait(message)
        except asyncio.QueueFull:
            self.logger.error(f"[{self.bot_id}] Inbox full, dropping message from {message.sender_id}")

    def _fail(self, error: TransportError) -> None:
        """Wake the receiver with an unrecoverable error"""
        self.status = TransportStatus.ERROR
        # A full inbox must still surface the error, so make room for it
        if self._inbox.full():
            self._inbox.get_nowait()
        self._inbox.put_nowait(error)

    async def receive(self) -> InboundMessage:
        item = await self._inbox.get()
        if isinstance(item, Exception):
            raise item
        return item


__all__ = [
    "TransportStatus",
    "SendResult",
    "MessagingTransport",
    "QueuedTransport",
]

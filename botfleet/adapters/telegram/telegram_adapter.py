"""
FilePath: "/botfleet/adapters/telegram/telegram_adapter.py"
Project: BotFleet
Component: Telegram Transport Implementation
Version: 1.0.0
"""

import asyncio
import aiohttp
import json
from typing import Any, Dict, Optional

from ...exceptions import TransportAuthError, TransportError
from ...models import InboundMessage
from ..base_adapter import QueuedTransport, SendResult, TransportStatus

TELEGRAM_API = "https://api.telegram.org"
MAX_MESSAGE_LENGTH = 4096


class TelegramTransport(QueuedTransport):
    """
    Telegram Bot API transport using Long Polling.
    Clears any webhook and drops pending updates on start, so a restarted bot
    never replays messages that arrived while it was down.
    """

    def __init__(self, bot_id: str, token: str, config: Optional[Dict[str, Any]] = None):
        super().__init__(bot_id, token, config)

        # Configuration
        self.api_base = self.config.get("api_base", TELEGRAM_API)
        self.poll_timeout = int(self.config.get("poll_timeout", 30))
        self.retry_delay = float(self.config.get("retry_delay", 5.0))
        self.start_attempts = max(1, int(self.config.get("start_attempts", 3)))

        # State
        self.session: Optional[aiohttp.ClientSession] = self.config.get("session")
        self._owns_session = self.session is None
        self._polling_task: Optional[asyncio.Task] = None
        self.update_offset = 0
        self.username: Optional[str] = None

    # --- Properties ---

    @property
    def platform_name(self) -> str:
        return "telegram"

    # --- Lifecycle ---

    async def start(self) -> None:
        """Verify the token, drop buffered updates, start polling"""
        self.status = TransportStatus.CONNECTING
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.poll_timeout + 15)
            )

        attempt = 1
        while True:
            try:
                await self._connect()
                break
            except TransportAuthError:
                self.status = TransportStatus.ERROR
                await self._close_session()
                raise
            except TransportError as e:
                if attempt >= self.start_attempts:
                    self.status = TransportStatus.ERROR
                    await self._close_session()
                    raise
                self.logger.warning(
                    f"[{self.bot_id}] Connect attempt {attempt}/{self.start_attempts} failed, "
                    f"retrying in {self.retry_delay}s: {e}"
                )
                attempt += 1
                await asyncio.sleep(self.retry_delay)

        self._polling_task = asyncio.create_task(self._polling_loop())
        self.status = TransportStatus.CONNECTED

    async def _connect(self) -> None:
        me = await self._api_call("getMe")
        self.username = me.get("username")
        self.logger.info(f"[{self.bot_id}] Telegram connected as @{self.username} (ID: {me.get('id')})")

        # Clean existing webhooks first to ensure polling works
        await self._api_call("deleteWebhook", {"drop_pending_updates": True})

    async def stop(self) -> None:
        """Cleanup resources"""
        if self.status == TransportStatus.STOPPED:
            return
        self.status = TransportStatus.STOPPING

        if self._polling_task:
            self._polling_task.cancel()
            try:
                await self._polling_task
            except asyncio.CancelledError:
                pass
            self._polling_task = None

        await self._close_session()
        self.status = TransportStatus.STOPPED

    async def _close_session(self) -> None:
        if self.session and self._owns_session:
            await self.session.close()
            self.session = None

    # --- Core Logic: Send Message ---

    async def send_text(self, chat_id: str, text: str) -> SendResult:
        try:
            result = await self._api_call("sendMessage", {
                "chat_id": chat_id,
                "text": text[:MAX_MESSAGE_LENGTH],
            })
            return SendResult(
                success=True,
                platform_message_id=str(result.get("message_id")),
                details={"chat_id": str(result.get("chat", {}).get("id"))}
            )
        except TransportError as e:
            self.logger.error(f"[{self.bot_id}] Telegram Send Error: {e}")
            return SendResult(success=False, error_message=str(e))

    # --- Internal: API & Event Handling ---

    async def _api_call(self, method: str, data: Optional[Dict] = None) -> Any:
        """Helper for raw Telegram API calls"""
        url = f"{self.api_base}/bot{self.token}/{method}"
        try:
            async with self.session.post(url, json=data or {}) as resp:
                # 404 is what Telegram answers for a malformed token
                if resp.status in (401, 404):
                    raise TransportAuthError(
                        f"Telegram rejected the token for bot {self.bot_id} ({resp.status})",
                        {"bot_id": self.bot_id, "method": method}
                    )
                try:
                    result = await resp.json(content_type=None)
                except (json.JSONDecodeError, ValueError) as e:
                    raise TransportError(f"Telegram API returned invalid JSON ({resp.status}): {e}")
                if not isinstance(result, dict):
                    raise TransportError(
                        f"Telegram API returned {type(result).__name__} instead of an object ({resp.status})",
                        {"method": method}
                    )

                if resp.status != 200 or not result.get("ok"):
                    raise TransportError(
                        f"Telegram API Error {resp.status}: {result.get('description')}",
                        {"method": method, "error_code": result.get("error_code")}
                    )
                return result.get("result")
        except aiohttp.ClientError as e:
            raise TransportError(f"Telegram API request failed: {e}", {"method": method})
        except asyncio.TimeoutError:
            raise TransportError(f"Telegram API request timed out: {method}", {"method": method})

    # --- Polling Logic ---

    async def _polling_loop(self):
        while True:
            try:
                updates = await self._api_call("getUpdates", {
                    "offset": self.update_offset,
                    "timeout": self.poll_timeout,
                    "allowed_updates": ["message"]
                })

                if not isinstance(updates, list):
                    raise TransportError(f"getUpdates returned {type(updates).__name__} instead of a list")

                for update in updates:
                    self._handle_update(update)

            except TransportAuthError as e:
                self.logger.error(f"[{self.bot_id}] Polling stopped, token rejected: {e}")
                self._fail(e)
                return
            except TransportError as e:
                self.logger.error(f"[{self.bot_id}] Polling error: {e}")
                await asyncio.sleep(self.retry_delay)
            except Exception as e:
                self.logger.error(f"[{self.bot_id}] Polling stopped by unexpected error: {e}", exc_info=True)
                self._fail(TransportError(f"Telegram polling failed: {type(e).__name__}: {e}"))
                return

    def _handle_update(self, update: Any) -> None:
        """Deliver one update. Malformed updates are logged and skipped."""
        update_id = update.get("update_id") if isinstance(update, dict) else None
        if not isinstance(update_id, int):
            self.logger.warning(f"[{self.bot_id}] Skipping update without update_id: {update!r:.200}")
            return
        self.update_offset = max(self.update_offset, update_id + 1)

        try:
            message = self._to_inbound(update)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            self.logger.warning(f"[{self.bot_id}] Skipping malformed update {update_id}: {e}")
            return
        if message:
            self._deliver(message)

    def _to_inbound(self, update: Dict[str, Any]) -> Optional[InboundMessage]:
        """Only text messages are handed to the session"""
        message = update.get("message")
        if not message or not isinstance(message.get("text"), str):
            return None

        sender = message.get("from") or {}
        chat = message.get("chat") or {}
        if sender.get("id") is None or chat.get("id") is None:
            return None

        return InboundMessage(
            sender_id=str(sender["id"]),
            chat_id=str(chat["id"]),
            text=message["text"],
            message_id=str(message.get("message_id")),
            extras={
                "username": sender.get("username"),
                "chat_type": chat.get("type")
            }
        )

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import pytest

from botfleet.adapters.base_adapter import QueuedTransport, SendResult, TransportStatus
from botfleet.adapters.registry import TransportRegistry
from botfleet.exceptions import TransportAuthError
from botfleet.integrations.llm.base import CompletionClient
from botfleet.models import BotConfig, CompletionOptions, InboundMessage
from botfleet.runtime.session import SessionPolicy
from botfleet.storage import FileContextStore, JsonConfigStore, OperatorDirectory

BAD_TOKEN = "bad-token"


class FakeTransport(QueuedTransport):
    """In-memory transport: tests feed messages in and read replies from `sent`."""

    def __init__(self, bot_id: str, token: str, start_error: Optional[Exception] = None, start_delay: float = 0.0):
        super().__init__(bot_id, token)
        self.start_error = start_error
        self.start_delay = start_delay
        self.sent: List[Tuple[str, str]] = []
        self.start_calls = 0
        self.stop_calls = 0

    @property
    def platform_name(self) -> str:
        return "fake"

    async def start(self) -> None:
        self.start_calls += 1
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        if self.start_error:
            self.status = TransportStatus.ERROR
            raise self.start_error
        self.status = TransportStatus.CONNECTED

    async def send_text(self, chat_id: str, text: str) -> SendResult:
        self.sent.append((chat_id, text))
        return SendResult(success=True, platform_message_id=str(len(self.sent)))

    async def stop(self) -> None:
        self.stop_calls += 1
        self.status = TransportStatus.STOPPED

    def feed(self, sender_id: str, text: str, chat_id: Optional[str] = None) -> None:
        self._deliver(InboundMessage(sender_id=sender_id, chat_id=chat_id or sender_id, text=text))

    def replies(self) -> List[str]:
        return [text for _, text in self.sent]


class FakeCompletionClient(CompletionClient):
    """Records every call; `responder` decides what comes back."""

    def __init__(self, responder: Optional[Callable[[str, str], Awaitable[str]]] = None):
        self.calls: List[Tuple[str, str, Optional[CompletionOptions]]] = []
        self.responder = responder
        self.closed = False

    async def complete(self, system_text: str, user_text: str, options: Optional[CompletionOptions] = None) -> str:
        self.calls.append((system_text, user_text, options))
        if self.responder:
            return await self.responder(system_text, user_text)
        return f"answer: {user_text}"

    async def close(self) -> None:
        self.closed = True


class FakeTransportRegistry(TransportRegistry):
    """
    Registry whose telegram factory builds FakeTransports and remembers them.
    `start_errors[bot_id]` queues one start failure per transport built;
    `start_delays[bot_id]` makes that bot slow to connect.
    """

    def __init__(self):
        super().__init__()
        self.created: Dict[str, List[FakeTransport]] = {}
        self.start_errors: Dict[str, List[Exception]] = {}
        self.start_delays: Dict[str, float] = {}
        self.register("telegram", self._factory)

    def _factory(self, config: BotConfig) -> FakeTransport:
        error = TransportAuthError("401 Unauthorized") if config.token == BAD_TOKEN else None
        queued = self.start_errors.get(config.id)
        if error is None and queued:
            error = queued.pop(0)
        transport = FakeTransport(
            config.id, config.token, start_error=error, start_delay=self.start_delays.get(config.id, 0.0)
        )
        self.created.setdefault(config.id, []).append(transport)
        return transport

    def latest(self, bot_id: str) -> FakeTransport:
        return self.created[bot_id][-1]

    @property
    def create_count(self) -> int:
        return sum(len(v) for v in self.created.values())


async def wait_for_replies(transport: FakeTransport, count: int, timeout: float = 2.0) -> List[str]:
    """Poll until the transport has sent `count` replies"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while len(transport.sent) < count:
        if loop.time() > deadline:
            raise AssertionError(f"expected {count} replies, got {transport.replies()}")
        await asyncio.sleep(0.01)
    return transport.replies()


@pytest.fixture
def config_store(tmp_path):
    return JsonConfigStore(tmp_path / "bots.json")


@pytest.fixture
def context_store(tmp_path):
    return FileContextStore(tmp_path / "info")


@pytest.fixture
def operator_directory(tmp_path):
    return OperatorDirectory(tmp_path / "accounts.json")


@pytest.fixture
def policy():
    return SessionPolicy(completion=CompletionOptions(timeout=2.0), grace_period=0.5)


@pytest.fixture
def registry():
    return FakeTransportRegistry()


@pytest.fixture
def completion_client():
    return FakeCompletionClient()

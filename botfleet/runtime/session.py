"""
FilePath: "/botfleet/runtime/session.py"
Project: BotFleet
Component: Bot Session
Description: Runs the inbound message loop for one bot identity. Applies the command
             authorization check, grounds every completion in the bot's private
             context and contains every failure inside the session.
Author: "Michael Landbo"
Version: "1.0.0"
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Optional, Set, Tuple

from ..adapters.base_adapter import MessagingTransport
from ..exceptions import ConfigError, ProviderError, StorageReadError, TransportAuthError
from ..integrations.llm.base import CompletionClient
from ..metrics import COMPLETION_SECONDS, MESSAGES_COUNTER
from ..models import BotConfig, CompletionOptions, InboundMessage, SessionHandle, SessionState
from ..storage import FileContextStore, JsonConfigStore, OperatorDirectory

PREAMBLE = (
     "You are a friendly company assistant. Answer clearly, factually and helpfully, "
     "and only on the basis of the information you were given."
)
CONTEXT_HEADER = "Use only the following context:"

WELCOME_REPLY = "👋 Hello! Feel free to ask me anything."
PERMISSION_DENIED_REPLY = "⛔ This command is only available to bot operators."
FALLBACK_REPLY = "⚠️ I'm unable to answer right now. Please try again later."
NO_ANSWER_REPLY = "🤔 I don't have any information about that."

# Extra time for cancelled work and the transport to close once the grace period is spent
CLOSE_ALLOWANCE = 0.25


def compose_system_text(policy: str, context: str) -> str:
     """Preamble, then the bot's own policy, then the context it must stay within."""
     parts = [PREAMBLE]
     if policy and policy.strip():
          parts.append(policy.strip())
     parts.append(f"{CONTEXT_HEADER}\n{context}")
     return "\n\n".join(parts)


@dataclass
class SessionPolicy:
     """Conversation knobs shared by every session of a fleet"""
     command_prefix: str = "/"
     public_commands: FrozenSet[str] = frozenset({"/start"})
     completion: CompletionOptions = field(default_factory=CompletionOptions)
     grace_period: float = 5.0

     @classmethod
     def from_settings(cls, settings) -> "SessionPolicy":
          return cls(
               command_prefix=settings.COMMAND_PREFIX,
               public_commands=frozenset(settings.PUBLIC_COMMANDS),
               completion=settings.completion_options(),
               grace_period=settings.STOP_GRACE_PERIOD,
          )


@dataclass
class _SenderLane:
     """Serializes handling for one sender. Dropped when nobody is queued on it."""
     lock: asyncio.Lock = field(default_factory=asyncio.Lock)
     users: int = 0


class BotSession:
     """
     Owns one bot's message handling: Starting -> Running -> Stopping -> Stopped,
     or Running -> Errored when the transport fails for good.

     Messages from different senders are handled concurrently; messages from the
     same sender wait for each other so replies keep the order of the requests.
     """

     def __init__(
          self,
          config: BotConfig,
          transport: MessagingTransport,
          completion_client: CompletionClient,
          context_store: FileContextStore,
          config_store: Optional[JsonConfigStore] = None,
          operator_directory: Optional[OperatorDirectory] = None,
          policy: Optional[SessionPolicy] = None,
     ):
          self.bot_id = config.id
          self.launch_token = config.token
          self.platform = config.platform
          self.transport = transport
          self.completion_client = completion_client
          self.context_store = context_store
          self.config_store = config_store
          self.operator_directory = operator_directory
          self.policy = policy or SessionPolicy()

          self.state = SessionState.STARTING
          self.last_error: Optional[str] = None
          self.retryable = False
          self.started_at: Optional[datetime] = None

          self._config = config
          self._connect_task: Optional[asyncio.Task] = None
          self._receive_task: Optional[asyncio.Task] = None
          self._handlers: Set[asyncio.Task] = set()
          self._lanes: Dict[str, _SenderLane] = {}
          self._stop_task: Optional[asyncio.Task] = None
          self.logger = logging.getLogger(f"botfleet.session.{self.bot_id}")

     # ==================
     # Lifecycle
     # ==================

     def handle(self) -> SessionHandle:
          return SessionHandle(
               bot_id=self.bot_id,
               state=self.state,
               last_error=self.last_error,
               started_at=self.started_at,
               platform=self.platform,
          )

     async def start(self) -> None:
          """
          Connect the transport and begin the receive loop. A stop() that arrives
          while connecting cancels the connect and start() returns quietly.
          """
          if self.state is not SessionState.STARTING:
               raise RuntimeError(f"Session {self.bot_id} cannot start from state {self.state.value}")

          self._connect_task = asyncio.create_task(self.transport.start(), name=f"botfleet-connect-{self.bot_id}")
          try:
               await asyncio.wait({self._connect_task})
          except asyncio.CancelledError:
               self._connect_task.cancel()
               raise

          if self._connect_task.cancelled():
               return
          error = self._connect_task.exception()
          if error is not None:
               if self.state is not SessionState.STARTING:
                    return
               self._mark_errored(error)
               await self._stop_transport()
               raise error

          if self.state is not SessionState.STARTING:
               await self._stop_transport()
               return

          self.started_at = datetime.now(timezone.utc)
          self.state = SessionState.RUNNING
          self._receive_task = asyncio.create_task(self._receive_loop(), name=f"botfleet-receive-{self.bot_id}")
          self.logger.info(f"Bot session running: {self.bot_id}")

     async def stop(self, grace_period: Optional[float] = None) -> None:
          """
          Stop receiving, give in-flight handlers the grace period, then cancel
          whatever is left. Concurrent callers share one shutdown.
          """
          if self.state is SessionState.STOPPED:
               return
          if self._stop_task is None:
               self._stop_task = asyncio.create_task(self._shutdown(grace_period))
          await asyncio.shield(self._stop_task)

     async def _shutdown(self, grace_period: Optional[float]) -> None:
          grace = self.policy.grace_period if grace_period is None else grace_period
          loop = asyncio.get_running_loop()
          deadline = loop.time() + grace
          if self.state is not SessionState.ERRORED:
               self.state = SessionState.STOPPING
          self.logger.info(f"Stopping bot session: {self.bot_id}")

          if self._connect_task and not self._connect_task.done():
               self._connect_task.cancel()
               await asyncio.wait({self._connect_task}, timeout=CLOSE_ALLOWANCE)

          if self._receive_task and self._receive_task is not asyncio.current_task():
               self._receive_task.cancel()
               await asyncio.gather(self._receive_task, return_exceptions=True)

          await self._drain_handlers(deadline)
          await self._stop_transport(max(deadline - loop.time(), CLOSE_ALLOWANCE))

          self.state = SessionState.STOPPED
          self.logger.info(f"Bot session stopped: {self.bot_id}")

     async def _drain_handlers(self, deadline: float) -> None:
          current = asyncio.current_task()
          in_flight = {t for t in self._handlers if t is not current}
          if not in_flight:
               return

          timeout = max(deadline - asyncio.get_running_loop().time(), 0.0)
          _, pending = await asyncio.wait(in_flight, timeout=timeout)
          if pending:
               self.logger.warning(f"Abandoning {len(pending)} in-flight message(s) after the grace period")
               for task in pending:
                    task.cancel()
               await asyncio.wait(pending, timeout=CLOSE_ALLOWANCE)

     async def _stop_transport(self, timeout: Optional[float] = None) -> None:
          if timeout is None:
               timeout = self.policy.grace_period
          try:
               await asyncio.wait_for(self.transport.stop(), timeout=timeout)
          except asyncio.TimeoutError:
               self.logger.error("Transport did not stop within the grace period")
          except Exception as e:
               self.logger.error(f"Error stopping transport: {e}", exc_info=True)

     def _mark_errored(self, error: BaseException) -> None:
          self.state = SessionState.ERRORED
          self.last_error = f"{type(error).__name__}: {error}"
          # A rejected token needs an operator; anything else may clear up on its own
          self.retryable = not isinstance(error, TransportAuthError)
          self.logger.error(f"Bot session errored: {self.last_error}")

     # ===================
     # Message Processing
     # ===================

     async def _receive_loop(self) -> None:
          while self.state is SessionState.RUNNING:
               try:
                    message = await self.transport.receive()
               except asyncio.CancelledError:
                    raise
               except Exception as e:
                    # Only unrecoverable failures reach the session; transports retry the rest
                    self._mark_errored(e)
                    deadline = asyncio.get_running_loop().time() + self.policy.grace_period
                    await self._drain_handlers(deadline)
                    await self._stop_transport()
                    return
               self._dispatch(message)

     def _dispatch(self, message: InboundMessage) -> None:
          lane = self._lanes.get(message.sender_id)
          if lane is None:
               lane = self._lanes[message.sender_id] = _SenderLane()
          lane.users += 1

          task = asyncio.create_task(self._run_in_lane(lane, message))
          self._handlers.add(task)
          task.add_done_callback(self._handlers.discard)

     async def _run_in_lane(self, lane: _SenderLane, message: InboundMessage) -> None:
          try:
               async with lane.lock:
                    await self.handle_message(message)
          except asyncio.CancelledError:
               raise
          except Exception as e:
               self.logger.error(f"Unhandled error for message from {message.sender_id}: {e}", exc_info=True)
          finally:
               lane.users -= 1
               if lane.users == 0 and self._lanes.get(message.sender_id) is lane:
                    del self._lanes[message.sender_id]

     async def handle_message(self, message: InboundMessage) -> Optional[str]:
          """Answer one inbound message. Returns the reply text, or None if nothing was sent."""
          text = (message.text or "").strip()
          if not text:
               return None

          config = await self._current_config()

          if text.startswith(self.policy.command_prefix):
               command = text.split()[0].split("@")[0]
               if command in self.policy.public_commands:
                    return await self._send(message, WELCOME_REPLY, "greeted")
               if not await self._is_operator(message.sender_id, config):
                    self.logger.info(f"Denied command {command} from {message.sender_id}")
                    return await self._send(message, PERMISSION_DENIED_REPLY, "denied")

          reply, outcome = await self._answer(config, text)
          return await self._send(message, reply, outcome)

     async def _answer(self, config: BotConfig, text: str) -> Tuple[str, str]:
          context = await self._read_context()
          system_text = compose_system_text(config.system_policy, context)
          options = self.policy.completion

          try:
               with COMPLETION_SECONDS.labels(bot_id=self.bot_id).time():
                    reply = await asyncio.wait_for(
                         self.completion_client.complete(system_text, text, options),
                         timeout=options.timeout
                    )
          except asyncio.TimeoutError:
               self.logger.error(f"Completion timed out after {options.timeout}s")
               return FALLBACK_REPLY, "fallback"
          except ProviderError as e:
               self.logger.error(f"Completion failed: {e}")
               return FALLBACK_REPLY, "fallback"
          except Exception as e:
               self.logger.error(f"Completion client raised unexpectedly: {e}", exc_info=True)
               return FALLBACK_REPLY, "fallback"

          if not isinstance(reply, str) or not reply.strip():
               return NO_ANSWER_REPLY, "no_answer"
          return reply, "answered"

     async def _send(self, message: InboundMessage, reply: str, outcome: str) -> Optional[str]:
          if self.state.is_terminal:
               self.logger.debug(f"Discarding reply to {message.sender_id}, session is {self.state.value}")
               return None

          result = await self.transport.send_text(message.chat_id, reply)
          if not result.success:
               self.logger.warning(f"Reply to {message.chat_id} failed: {result.error_message}")
          MESSAGES_COUNTER.labels(bot_id=self.bot_id, outcome=outcome).inc()
          return reply

     # ===============
     # Lookups
     # ===============

     async def _current_config(self) -> BotConfig:
          """Fresh record from the store; the last seen copy if it vanished"""
          if self.config_store is None:
               return self._config
          fresh = await self.config_store.get(self.bot_id)
          if fresh is not None:
               self._config = fresh
          return self._config

     async def _read_context(self) -> str:
          try:
               record = await self.context_store.get(self.bot_id)
          except (StorageReadError, ConfigError) as e:
               # Answer without private grounding rather than not at all
               self.logger.warning(f"Context unavailable, answering with empty context: {e}")
               return ""
          return record.text

     async def _is_operator(self, sender_id: str, config: BotConfig) -> bool:
          if sender_id in config.authorized_operator_ids:
               return True
          if self.operator_directory is None:
               return False
          return sender_id in await self.operator_directory.operator_ids(self.bot_id)

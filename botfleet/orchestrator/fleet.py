# FilePath: "/botfleet/orchestrator/fleet.py"
# Project: BotFleet
# Description: Fleet manager. Discovers which bots should run, starts one session per
#              launchable record, reconciles on reload and shuts everything down on exit.
# Author: "Michael Landbo"
# Date created: "19/10/2026"
# Version: "v.1.0.0"

import asyncio
import logging
from collections import Counter
from typing import Dict, List, Optional

from ..adapters.registry import TransportRegistry, create_transport_registry
from ..exceptions import ConfigError, FleetError, TransportAuthError
from ..integrations.llm.base import CompletionClient
from ..metrics import SESSIONS_GAUGE
from ..models import BotConfig, SessionHandle, SessionState
from ..runtime.session import BotSession, SessionPolicy
from ..storage import FileContextStore, JsonConfigStore, OperatorDirectory

logger = logging.getLogger("botfleet.fleet")


class FleetManager:
    """
    Tracks one BotSession per launchable bot record (enabled and holding a token).

    Changes to the session table are serialized by a single lock, so a reload
    never races a stop. Sessions are registered as STARTING under the lock and
    connect outside it, where a stop can cancel them. A failing bot is logged
    and left out, never allowed to take the rest of the fleet down.
    """

    def __init__(
        self,
        config_store: JsonConfigStore,
        context_store: FileContextStore,
        completion_client: CompletionClient,
        transports: Optional[TransportRegistry] = None,
        operator_directory: Optional[OperatorDirectory] = None,
        policy: Optional[SessionPolicy] = None,
        reload_interval: float = 0.0,
    ):
        self.config_store = config_store
        self.context_store = context_store
        self.completion_client = completion_client
        self.transports = transports or create_transport_registry()
        self.operator_directory = operator_directory
        self.policy = policy or SessionPolicy()
        self.reload_interval = reload_interval

        self._sessions: Dict[str, BotSession] = {}
        self._lock = asyncio.Lock()
        self._watch_task: Optional[asyncio.Task] = None
        self.started = False

    @classmethod
    def from_settings(
        cls,
        settings,
        completion_client: Optional[CompletionClient] = None,
        transports: Optional[TransportRegistry] = None,
    ) -> "FleetManager":
        """Build a fleet with file stores under DATA_DIR and the OpenAI client"""
        if completion_client is None:
            from ..integrations.llm.openai_integration import OpenAICompletionClient
            completion_client = OpenAICompletionClient({
                "api_key": settings.OPENAI_API_KEY,
                "default_model": settings.OPENAI_MODEL,
                "timeout": settings.COMPLETION_TIMEOUT,
            })

        return cls(
            config_store=JsonConfigStore(settings.bots_file),
            context_store=FileContextStore(settings.context_dir),
            completion_client=completion_client,
            transports=transports or create_transport_registry(
                settings.POLL_TIMEOUT, settings.POLL_RETRY_DELAY, settings.CONNECT_ATTEMPTS
            ),
            operator_directory=OperatorDirectory(settings.accounts_file),
            policy=SessionPolicy.from_settings(settings),
            reload_interval=settings.RELOAD_INTERVAL,
        )

    # ==================
    # Lifecycle
    # ==================

    async def __aenter__(self) -> "FleetManager":
        await self.start()
        self.start_watching()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def start(self) -> List[str]:
        """Start a session for every launchable bot that is not running yet."""
        async with self._lock:
            configs = await self.config_store.list()
            to_start = [c for c in configs if c.is_launchable and c.id not in self._sessions]
            skipped = [c.id for c in configs if not c.is_launchable]
            if skipped:
                logger.info(f"Skipping disabled or token-less bots: {', '.join(skipped)}")

            sessions = self._register_all(to_start)
            self.started = True
            self._publish_metrics()

        # Connecting happens outside the lock so stop_all() never waits on a slow platform
        started = await self._start_sessions(sessions)
        logger.info(f"Fleet started: {len(started)}/{len(to_start)} bot session(s) running")
        return started

    async def reload(self) -> Dict[str, List[str]]:
        """
        Reconcile running sessions with the store: stop removed, disabled or
        re-tokened bots, retry bots that errored on a transient failure, start
        new ones, leave the rest alone.
        """
        async with self._lock:
            desired = {c.id: c for c in await self.config_store.list() if c.is_launchable}

            outdated = [
                bot_id for bot_id, session in self._sessions.items()
                if bot_id not in desired
                or desired[bot_id].token != session.launch_token
                or desired[bot_id].platform != session.platform
                or (session.state is SessionState.ERRORED and session.retryable)
            ]
            await asyncio.gather(*(self._stop_session(bot_id) for bot_id in outdated))

            to_start = [c for bot_id, c in desired.items() if bot_id not in self._sessions]
            sessions = self._register_all(to_start)
            self._publish_metrics()

        started = await self._start_sessions(sessions)
        if outdated or to_start:
            logger.info(f"Fleet reloaded: started={started} stopped={outdated}")
        return {"started": started, "stopped": outdated}

    async def restart(self, bot_id: str) -> bool:
        """Stop and start one bot, e.g. to retry an errored session. False if it is not launchable."""
        async with self._lock:
            await self._stop_session(bot_id)
            config = await self.config_store.get(bot_id)
            if config is None or not config.is_launchable:
                self._publish_metrics()
                return False
            sessions = self._register_all([config])
            self._publish_metrics()

        started = await self._start_sessions(sessions)
        return bool(started)

    async def stop(self, bot_id: str) -> bool:
        """Stop one session. Returns False when no session existed. Never raises."""
        async with self._lock:
            stopped = await self._stop_session(bot_id)
            self._publish_metrics()
            return stopped

    async def stop_all(self) -> None:
        """Stop every session concurrently, each within the grace period."""
        self.stop_watching()
        async with self._lock:
            await asyncio.gather(*(self._stop_session(bot_id) for bot_id in list(self._sessions)))
            self.started = False
            self._publish_metrics()
            logger.info("All bot sessions stopped")

    async def close(self) -> None:
        """Teardown: stop the fleet and release the completion client"""
        await self.stop_all()
        try:
            await self.completion_client.close()
        except Exception as e:
            logger.error(f"Error closing completion client: {e}")

    def status(self) -> Dict[str, SessionHandle]:
        """Snapshot of the session table"""
        return {bot_id: session.handle() for bot_id, session in self._sessions.items()}

    def get_session(self, bot_id: str) -> Optional[BotSession]:
        return self._sessions.get(bot_id)

    # ====================
    # Periodic reload
    # ====================

    def start_watching(self) -> None:
        if self.reload_interval > 0 and self._watch_task is None:
            self._watch_task = asyncio.create_task(self.watch(), name="botfleet-watch")

    def stop_watching(self) -> None:
        if self._watch_task and self._watch_task is not asyncio.current_task():
            self._watch_task.cancel()
        self._watch_task = None

    async def watch(self) -> None:
        """Reload every `reload_interval` seconds until cancelled"""
        while True:
            await asyncio.sleep(self.reload_interval)
            try:
                await self.reload()
            except Exception as e:
                logger.error(f"Periodic reload failed: {e}", exc_info=True)

    # ===================
    # Internals
    # ===================

    def _register_all(self, configs: List[BotConfig]) -> List[BotSession]:
        """Build a STARTING session per config and put it in the table. Caller holds the lock."""
        sessions = []
        for config in configs:
            try:
                transport = self.transports.create(config)
            except ConfigError as e:
                logger.error(f"Skipping bot {config.id}: {e}")
                continue

            session = BotSession(
                config,
                transport,
                self.completion_client,
                self.context_store,
                config_store=self.config_store,
                operator_directory=self.operator_directory,
                policy=self.policy,
            )
            self._sessions[config.id] = session
            sessions.append(session)
        return sessions

    async def _start_sessions(self, sessions: List[BotSession]) -> List[str]:
        results = await asyncio.gather(*(self._start_session(s) for s in sessions))
        self._publish_metrics()
        return [s.bot_id for s, ok in zip(sessions, results) if ok]

    async def _start_session(self, session: BotSession) -> bool:
        try:
            await session.start()
        except TransportAuthError as e:
            logger.error(f"Bot {session.bot_id} token rejected, session errored: {e}")
            return False
        except (FleetError, OSError) as e:
            logger.error(f"Bot {session.bot_id} failed to start: {e}")
            return False
        except Exception as e:
            logger.error(f"Bot {session.bot_id} failed to start: {e}", exc_info=True)
            return False
        # False when a stop arrived while the transport was connecting
        return session.state is SessionState.RUNNING

    async def _stop_session(self, bot_id: str) -> bool:
        session = self._sessions.pop(bot_id, None)
        if session is None:
            return False
        try:
            await session.stop(self.policy.grace_period)
        except Exception as e:
            logger.error(f"Error stopping bot {bot_id}: {e}", exc_info=True)
        return True

    def _publish_metrics(self) -> None:
        counts = Counter(session.state for session in self._sessions.values())
        for state in SessionState:
            SESSIONS_GAUGE.labels(state=state.value).set(counts.get(state, 0))

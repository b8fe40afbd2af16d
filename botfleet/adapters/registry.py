"""
FILEPATH: botfleet/adapters/registry.py
PROJECT: BotFleet
COMPONENT: Transport Registry

LICENSE: Apache-2.0
AUTHOR: Michael Landbo

DESCRIPTION:
  Maps a bot's platform tag to the factory that builds its transport.
  The fleet manager asks the registry for a fresh transport every time a
  session starts, so one implementation serves every platform variant.

VERSION: 1.0.0

CREATED: 2026-10-19
LAST EDIT: 2026-10-19
"""

from typing import Callable, Dict, List

from ..exceptions import ConfigError
from ..models import BotConfig
from .base_adapter import MessagingTransport

TransportFactory = Callable[[BotConfig], MessagingTransport]


class TransportRegistry:
    def __init__(self):
        self.factories: Dict[str, TransportFactory] = {}

    def register(self, platform: str, factory: TransportFactory) -> None:
        self.factories[platform] = factory

    def platforms(self) -> List[str]:
        return list(self.factories.keys())

    def create(self, config: BotConfig) -> MessagingTransport:
        """
        Factory method to create a transport for the given bot.
        """
        factory = self.factories.get(config.platform)
        if not factory:
            raise ConfigError(
                f"No transport registered for platform '{config.platform}'",
                {"bot_id": config.id, "platform": config.platform}
            )
        if not config.token:
            raise ConfigError(f"Bot {config.id} has no token", {"bot_id": config.id})
        return factory(config)


def create_transport_registry(
    poll_timeout: int = 30, retry_delay: float = 5.0, connect_attempts: int = 3
) -> TransportRegistry:
    """Registry with every built-in transport registered"""
    registry = TransportRegistry()

    def telegram_factory(config: BotConfig) -> MessagingTransport:
        from .telegram.telegram_adapter import TelegramTransport
        return TelegramTransport(
            config.id,
            config.token,
            {"poll_timeout": poll_timeout, "retry_delay": retry_delay, "start_attempts": connect_attempts}
        )

    registry.register("telegram", telegram_factory)
    return registry

"""
BotFleet - runs many independent chat bots, each bound to its own messaging
token and private knowledge snippet, from one process.
"""

from .exceptions import (
    ConfigError,
    FleetError,
    ProviderError,
    StorageReadError,
    TransportAuthError,
    TransportError,
)
from .models import BotConfig, SessionHandle, SessionState
from .orchestrator.fleet import FleetManager
from .runtime.session import BotSession, SessionPolicy

__version__ = "1.0.0"
__all__ = [
    "BotConfig",
    "BotSession",
    "ConfigError",
    "FleetError",
    "FleetManager",
    "ProviderError",
    "SessionHandle",
    "SessionPolicy",
    "SessionState",
    "StorageReadError",
    "TransportAuthError",
    "TransportError",
]

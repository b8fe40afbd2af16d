# FilePath: "/botfleet/exceptions.py"
# Project: BotFleet
# Description: Error taxonomy shared by the fleet manager, sessions, stores and adapters.
# Author: "Michael Landbo"
# Date created: "19/10/2026"
# Version: "v.1.0.0"

from typing import Any, Dict, Optional


class FleetError(Exception):
    """Base exception for all fleet errors"""
    def __init__(self, message: str, error_code: str = "FLEET_ERROR", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.error_code = error_code
        self.details = details or {}


class ConfigError(FleetError):
    """Missing or malformed bot record. The bot is skipped, the fleet continues."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIG_ERROR", details)


class TransportError(FleetError):
    """Transient transport failure (network, 5xx). Retried inside the transport."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "TRANSPORT_ERROR", details)


class TransportAuthError(TransportError):
    """Token rejected by the messaging platform. Never retried automatically."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.error_code = "TRANSPORT_AUTH_ERROR"


class ProviderError(FleetError):
    """Completion call failed, timed out or returned garbage"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "PROVIDER_ERROR", details)


class StorageReadError(FleetError):
    """Backing file exists but could not be read"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "STORAGE_READ_ERROR", details)


__all__ = [
    "FleetError",
    "ConfigError",
    "TransportError",
    "TransportAuthError",
    "ProviderError",
    "StorageReadError",
]

# FilePath: "/botfleet/settings.py"
# Project: BotFleet
# Description: Loads fleet configuration from environment variables and the .env file using Pydantic.
# Author: "Michael Landbo"
# Date created: "19/10/2026"
# Version: "v.1.0.0"

from functools import lru_cache
from pathlib import Path
from typing import Optional, Set

from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import CompletionOptions


class FleetSettings(BaseSettings):
     """Fleet settings loaded from environment variables."""

     model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

     # App Config
     APP_NAME: str = "BotFleet"

     # Storage
     DATA_DIR: Path = Path("./data")
     BOTS_FILE: str = "bots.json"
     CONTEXT_DIR: str = "info"
     ACCOUNTS_FILE: str = "accounts.json"

     # Completion provider
     OPENAI_API_KEY: Optional[str] = None
     OPENAI_MODEL: str = "gpt-4o-mini"
     COMPLETION_MAX_TOKENS: int = 300
     COMPLETION_TEMPERATURE: float = 0.2
     COMPLETION_TIMEOUT: float = 30.0

     # Session policy
     STOP_GRACE_PERIOD: float = 5.0
     COMMAND_PREFIX: str = "/"
     PUBLIC_COMMANDS: Set[str] = {"/start"}
     RELOAD_INTERVAL: float = 0.0

     # Telegram long polling
     POLL_TIMEOUT: int = 30
     POLL_RETRY_DELAY: float = 5.0
     CONNECT_ATTEMPTS: int = 3

     # Management API
     HOST: str = "0.0.0.0"
     PORT: int = 10000
     ADMIN_API_KEY: Optional[str] = None

     # Logging
     LOG_LEVEL: str = "INFO"
     LOG_JSON: bool = False

     @property
     def bots_file(self) -> Path:
          return self.DATA_DIR / self.BOTS_FILE

     @property
     def context_dir(self) -> Path:
          return self.DATA_DIR / self.CONTEXT_DIR

     @property
     def accounts_file(self) -> Path:
          return self.DATA_DIR / self.ACCOUNTS_FILE

     def completion_options(self) -> CompletionOptions:
          """Per-call completion knobs derived from the settings."""
          return CompletionOptions(
               max_tokens=self.COMPLETION_MAX_TOKENS,
               temperature=self.COMPLETION_TEMPERATURE,
               timeout=self.COMPLETION_TIMEOUT,
               model=self.OPENAI_MODEL,
          )


@lru_cache()
def get_settings() -> FleetSettings:
     """Returns a cached instance of the settings."""
     return FleetSettings()

# FilePath: "/botfleet/integrations/llm/base.py"
# Project: BotFleet
# Description: Abstract base class for completion providers. One call in, one reply out.
# Author: "Michael Landbo"
# Date created: "19/10/2026"
# Version: "v.1.0.0"

from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

from ...models import CompletionOptions


class LLMProvider(Enum):
    OPENAI = "openai"
    CUSTOM = "custom"


class CompletionClient(ABC):
    """
    Stateless completion capability shared by every session in the fleet.

    Implementations raise ProviderError on network, timeout, quota or
    malformed-response conditions. Any retries happen inside `complete`;
    the caller enforces the overall deadline.
    """

    provider: LLMProvider = LLMProvider.CUSTOM

    @abstractmethod
    async def complete(
        self,
        system_text: str,
        user_text: str,
        options: Optional[CompletionOptions] = None
    ) -> str:
        """Return the reply text for one system/user exchange"""
        pass

    async def close(self) -> None:
        """Release provider connections"""
        return None

# FilePath: "/botfleet/integrations/llm/openai_integration.py"
# Project: BotFleet
# Description: Completion client backed by the OpenAI chat completions API.
# Author: "Michael Landbo"
# Date created: "19/10/2026"
# Version: "v.1.0.0"

import logging
from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI

from ...exceptions import ProviderError
from ...models import CompletionOptions
from .base import CompletionClient, LLMProvider


class OpenAICompletionClient(CompletionClient):
    provider = LLMProvider.OPENAI

    def __init__(self, config: Dict[str, Any]):
        if not config.get("api_key"):
            raise ProviderError("OPENAI_API_KEY is not configured")

        self.logger = logging.getLogger("botfleet.llm.openai")
        self.default_model = config.get("default_model", "gpt-4o-mini")
        # The session enforces the overall deadline, the SDK only retries transient failures
        self.client = config.get("client") or AsyncOpenAI(
            api_key=config["api_key"],
            max_retries=config.get("max_retries", 1),
            timeout=config.get("timeout", 30.0),
        )

    def _build_messages(self, system_text: str, user_text: str) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": system_text},
            {"role": "user", "content": user_text}
        ]

    async def complete(
        self,
        system_text: str,
        user_text: str,
        options: Optional[CompletionOptions] = None
    ) -> str:
        """Generate a reply using OpenAI. Empty model output comes back as an empty string."""
        opts = options or CompletionOptions()
        try:
            response = await self.client.chat.completions.create(
                model=opts.model or self.default_model,
                messages=self._build_messages(system_text, user_text),
                temperature=opts.temperature,
                max_tokens=opts.max_tokens
            )
        except openai.OpenAIError as e:
            self.logger.error(f"Text generation error: {str(e)}")
            raise ProviderError(f"OpenAI request failed: {e}", {"type": type(e).__name__})

        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError, TypeError) as e:
            raise ProviderError(f"Malformed OpenAI response: {e}")

        return (content or "").strip()

    async def close(self) -> None:
        await self.client.close()

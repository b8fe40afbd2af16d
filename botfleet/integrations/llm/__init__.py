from .base import CompletionClient, LLMProvider

__all__ = ["CompletionClient", "LLMProvider"]

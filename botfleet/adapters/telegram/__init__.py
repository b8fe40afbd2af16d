from .telegram_adapter import TelegramTransport

__all__ = ["TelegramTransport"]

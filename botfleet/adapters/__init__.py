from .base_adapter import MessagingTransport, QueuedTransport, SendResult, TransportStatus
from .registry import TransportRegistry, create_transport_registry

__all__ = [
    "MessagingTransport",
    "QueuedTransport",
    "SendResult",
    "TransportStatus",
    "TransportRegistry",
    "create_transport_registry",
]

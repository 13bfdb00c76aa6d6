from .models import CertificationEvent, CertificationEventType
from .emitter import CertificationEventEmitter, LoggingEventEmitter, NullEventEmitter
from .memory_emitter import MemoryQueueEventEmitter

__all__ = [
    "CertificationEvent",
    "CertificationEventType",
    "CertificationEventEmitter",
    "LoggingEventEmitter",
    "NullEventEmitter",
    "MemoryQueueEventEmitter",
]

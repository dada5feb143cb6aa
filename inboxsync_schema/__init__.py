from .message import (
    Attachment,
    Classification,
    ClassificationLabel,
    EventType,
    Message,
    NotificationEvent,
)

__all__ = [
    "Attachment",
    "Classification",
    "ClassificationLabel",
    "EventType",
    "Message",
    "NotificationEvent",
]

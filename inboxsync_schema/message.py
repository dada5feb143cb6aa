"""Canonical message schema: the data model shared by every pipeline stage."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ClassificationLabel(str, Enum):
    """Closed set of labels the classification engine may assign."""

    INTERESTED = "Interested"
    MEETING_BOOKED = "Meeting Booked"
    NOT_INTERESTED = "Not Interested"
    SPAM = "Spam"
    OUT_OF_OFFICE = "Out of Office"


class EventType(str, Enum):
    """What a notification event describes."""

    EMAIL_RECEIVED = "email_received"
    EMAIL_CATEGORIZED = "email_categorized"


class Classification(BaseModel):
    """Automated label attached to a message after the classify stage."""

    label: ClassificationLabel = Field(description="Assigned category")
    confidence: float = Field(ge=0, le=100, description="Confidence score, 0-100")
    rationale: str | None = Field(
        default=None,
        description="Free-text explanation returned by the engine",
    )


class Attachment(BaseModel):
    """Descriptor of a file attached to a message (payload is not retained)."""

    filename: str = Field(description="Original filename")
    content_type: str = Field(description="MIME type (e.g. application/pdf)")
    size: int = Field(default=0, description="Decoded payload size in bytes")


class Message(BaseModel):
    """Canonical, normalized representation of one fetched mail item.

    ``(account_id, uid)`` identifies a message for the lifetime of the
    message in its folder and is the idempotency key for indexing.  The
    model is frozen; the classification is attached by producing an
    updated copy with :meth:`with_classification`.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Composite identifier: '{account_id}_{uid}'")
    uid: int = Field(description="Mailbox-native UID")
    account_id: str = Field(description="Source account identifier")
    folder: str = Field(description="Folder the message was fetched from")
    sender: str = Field(default="", description="From header as received")
    to: list[str] = Field(default_factory=list, description="To addresses")
    cc: list[str] = Field(default_factory=list, description="Cc addresses")
    bcc: list[str] = Field(default_factory=list, description="Bcc addresses")
    subject: str = Field(default="", description="Decoded subject line")
    body: str = Field(default="", description="Plain-text body")
    html_body: str | None = Field(default=None, description="Rendered HTML body, if any")
    timestamp: datetime = Field(description="When the message was sent (UTC)")
    flags: list[str] = Field(default_factory=list, description="IMAP flags (e.g. \\Seen)")
    attachments: list[Attachment] = Field(
        default_factory=list,
        description="Attachment descriptors",
    )
    classification: Classification | None = Field(
        default=None,
        description="Result of the classify stage, if it succeeded",
    )

    @staticmethod
    def make_id(account_id: str, uid: int) -> str:
        return f"{account_id}_{uid}"

    def with_classification(self, classification: Classification) -> Message:
        """Return a copy of this message carrying *classification*."""
        return self.model_copy(update={"classification": classification})


class NotificationEvent(BaseModel):
    """Ephemeral value handed to each eligible notification channel."""

    event: EventType = Field(description="What happened")
    message: Message = Field(description="The message the event is about")
    classification: Classification | None = Field(
        default=None,
        description="Classification that triggered the event, if any",
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the event was constructed (UTC)",
    )

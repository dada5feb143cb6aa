"""Error taxonomy for the sync subsystem."""

from __future__ import annotations


class InboxSyncError(Exception):
    """Base class for all inboxsync errors."""


class TransportError(InboxSyncError):
    """Connection or authentication failure; the scheduler reconnects."""


class ProtocolError(InboxSyncError):
    """The server returned something unusable; the item is skipped."""


class FolderError(ProtocolError):
    """A folder could not be selected or searched."""

    def __init__(self, folder: str, detail: str) -> None:
        super().__init__(f"{folder}: {detail}")
        self.folder = folder


class StageError(InboxSyncError):
    """A pipeline stage failed; isolated to that stage."""


class ClassificationError(StageError):
    """The classification engine returned a malformed response."""


class NotificationError(StageError):
    """A notification channel rejected a delivery."""

"""Runtime models for the sync subsystem."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


class SchedulerState(str, Enum):
    """Lifecycle state of one account's sync loop."""

    IDLE = "idle"
    CONNECTING = "connecting"
    BACKFILLING = "backfilling"
    POLLING = "polling"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


class ServiceStatus(str, Enum):
    """Runtime status of the hosting service."""

    STARTING = "starting"
    RUNNING = "running"
    DEGRADED = "degraded"
    STOPPING = "stopping"
    STOPPED = "stopped"


class FetchCriteria(BaseModel):
    """Folder search criteria: either a date range or unseen-only."""

    since: date | None = Field(default=None, description="Messages on or after this date")
    before: date | None = Field(default=None, description="Messages strictly before this date")
    unseen_only: bool = Field(default=False, description="Only messages without \\Seen")

    @model_validator(mode="after")
    def _one_mode(self) -> FetchCriteria:
        if self.unseen_only == (self.since is not None):
            raise ValueError("criteria must set exactly one of 'since' or 'unseen_only'")
        if self.before is not None and self.since is None:
            raise ValueError("'before' requires 'since'")
        return self

    def to_imap(self) -> str:
        """Render as an IMAP SEARCH expression."""
        if self.unseen_only:
            return "UNSEEN"
        assert self.since is not None
        parts = [f"SINCE {self.since.strftime('%d-%b-%Y')}"]
        if self.before is not None:
            parts.append(f"BEFORE {self.before.strftime('%d-%b-%Y')}")
        return " ".join(parts)


class BackfillWindow(BaseModel):
    """Inclusive look-back window ``[start, end]`` for the initial backfill."""

    start: datetime
    end: datetime

    @classmethod
    def ending_at(cls, now: datetime, days: int) -> BackfillWindow:
        return cls(start=now - timedelta(days=days), end=now)

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end

    def criteria(self) -> FetchCriteria:
        """Day-granular server search covering the whole window.

        SINCE and BEFORE match INTERNALDATE dates in the server's own
        timezone, so each side is padded by a day; :meth:`contains` trims
        the extra results.
        """
        return FetchCriteria(
            since=self.start.date() - timedelta(days=1),
            before=self.end.date() + timedelta(days=2),
        )


@dataclass
class RawRecord:
    """One message as fetched from IMAP, before normalization."""

    uid: int
    header: bytes | None
    text: bytes | None
    flags: list[str] = field(default_factory=list)
    internal_date: datetime | None = None


class AccountStatus(BaseModel):
    """Per-account status reported on the health endpoint."""

    account_id: str
    state: SchedulerState
    connected: bool
    backfilled: bool = False
    last_poll_at: datetime | None = None
    messages_processed: int = 0
    messages_skipped: int = 0
    reconnect_attempts: int = 0
    last_error: str | None = None


class HealthStatus(BaseModel):
    """Response model for the /health endpoint."""

    service_name: str = Field(description="Name of the service")
    status: ServiceStatus = Field(description="Current service status")
    uptime_seconds: float = Field(description="Seconds since the service started")
    accounts: dict[str, AccountStatus] = Field(default_factory=dict)
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Collaborator health (e.g. index reachability, live viewers)",
    )

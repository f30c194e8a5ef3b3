"""Canonical data model for the unified calendar timeline.

``UnifiedEvent`` is a read-time construct: it is never persisted as such.
Local events live in the ``events`` table and external events are fetched
transiently from providers and normalized into this shape inside the
provider clients.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import StrEnum

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    computed_field,
    field_validator,
    model_validator,
)

UNTITLED_EVENT_TITLE = "(untitled)"


class Provider(StrEnum):
    """External OAuth providers an Integration can be created for."""

    google = "google"
    github = "github"


class EventOrigin(StrEnum):
    """System that owns an event's source-of-truth record."""

    local = "local"
    google = "google"
    github_derived = "github-derived"

    @property
    def rank(self) -> int:
        """Tie-break rank: local before any external origin."""
        return 0 if self is EventOrigin.local else 1


PROVIDER_ORIGINS: dict[Provider, EventOrigin] = {
    Provider.google: EventOrigin.google,
    Provider.github: EventOrigin.github_derived,
}


class Recurrence(StrEnum):
    none = "none"
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class SyncPhase(StrEnum):
    """States of a single sync invocation."""

    idle = "idle"
    refreshing = "refreshing"
    fetching = "fetching"
    merging = "merging"
    persisting = "persisting"
    done = "done"
    failed = "failed"


def _require_aware(value: datetime, field_name: str) -> datetime:
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise ValueError(f"{field_name} must be timezone-aware")
    return value


def _blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


class TimeWindow(BaseModel):
    """Half-open ``[start, end)`` interval used to bound fetches."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _aware(cls, value: datetime, info: ValidationInfo) -> datetime:
        return _require_aware(value, info.field_name)

    @model_validator(mode="after")
    def _ordered(self) -> TimeWindow:
        if self.end < self.start:
            raise ValueError("time window end must not be before start")
        return self

    @classmethod
    def around(cls, now: datetime, *, lookback_days: int, lookahead_days: int) -> TimeWindow:
        return cls(
            start=now - timedelta(days=lookback_days),
            end=now + timedelta(days=lookahead_days),
        )

    def overlaps(self, start: datetime, end: datetime) -> bool:
        # Zero-length events starting inside the window count as overlapping.
        return start < self.end and (end > self.start or start >= self.start)


class Attendee(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str
    display_name: str | None = None
    response_status: str | None = None


class UnifiedEvent(BaseModel):
    """The canonical event representation exposed to callers."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(min_length=1)
    origin: EventOrigin
    title: str
    description: str | None = None
    location: str | None = None
    start_time: datetime
    end_time: datetime
    is_all_day: bool = False
    recurrence: Recurrence = Recurrence.none
    external_id: str | None = None
    calendar_id: str | None = None
    attendees: list[Attendee] = Field(default_factory=list)
    html_link: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("title")
    @classmethod
    def _normalize_title(cls, value: str) -> str:
        return value.strip() or UNTITLED_EVENT_TITLE

    @field_validator("description", "location", "html_link")
    @classmethod
    def _normalize_optional_text(cls, value: str | None) -> str | None:
        return _blank_to_none(value)

    @field_validator("start_time", "end_time")
    @classmethod
    def _aware(cls, value: datetime, info: ValidationInfo) -> datetime:
        return _require_aware(value, info.field_name)

    @model_validator(mode="after")
    def _validate_shape(self) -> UnifiedEvent:
        if self.end_time < self.start_time:
            raise ValueError("end_time must not be before start_time")
        if self.origin is EventOrigin.local:
            if self.external_id is not None:
                raise ValueError("local events cannot carry an external_id")
        else:
            if self.external_id is None:
                raise ValueError("externally-sourced events require an external_id")
            if self.recurrence is not Recurrence.none:
                raise ValueError("externally-sourced events arrive as expanded occurrences")
        return self

    @property
    def dedup_key(self) -> tuple[str, str] | None:
        """``(origin, external_id)`` for external events, ``None`` for local ones."""
        if self.external_id is None:
            return None
        return (self.origin.value, self.external_id)

    @property
    def sort_key(self) -> tuple[datetime, int, str]:
        return (self.start_time, self.origin.rank, self.id)


def external_event_id(provider: Provider | str, external_id: str) -> str:
    """Build the timeline id of an externally-sourced event."""
    return f"{Provider(provider).value}-{external_id}"


# ---------------------------------------------------------------------------
# Integration (OAuth credential + sync state)
# ---------------------------------------------------------------------------


class Integration(BaseModel):
    """Per-user, per-provider OAuth credential and sync-state record.

    Tokens are plaintext in memory; the token store encrypts them at rest.
    """

    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1)
    provider: Provider
    provider_user_id: str | None = None
    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    token_expiry: datetime | None = None
    scope: str | None = None
    selected_calendar_ids: list[str] = Field(default_factory=list)
    last_sync_at: datetime | None = None
    needs_reauth: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("selected_calendar_ids")
    @classmethod
    def _normalize_calendar_ids(cls, value: list[str]) -> list[str]:
        seen: list[str] = []
        for calendar_id in value:
            normalized = calendar_id.strip()
            if normalized and normalized not in seen:
                seen.append(normalized)
        return seen

    def __repr__(self) -> str:
        return (
            f"Integration(user_id={self.user_id!r}, provider={self.provider.value!r}, "
            f"access_token=<REDACTED>, refresh_token=<REDACTED>, "
            f"token_expiry={self.token_expiry!r}, needs_reauth={self.needs_reauth!r})"
        )

    # Pydantic's default __str__ would expose field values verbatim.
    __str__ = __repr__


class TokenGrant(BaseModel):
    """Normalized token-endpoint response from a provider."""

    model_config = ConfigDict(extra="forbid")

    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scope: str | None = None

    def __repr__(self) -> str:
        return f"TokenGrant(access_token=<REDACTED>, expires_at={self.expires_at!r})"

    __str__ = __repr__


class ProviderCalendar(BaseModel):
    """A provider-side calendar (Google) or repository (GitHub)."""

    id: str
    name: str
    description: str | None = None
    primary: bool = False
    access_role: str | None = None


class EventPage(BaseModel):
    """A single page of normalized events from a list-events call."""

    events: list[UnifiedEvent] = Field(default_factory=list)
    next_page_token: str | None = None


# ---------------------------------------------------------------------------
# Local event inputs
# ---------------------------------------------------------------------------


class LocalEventCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str
    description: str | None = None
    location: str | None = None
    start_time: datetime
    end_time: datetime
    is_all_day: bool = False
    recurrence: Recurrence = Recurrence.none

    @field_validator("description", "location")
    @classmethod
    def _normalize_optional_text(cls, value: str | None) -> str | None:
        return _blank_to_none(value)


class LocalEventUpdate(BaseModel):
    """Partial update; unset fields are left unchanged."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = None
    description: str | None = None
    location: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    is_all_day: bool | None = None
    recurrence: Recurrence | None = None


class EventStatistics(BaseModel):
    total_events: int = 0
    all_day_events: int = 0
    recurring_events: int = 0
    upcoming_events: int = 0


# ---------------------------------------------------------------------------
# Provider event inputs (write-through to the provider calendar)
# ---------------------------------------------------------------------------


def _required_title(value: str) -> str:
    normalized = value.strip()
    if not normalized:
        raise ValueError("title must not be blank")
    return normalized


def _normalize_attendee_emails(value: list[str]) -> list[str]:
    emails: list[str] = []
    for email in value:
        normalized = email.strip()
        if normalized and normalized not in emails:
            emails.append(normalized)
    return emails


class ProviderEventCreate(BaseModel):
    """An event to insert into a provider-side calendar."""

    model_config = ConfigDict(extra="forbid")

    calendar_id: str = Field(default="primary", min_length=1)
    title: str
    description: str | None = None
    location: str | None = None
    start_time: datetime
    end_time: datetime
    is_all_day: bool = False
    attendees: list[str] = Field(default_factory=list)

    @field_validator("title")
    @classmethod
    def _title(cls, value: str) -> str:
        return _required_title(value)

    @field_validator("description", "location")
    @classmethod
    def _normalize_optional_text(cls, value: str | None) -> str | None:
        return _blank_to_none(value)

    @field_validator("start_time", "end_time")
    @classmethod
    def _aware(cls, value: datetime, info: ValidationInfo) -> datetime:
        return _require_aware(value, info.field_name)

    @field_validator("attendees")
    @classmethod
    def _attendees(cls, value: list[str]) -> list[str]:
        return _normalize_attendee_emails(value)

    @model_validator(mode="after")
    def _ordered(self) -> ProviderEventCreate:
        if self.end_time < self.start_time:
            raise ValueError("end_time must not be before start_time")
        return self


class ProviderEventUpdate(BaseModel):
    """Partial update of a provider-side event; unset fields are left unchanged."""

    model_config = ConfigDict(extra="forbid")

    calendar_id: str = Field(default="primary", min_length=1)
    title: str | None = None
    description: str | None = None
    location: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    is_all_day: bool | None = None
    attendees: list[str] | None = None

    @field_validator("title")
    @classmethod
    def _title(cls, value: str | None) -> str | None:
        return None if value is None else _required_title(value)

    @field_validator("start_time", "end_time")
    @classmethod
    def _aware(cls, value: datetime | None, info: ValidationInfo) -> datetime | None:
        return None if value is None else _require_aware(value, info.field_name)

    @field_validator("attendees")
    @classmethod
    def _attendees(cls, value: list[str] | None) -> list[str] | None:
        return None if value is None else _normalize_attendee_emails(value)

    @model_validator(mode="after")
    def _ordered(self) -> ProviderEventUpdate:
        if (
            self.start_time is not None
            and self.end_time is not None
            and self.end_time < self.start_time
        ):
            raise ValueError("end_time must not be before start_time")
        if self.is_all_day is not None and (self.start_time is None or self.end_time is None):
            raise ValueError("changing is_all_day requires both start_time and end_time")
        return self

    @property
    def changes(self) -> dict[str, object]:
        """Fields the caller explicitly set, excluding the target calendar."""
        return {
            name: getattr(self, name)
            for name in self.model_fields_set
            if name != "calendar_id"
        }


# ---------------------------------------------------------------------------
# Sync results
# ---------------------------------------------------------------------------


class PartialError(BaseModel):
    """A provider failure downgraded inside a sync.

    A sync reports at most one entry per provider.  When individual
    calendars failed, their errors are nested under ``calendar_errors``.
    """

    model_config = ConfigDict(extra="forbid")

    provider: str
    kind: str
    calendar_id: str | None = None
    detail: str | None = None
    calendar_errors: list[PartialError] = Field(default_factory=list)


class SyncStats(BaseModel):
    # Calendars the providers report for the user, selected or not.
    calendars_found: int = 0
    calendars_selected: int = 0
    events_fetched: int = 0


class SyncResult(BaseModel):
    unified_events: list[UnifiedEvent] = Field(default_factory=list)
    stats: SyncStats = Field(default_factory=SyncStats)
    partial_errors: list[PartialError] = Field(default_factory=list)
    phase: SyncPhase = SyncPhase.idle
    started_at: datetime | None = None
    providers_synced: list[str] = Field(default_factory=list)
    providers_total: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def summary(self) -> str:
        synced = len(self.providers_synced)
        text = f"{synced} of {self.providers_total} calendars synced"
        if self.partial_errors:
            text += ", see details"
        return text


class ProviderStatus(BaseModel):
    provider: Provider
    connected: bool
    needs_reauth: bool = False
    last_sync_at: datetime | None = None
    selected_calendar_ids: list[str] = Field(default_factory=list)
    stale: bool = False

"""Closed error taxonomy for the calendar synchronization core.

Every failure the core surfaces to a caller is one of five kinds:

- ``NotConnected``: no Integration record exists; the user must start OAuth.
- ``ReauthRequired``: the refresh token is invalid or revoked; the user must
  re-authorize.
- ``ProviderUnavailable``: transient network/5xx/timeout from a provider;
  retryable by the caller, never retried automatically within one sync.
- ``NotFound``: a local event does not exist or is not owned by the user.
- ``ValidationError``: malformed input (e.g. end before start).

The ``kind`` string is the primary discriminant.  Provider-specific text is
kept in ``detail`` as a diagnostic, and is redacted of token material.
"""

from __future__ import annotations

import re
from enum import StrEnum


class ErrorKind(StrEnum):
    """Stable identifiers for the error taxonomy."""

    not_connected = "NotConnected"
    reauth_required = "ReauthRequired"
    provider_unavailable = "ProviderUnavailable"
    not_found = "NotFound"
    validation_error = "ValidationError"


_DETAIL_MAX_LENGTH = 200


def redact_token_material(message: str) -> str:
    """Redact OAuth token/secret values from a diagnostic message."""
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token|code)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._\-~+/]+=*", "Bearer [REDACTED]", redacted)
    return redacted


def _sanitize_detail(detail: str | None) -> str | None:
    if detail is None:
        return None
    normalized = " ".join(redact_token_material(detail).split())
    return normalized[:_DETAIL_MAX_LENGTH] or None


class CalendarSyncError(Exception):
    """Base class for all taxonomy errors.

    Attributes
    ----------
    kind:
        The :class:`ErrorKind` of this error.
    provider:
        Provider name the error relates to (``None`` for local errors).
    detail:
        Optional sanitized diagnostic text.
    """

    kind: ErrorKind

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        detail: str | None = None,
    ) -> None:
        self.provider = provider
        self.detail = _sanitize_detail(detail)
        super().__init__(message)

    @property
    def message(self) -> str:
        return str(self)


class NotConnectedError(CalendarSyncError):
    """Raised when no Integration exists for ``(user_id, provider)``."""

    kind = ErrorKind.not_connected

    def __init__(self, provider: str, *, detail: str | None = None) -> None:
        super().__init__(f"{provider} is not connected", provider=provider, detail=detail)


class ReauthRequiredError(CalendarSyncError):
    """Raised when stored credentials can no longer be refreshed."""

    kind = ErrorKind.reauth_required

    def __init__(self, provider: str, *, detail: str | None = None) -> None:
        super().__init__(
            f"{provider} authorization has expired or was revoked; reconnect the account",
            provider=provider,
            detail=detail,
        )


class ProviderUnavailableError(CalendarSyncError):
    """Raised for transient provider failures (network, 5xx, timeouts)."""

    kind = ErrorKind.provider_unavailable

    def __init__(
        self,
        provider: str,
        *,
        status_code: int | None = None,
        detail: str | None = None,
    ) -> None:
        self.status_code = status_code
        suffix = f" ({status_code})" if status_code is not None else ""
        super().__init__(f"{provider} is unavailable{suffix}", provider=provider, detail=detail)


class NotFoundError(CalendarSyncError):
    """Raised when an event or calendar is missing or not owned by the caller."""

    kind = ErrorKind.not_found

    def __init__(self, resource: str, identifier: str | int) -> None:
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} not found: {identifier}")


class ValidationError(CalendarSyncError):
    """Raised for malformed input such as an event ending before it starts."""

    kind = ErrorKind.validation_error

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        super().__init__(message, detail=detail)

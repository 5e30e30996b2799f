"""Error types raised by the integration runtime.

Every error carries a machine-readable :class:`ErrorReason` plus the
integration, provider and endpoint it happened on, so callers (HTTP
handlers, batch jobs, message handlers) can log and branch on it without
parsing messages.
"""

from enum import StrEnum


class ErrorReason(StrEnum):
    AUTH_FAILED = "auth_failed"
    NO_REFRESH_TOKEN = "no_refresh_token"
    REFRESH_FAILED = "refresh_failed"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    PROVIDER_REJECTED = "provider_rejected"
    RATE_LIMITED = "rate_limited"
    INVALID_REQUEST = "invalid_request"
    SYNC_IN_PROGRESS = "sync_in_progress"


class IntegrationError(Exception):
    """Base class for all runtime errors."""

    default_reason = ErrorReason.PROVIDER_REJECTED

    def __init__(
        self,
        message: str,
        reason: ErrorReason | None = None,
        integration_id: int | None = None,
        provider: str | None = None,
        endpoint: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.reason = reason or self.default_reason
        self.integration_id = integration_id
        self.provider = provider
        self.endpoint = endpoint

    def to_dict(self) -> dict:
        return {
            "error": self.reason.value,
            "message": self.message,
            "integration_id": self.integration_id,
            "provider": self.provider,
            "endpoint": self.endpoint,
        }


class AuthError(IntegrationError):
    """Credentials are missing, rejected, or could not be refreshed.

    Never retried automatically; the user has to re-authorize.
    ``provider_error`` holds the OAuth error code (e.g. ``invalid_grant``)
    when the provider sent one.
    """

    default_reason = ErrorReason.AUTH_FAILED

    def __init__(self, message: str, provider_error: str | None = None, **context):
        super().__init__(message, **context)
        self.provider_error = provider_error


class RateLimitError(IntegrationError):
    """The local quota for an (integration, endpoint class) is exhausted."""

    default_reason = ErrorReason.RATE_LIMITED

    def __init__(self, message: str, retry_after: int = 0, **context):
        super().__init__(message, **context)
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["retry_after"] = self.retry_after
        return data


class ProviderUnavailableError(IntegrationError):
    """Network failure, timeout, 5xx or 429 from the provider."""

    default_reason = ErrorReason.PROVIDER_UNAVAILABLE


class ProviderRejectedError(IntegrationError):
    """The provider answered with a non-retryable 4xx."""

    default_reason = ErrorReason.PROVIDER_REJECTED


class ValidationError(IntegrationError):
    """Bad input, detected before any network call."""

    default_reason = ErrorReason.INVALID_REQUEST


class SyncInProgressError(IntegrationError):
    """Another sync for the same integration is already running."""

    default_reason = ErrorReason.SYNC_IN_PROGRESS

"""Error taxonomy for the integration sync pipeline.

Credential-stage and data-stage errors put the connection into `error` and
are retried on the next scheduled run. `NotifyError` is only ever logged.
"""

from typing import Optional


class IntegrationError(Exception):
    """Base class for every failure raised by adapters and the orchestrator."""

    def __init__(self, message: str, *, provider_id: Optional[str] = None, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.provider_id = provider_id
        self.stage = stage

    def __str__(self) -> str:
        return self.message


class ProviderNotRegistered(IntegrationError):
    """No adapter is registered for the connection's provider id (configuration error)."""

    def __init__(self, provider_id: str):
        super().__init__(f"Provider '{provider_id}' is not registered", provider_id=provider_id, stage="refreshing")


class UpstreamError(IntegrationError):
    """Failure reported by a provider API; keeps the raw response body for operators."""

    def __init__(
        self,
        message: str,
        *,
        provider_id: Optional[str] = None,
        stage: Optional[str] = None,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ):
        super().__init__(message, provider_id=provider_id, stage=stage)
        self.status_code = status_code
        self.body = body


class AuthExchangeError(UpstreamError):
    """Authorization-code exchange was rejected upstream."""


class RefreshError(UpstreamError):
    """Refresh-token grant was rejected upstream."""


class MissingRefreshTokenError(IntegrationError):
    """Token expired but no refresh token is stored for the connection."""

    def __init__(self, provider_id: str):
        super().__init__(
            f"{provider_id} token expired and no refresh token is stored",
            provider_id=provider_id,
            stage="refreshing",
        )


class PullError(UpstreamError):
    """The primary data for a pull could not be fetched (or the pull timed out)."""


class NotifyError(IntegrationError):
    """Notification delivery failed. Never fails a sync."""


class InvalidStateToken(IntegrationError):
    """OAuth state is missing, forged, stale, or bound to another provider."""


class ConnectionNotFound(IntegrationError):
    """No connection with the given id (for the given user)."""

    def __init__(self, connection_id: str):
        super().__init__(f"Connection {connection_id} not found")
        self.connection_id = connection_id


class ProviderNotConfigured(IntegrationError):
    """The provider's OAuth client credentials are missing from settings."""

    def __init__(self, provider_id: str):
        super().__init__(f"{provider_id} OAuth is not configured", provider_id=provider_id)

"""Error taxonomy for the ingestion paths."""


class SyncError(Exception):
    """Base class for ingestion errors."""


class TransientProviderError(SyncError):
    """Network failure or 429/5xx from a provider API. Retried with backoff."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class AuthError(SyncError):
    """Provider rejected the credentials. Polling is suspended until re-auth."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class NormalizationError(SyncError):
    """A payload could not be mapped to the canonical event shape.

    The raw payload travels with the error so it can still be stored,
    flagged as unprocessed.
    """

    def __init__(self, provider, raw_payload, reason, provider_event_id=None):
        super().__init__(f"{provider}: {reason}")
        self.provider = provider
        self.raw_payload = raw_payload
        self.reason = reason
        self.provider_event_id = provider_event_id


class IdempotencyConflict(SyncError):
    """The atomic upsert did not produce exactly one row. Never retried."""


class ChannelTimeout(SyncError):
    """A poll cycle ran past its hard timeout."""


class InfrastructureError(SyncError):
    """Store or capability outage. Aborts the ingestion pass."""


class CredentialsUnavailable(InfrastructureError):
    """The decrypt-on-demand capability failed."""

"""Error taxonomy shared by the adapters, the schedulers and the mapping service."""


class SpotubeError(Exception):
    """Base class for all sync errors."""
    pass


class ConfigError(SpotubeError):
    """Invalid or missing configuration."""
    pass


class ValidationError(SpotubeError):
    """Bad mapping configuration. Surfaced to the caller, never retried."""
    pass


class InternalError(SpotubeError):
    """Record store failure."""
    pass


class ProviderError(SpotubeError):
    """A playlist API call failed."""

    def __init__(self, message: str, service: str = "", status: int | None = None):
        super().__init__(message)
        self.service = service
        self.status = status


class TransientProviderError(ProviderError):
    """Worth retrying later: rate limit, timeout, network or server trouble."""
    pass


class RateLimited(TransientProviderError):
    def __init__(self, message: str, service: str = "", status: int | None = 429,
                 retry_after: int | None = None):
        super().__init__(message, service, status)
        self.retry_after = retry_after


class QuotaExceeded(RateLimited):
    """Daily unit budget of the destination API is spent."""
    pass


class ProviderTimeout(TransientProviderError):
    pass


class UnknownProviderError(TransientProviderError):
    pass


class AuthError(ProviderError):
    """Expired or invalid credentials."""
    pass


class Unauthorized(AuthError):
    pass


class PermanentProviderError(ProviderError):
    """Retrying will not help; the item is skipped and blacklisted."""

    reason = "error"


class NotFound(PermanentProviderError):
    reason = "not_found"


class PermissionDenied(PermanentProviderError):
    reason = "forbidden"


class InvalidTrack(PermanentProviderError):
    reason = "invalid"


class TrackNotFound(PermanentProviderError):
    """Search on the destination returned no usable match."""

    reason = "search_failed"

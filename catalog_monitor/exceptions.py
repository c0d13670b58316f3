"""Exception types shared across the catalog monitor."""

from typing import Optional


class CatalogMonitorError(Exception):
    """Base class for catalog monitor errors."""
    pass


# ---------------------------------------------------------------------------
# Provider / fetch errors
# ---------------------------------------------------------------------------


class ProviderError(CatalogMonitorError):
    """Base class for errors raised by catalog fetchers."""
    pass


class FetchError(ProviderError):
    """Raised when a catalog fetch fails (network, timeout, 5xx, bad payload)."""
    pass


class AuthError(ProviderError):
    """Raised when the provider credential is invalid or revoked (401/403)."""
    pass


class RateLimitError(ProviderError):
    """Raised when rate limited (429)."""

    def __init__(self, retry_after: Optional[int] = None):
        super().__init__("Rate limited")
        self.retry_after = retry_after


class UnknownProviderError(CatalogMonitorError):
    """Raised when no fetcher is registered for a provider id."""
    pass


# ---------------------------------------------------------------------------
# Creator action errors
# ---------------------------------------------------------------------------


class ActionError(CatalogMonitorError):
    """Base class for errors applying a creator action."""
    pass


class DetectedReleaseNotFound(ActionError):
    """Raised when a detected release does not exist or belongs to another creator."""
    pass


class InvalidTransitionError(ActionError):
    """Raised when an action is not allowed from the release's current status."""

    def __init__(self, current_status: str, target_status: str):
        super().__init__(f"Cannot move detected release from {current_status} to {target_status}")
        self.current_status = current_status
        self.target_status = target_status


class ActionTokenError(ActionError):
    """Base class for action token failures."""
    pass


class TokenInvalidError(ActionTokenError):
    """Raised when a token is malformed, tampered with, or bound to another action."""
    pass


class TokenExpiredError(ActionTokenError):
    """Raised when a token is past its expiry."""
    pass


class TokenAlreadyUsedError(ActionTokenError):
    """Raised when a single-use token has already been consumed."""
    pass

from __future__ import annotations


class AuthError(Exception):
    """Base class for identity/session failures surfaced to callers."""


class ValidationError(AuthError):
    """Bad credential or malformed input. Recoverable; shown to the user."""


class SecurityError(AuthError):
    """Anti-forgery check failed. Always logged, never retried automatically."""


class NetworkError(AuthError):
    """Transport failure reaching the backend or an external provider."""


class ConfigurationError(AuthError):
    """A required method or feature is disabled or misconfigured."""


class ExpiredSessionError(AuthError):
    """Session is gone or cannot be refreshed."""

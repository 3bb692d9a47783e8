"""
Error taxonomy for the AI usage gate.

Infrastructure errors (StoreUnavailable) are caught at the engine boundary and
turned into fail-open decisions. Domain errors propagate to the routes, which
map them to HTTP responses with stable error codes.
"""
from typing import Optional


class UsageGateError(Exception):
    """Base class for every error raised by the usage gate."""


class ConfigurationError(UsageGateError):
    """Fatal misconfiguration detected at startup (missing policy, missing key)."""


class ValidationError(UsageGateError):
    """Request rejected before any store is touched."""


class StoreUnavailable(UsageGateError):
    """The durable counter store or relational store could not be reached."""

    def __init__(self, store: str, operation: str, cause: Optional[Exception] = None):
        self.store = store
        self.operation = operation
        self.cause = cause
        message = f"{store} unavailable during {operation}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class RateLimitExceeded(UsageGateError):
    """Expected, user-visible denial. Carries the decision so the caller can render resetAt."""

    def __init__(self, result, message: Optional[str] = None, used_count: Optional[int] = None):
        self.result = result
        self.message = message or "Rate limit exceeded"
        self.used_count = used_count
        super().__init__(self.message)


class AllowanceExhausted(UsageGateError):
    """A free user has used up the one-shot tries for a feature."""

    def __init__(self, allowance):
        self.allowance = allowance
        super().__init__(f"No free tries left for {allowance.feature.value}")


class AIGenerationError(UsageGateError):
    """The AI generation collaborator failed or returned unusable output."""


class SessionConversionError(UsageGateError):
    code = "conversion_error"

    def __init__(self, session_id: str, message: Optional[str] = None):
        self.session_id = session_id
        super().__init__(message or f"{self.code}: {session_id}")


class SessionNotFound(SessionConversionError):
    code = "session_not_found"


class AlreadyConverted(SessionConversionError):
    code = "already_converted"


class DecryptionFailure(SessionConversionError):
    code = "decryption_failure"

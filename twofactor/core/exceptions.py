"""Exception taxonomy for the two-factor engine."""


class TwoFactorError(Exception):
    """Base class for failures surfaced to the caller as a structured response."""

    code = "INTERNAL_ERROR"
    status_code = 500
    message = "Internal server error"

    def __init__(self, message: str | None = None):
        if message is not None:
            self.message = message
        super().__init__(self.message)

    def details(self) -> dict:
        """Extra fields merged into the error body."""
        return {}

    def headers(self) -> dict[str, str] | None:
        return None


class UnauthorizedError(TwoFactorError):
    """Missing or invalid caller identity."""

    code = "UNAUTHORIZED"
    status_code = 401
    message = "Unauthorized"


class NotConfiguredError(TwoFactorError):
    """Verify attempted before Setup (no credential row or cleared secret)."""

    code = "NOT_CONFIGURED"
    status_code = 400
    message = "2FA not configured"


class MalformedInputError(TwoFactorError):
    """Code is neither a 6-digit TOTP nor an 8-character backup code."""

    code = "MALFORMED_INPUT"
    status_code = 400
    message = "Invalid code format"


class InvalidCodeError(TwoFactorError):
    """Well-formed code matched neither the TOTP window nor a backup code.

    The message is identical for both paths.
    """

    code = "INVALID_CODE"
    status_code = 400
    message = "Invalid code"


class InvalidTransitionError(TwoFactorError):
    """Requested action is not allowed from the credential's current state."""

    code = "INVALID_TRANSITION"
    status_code = 409
    message = "Action not allowed in the current 2FA state"


class AlreadyEnabledError(TwoFactorError):
    """Setup refused because 2FA is enabled and re-provisioning is turned off."""

    code = "ALREADY_ENABLED"
    status_code = 409
    message = "2FA is already enabled. Disable it first to set up again."


class StorageFailureError(TwoFactorError):
    """Persistence read or write failed.

    During Verify the outcome is indeterminate: a backup code may or may not
    have been consumed.
    """

    code = "STORAGE_FAILURE"
    status_code = 500
    message = "Failed to access 2FA storage"


class RateLimitExceededError(TwoFactorError):
    """Too many attempts for an (action, identifier) pair in the current window."""

    code = "RATE_LIMITED"
    status_code = 429
    message = "Too many attempts"

    def __init__(self, action: str, retry_after: int):
        self.action = action
        self.retry_after = retry_after
        super().__init__()

    def details(self) -> dict:
        minutes = max(1, -(-self.retry_after // 60))
        plural = "s" if minutes > 1 else ""
        return {
            "message": f"Too many {self.action} attempts. Please try again in {minutes} minute{plural}.",
            "retryAfter": self.retry_after,
        }

    def headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.retry_after)}

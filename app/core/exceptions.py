from fastapi import HTTPException, status

# ─────────────────────────────────────────────────────────────────────────────
# User-facing errors (Command Surface, access control)
# Each carries a stable `code` that clients can branch on.
# ─────────────────────────────────────────────────────────────────────────────


class BillingCommandError(HTTPException):
    """Base for errors returned to authenticated users."""

    code: str = "INTERNAL_SERVER_ERROR"

    def __init__(self, status_code: int, message: str, cause: str | None = None):
        detail: dict[str, str] = {"code": self.code, "message": message}
        if cause:
            detail["cause"] = cause
        super().__init__(status_code=status_code, detail=detail)
        self.message = message
        self.cause = cause


class UnauthorizedError(BillingCommandError):
    """Raised when the caller is not logged in."""

    code = "UNAUTHORIZED"

    def __init__(self, message: str = "You need to be logged in to access this content"):
        super().__init__(status.HTTP_401_UNAUTHORIZED, message)


class ForbiddenError(BillingCommandError):
    """Raised when the caller lacks the entitlement for a resource."""

    code = "FORBIDDEN"

    def __init__(
        self,
        message: str = "Not authorized to access this resource",
        cause: str | None = None,
    ):
        super().__init__(status.HTTP_403_FORBIDDEN, message, cause)


class NotFoundError(BillingCommandError):
    """Raised when a requested resource is not found."""

    code = "NOT_FOUND"

    def __init__(self, resource: str):
        super().__init__(status.HTTP_404_NOT_FOUND, f"{resource} not found")


class BillingProviderError(BillingCommandError):
    """Raised when a payment provider call fails on behalf of a user."""

    code = "BILLING_PROVIDER_ERROR"

    def __init__(self, message: str = "Payment provider request failed"):
        super().__init__(status.HTTP_502_BAD_GATEWAY, message)


# ─────────────────────────────────────────────────────────────────────────────
# Reconciliation errors (webhook path - never shown to end users)
# ─────────────────────────────────────────────────────────────────────────────


class ReconciliationError(Exception):
    """Base for failures while turning a provider event into local state."""


class WebhookAuthenticationError(ReconciliationError):
    """Webhook signature missing or invalid. Retrying will never succeed."""


class WebhookPayloadError(ReconciliationError):
    """Webhook body could not be parsed into a known event shape."""


class TransientStorageError(ReconciliationError):
    """Persisting an event failed; prior state is intact and delivery should be retried."""

from fastapi import HTTPException, status


class InvalidLimitTypeError(HTTPException):
    """Exception raised when a route asks to meter an unknown resource."""

    def __init__(self, limit_type: str):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid limit type '{limit_type}'"
        )


class UsageCheckError(HTTPException):
    """Exception raised when usage limits cannot be verified."""

    def __init__(self, message: str = "Failed to check usage limits"):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=message
        )


class BillingConfigurationError(HTTPException):
    """Exception raised when Stripe is not configured for an operation."""

    def __init__(self, message: str = "Billing is not configured"):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=message
        )


class NotFoundError(HTTPException):
    """Exception raised when a user-scoped resource does not exist."""

    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resource} with ID '{resource_id}' not found"
        )


class AuthenticationError(HTTPException):
    """Exception raised for authentication failures."""

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=message,
            headers={"WWW-Authenticate": "Bearer"}
        )


class UsageLedgerError(Exception):
    """Raised by the usage ledger when the backing store call fails."""


class AuthorizationError(HTTPException):
    """Exception raised when the caller may not act on a resource."""

    def __init__(self, message: str = "Not allowed to access this resource"):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=message
        )


class EntitlementError(Exception):
    """
    Raised when a metered operation is refused for plan reasons.

    Rendered as a 402 with ``body`` as-is rather than FastAPI's
    ``{"detail": ...}`` envelope.
    """

    status_code = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(self, body: dict):
        super().__init__(body.get("error"))
        self.body = body

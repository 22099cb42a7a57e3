"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""


class LedgerError(Exception):
    """Base exception for all ledger errors."""

    pass


class AuthInvalidError(LedgerError):
    """Raised when a signature or claim check fails (API key, push token)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")


class ValidationError(LedgerError):
    """Raised when a request is rejected before any side effect."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Validation failed: {message}")


class InvalidPurchaseError(ValidationError):
    """Raised when the billing provider does not report a purchased, unconsumed item."""

    def __init__(self, message: str, purchase_state: int | None = None) -> None:
        self.purchase_state = purchase_state
        super().__init__(message)


class InsufficientCreditsError(LedgerError):
    """Raised when account has insufficient balance for a debit."""

    def __init__(self, required: int, available: int) -> None:
        self.required = required
        self.available = available
        super().__init__(f"Insufficient credits. Available: {available}, Required: {required}")


class DuplicateRequestError(LedgerError):
    """Raised internally when an idempotency key has already been inserted."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Duplicate request: {key}")


class OperationFailedError(LedgerError):
    """Raised when the external operation failed and the debit was compensated."""

    def __init__(
        self,
        req_id: str,
        credits_refunded: int,
        error_code: str,
        message: str,
        new_balance: int | None = None,
    ) -> None:
        self.req_id = req_id
        self.credits_refunded = credits_refunded
        self.error_code = error_code
        self.message = message
        self.new_balance = new_balance
        super().__init__(f"Operation {req_id} failed ({error_code}); refunded {credits_refunded}")


class ProviderError(LedgerError):
    """Raised when an external provider call fails."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(f"Provider error: {message}")


class ProviderTimeoutError(ProviderError):
    """Raised when an external provider call exceeds its timeout."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=None)


class ProviderUnavailableError(ProviderError):
    """Raised when a provider is not configured or returns a 5xx."""

    pass


class RateLimitedError(ProviderError):
    """Raised when a provider rejects a call with 429."""

    def __init__(self, message: str, retry_after: int | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(message, status_code=429)


class InvalidDeviceTokenError(ProviderError):
    """Raised when the push gateway reports a registration token permanently invalid."""

    pass


class TokenExchangeError(ProviderError):
    """Raised when a signed assertion cannot be exchanged for an access token."""

    pass


class WriteVerificationError(LedgerError):
    """Raised when a conditional write affected an unexpected number of rows."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class ArchiveExportError(LedgerError):
    """Raised when archived rows could not be written to cold storage."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Archive export failed: {message}")

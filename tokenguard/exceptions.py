"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""


class GuardError(Exception):
    """Base exception for all token guard errors."""

    retryable: bool = False


class FieldTooLongError(GuardError):
    """Raised when an inbound request field exceeds its length limit."""

    def __init__(self, location: str, field: str, limit: int, actual: int) -> None:
        self.location = location
        self.field = field
        self.limit = limit
        self.actual = actual
        super().__init__(
            f'Field "{field}" in {location} exceeds limit of {limit} characters '
            f"(received {actual})."
        )


class UnknownModelError(GuardError):
    """Raised when a model identifier is not in the cost table."""

    def __init__(self, model_id: str) -> None:
        self.model_id = model_id
        super().__init__(f"Unsupported model: {model_id}")


class InsufficientTokensError(GuardError):
    """Raised when a free-tier balance cannot cover the message cost."""

    def __init__(self, balance: int, required: int, model_id: str | None = None) -> None:
        self.balance = balance
        self.required = required
        self.model_id = model_id
        super().__init__(f"Insufficient tokens. Balance: {balance}, Required: {required}")

    @property
    def shortfall(self) -> int:
        """Tokens missing to afford one message."""
        return max(self.required - self.balance, 0)


class ProviderError(GuardError):
    """Raised when the model provider fails to produce a completion."""

    retryable = True

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Model provider error: {message}")


class ProviderTimeoutError(ProviderError):
    """Raised when the model provider does not answer within the timeout."""

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"no response within {timeout_seconds:g}s")


class TooManyRewardsError(GuardError):
    """Raised when a user exceeds the ad reward frequency cap."""

    def __init__(self, limit: int, window_seconds: int) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        super().__init__(f"Too many ad rewards: limit is {limit} per {window_seconds}s")


class LedgerConflictError(GuardError):
    """Raised when a balance mutation keeps losing compare-and-swap races."""

    retryable = True

    def __init__(self, user_id: str, model_id: str, attempts: int) -> None:
        self.user_id = user_id
        self.model_id = model_id
        self.attempts = attempts
        super().__init__(
            f"Concurrent modification of balance {user_id}/{model_id} "
            f"not resolved after {attempts} attempts"
        )


class ModelCatalogError(GuardError):
    """Raised when the model cost table cannot be loaded or is invalid."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Model catalog error: {message}")


class WriteVerificationError(GuardError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")

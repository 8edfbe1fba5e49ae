class SalesBotError(Exception):
    """Base class for all SalesBot service errors."""


class ValidationError(SalesBotError):
    """Invalid input rejected immediately; never retried."""


class InvalidStageError(ValidationError):
    def __init__(self, stage_id):
        self.stage_id = stage_id
        super().__init__(f"Invalid funnel stage: {stage_id!r}")


class TransientInfraError(SalesBotError):
    """Timeouts, 5xx and rate limits from the store or the model. Safe to retry."""


# Model gateway contract name for the same failure class.
RetryableError = TransientInfraError


class FatalError(SalesBotError):
    """Non-retryable failure, or a transient one whose retries were exhausted."""

    def __init__(self, message: str, *, attempts: int = 0):
        self.attempts = attempts
        super().__init__(message)


class DeliveryError(SalesBotError):
    """The messaging transport did not accept an outgoing message."""

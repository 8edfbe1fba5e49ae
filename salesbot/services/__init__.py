from salesbot.services.errors import (
    DeliveryError,
    FatalError,
    InvalidStageError,
    RetryableError,
    SalesBotError,
    TransientInfraError,
    ValidationError,
)
from salesbot.services.funnel_stages import FunnelStage
from salesbot.services.result import Result

__all__ = [
    "DeliveryError",
    "FatalError",
    "FunnelStage",
    "InvalidStageError",
    "Result",
    "RetryableError",
    "SalesBotError",
    "TransientInfraError",
    "ValidationError",
]

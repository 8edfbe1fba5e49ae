from salesbot.schemas.message import (
    SendMessageRequest,
    SendMessageResponse,
    StageResponse,
    StageUpdateRequest,
    StageUpdateResponse,
)
from salesbot.schemas.webhook import WebhookBody, WebhookMetadata, WebhookRequest, WebhookResponse

__all__ = [
    "SendMessageRequest",
    "SendMessageResponse",
    "StageResponse",
    "StageUpdateRequest",
    "StageUpdateResponse",
    "WebhookBody",
    "WebhookMetadata",
    "WebhookRequest",
    "WebhookResponse",
]

from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field


class WebhookMetadata(BaseModel):
    sender: Optional[str] = None
    timestamp: Optional[int] = None
    messageId: Optional[str] = None
    remoteJid: Optional[str] = None
    instanceId: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("instanceId", "instance_id", "instance"),
    )
    fromMe: bool = Field(default=False, validation_alias=AliasChoices("fromMe", "from_me"))
    isGroup: bool = Field(default=False, validation_alias=AliasChoices("isGroup", "is_group"))


class WebhookBody(BaseModel):
    messageType: Optional[str] = "text"
    message: Optional[str] = None
    metadata: Optional[WebhookMetadata] = None
    mediaData: Optional[Any] = None


class WebhookRequest(BaseModel):
    body: WebhookBody


class WebhookResponse(BaseModel):
    success: bool
    message: str
    contact_key: Optional[str] = None
    queued: bool = False

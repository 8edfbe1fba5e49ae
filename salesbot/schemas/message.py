from typing import Optional

from pydantic import BaseModel, Field


class SendMessageRequest(BaseModel):
    contact_key: str = Field(min_length=1)
    content: str = Field(min_length=1)


class SendMessageResponse(BaseModel):
    success: bool
    contact_key: str
    chunks_sent: int = 0
    message: Optional[str] = None


class StageResponse(BaseModel):
    contact_key: str
    stage: Optional[str] = None
    stage_group: Optional[str] = None
    active_upsell: Optional[dict] = None
    active_downsell: Optional[dict] = None


class StageUpdateRequest(BaseModel):
    stage: str


class StageUpdateResponse(BaseModel):
    contact_key: str
    requested_stage: str
    applied_stage: str

from fastapi import APIRouter, Depends

from salesbot.logging_config import get_logger
from salesbot.schemas.message import SendMessageRequest, SendMessageResponse
from salesbot.services.container import ServiceContainer, get_container
from salesbot.services.errors import DeliveryError

logger = get_logger("message_router")

router = APIRouter()


@router.post("/messages/send", response_model=SendMessageResponse)
async def send_message(request: SendMessageRequest, container: ServiceContainer = Depends(get_container)):
    """Send text to a contact through the paced dispatcher, bypassing the model."""
    try:
        chunks = await container.dispatcher.deliver(request.contact_key, request.content)
    except DeliveryError as e:
        logger.warning(
            "Direct send failed",
            extra={"context": {"contact_key": request.contact_key, "error": str(e)}},
        )
        return SendMessageResponse(success=False, contact_key=request.contact_key, message=str(e))
    return SendMessageResponse(success=True, contact_key=request.contact_key, chunks_sent=chunks)

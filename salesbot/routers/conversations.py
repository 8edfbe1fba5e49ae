from fastapi import APIRouter, Depends, HTTPException, status

from salesbot.schemas.message import StageResponse, StageUpdateRequest, StageUpdateResponse
from salesbot.services.container import ServiceContainer, get_container
from salesbot.services.conversation_service import get_persisted_stage
from salesbot.services.errors import InvalidStageError
from salesbot.services.funnel_stages import stage_group

router = APIRouter(prefix="/conversations")


@router.get("/{contact_key}/stage", response_model=StageResponse)
async def get_stage(contact_key: str, container: ServiceContainer = Depends(get_container)):
    """Persisted funnel stage and active offers for a contact."""
    stage = await get_persisted_stage(container.store, contact_key)
    upsell = await container.funnel.get_active_opportunity(contact_key, "upsell")
    downsell = await container.funnel.get_active_opportunity(contact_key, "downsell")
    return StageResponse(
        contact_key=contact_key,
        stage=stage.value if stage else None,
        stage_group=stage_group(stage) if stage else None,
        active_upsell=upsell.to_dict() if upsell else None,
        active_downsell=downsell.to_dict() if downsell else None,
    )


@router.put("/{contact_key}/stage", response_model=StageUpdateResponse)
async def set_stage(
    contact_key: str,
    request: StageUpdateRequest,
    container: ServiceContainer = Depends(get_container),
):
    """Manual stage override; leaving UPSELL may still land on DOWNSELL.

    Waits for any turn in progress for the contact.
    """
    try:
        async with container.batcher.exclusive(contact_key):
            applied = await container.funnel.update_stage(contact_key, request.stage)
    except InvalidStageError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    return StageUpdateResponse(contact_key=contact_key, requested_stage=request.stage, applied_stage=applied.value)

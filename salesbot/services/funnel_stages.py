from enum import Enum
from typing import Optional

from salesbot.services.errors import InvalidStageError


class FunnelStage(str, Enum):
    # Initial
    GREETING = "greeting"
    QUALIFICATION = "qualification"
    NEED_DISCOVERY = "need_discovery"
    PAIN_POINT_EXPLORATION = "pain_point_exploration"

    # Middle
    SOLUTION_PRESENTATION = "solution_presentation"
    PRODUCT_DEMONSTRATION = "product_demonstration"
    VALUE_PROPOSITION = "value_proposition"
    PROOF_AND_CREDIBILITY = "proof_and_credibility"

    # Closing
    OBJECTION_HANDLING = "objection_handling"
    PRICE_DISCUSSION = "price_discussion"
    CLOSING = "closing"
    CHECKOUT = "checkout"

    # Post-sale
    POST_PURCHASE_FOLLOWUP = "post_purchase_followup"
    UPSELL = "upsell"
    DOWNSELL = "downsell"
    CROSS_SELL = "cross_sell"

    # Re-engagement
    REACTIVATION = "reactivation"
    FEEDBACK = "feedback"


STAGE_GROUPS = {
    "initial": (
        FunnelStage.GREETING,
        FunnelStage.QUALIFICATION,
        FunnelStage.NEED_DISCOVERY,
        FunnelStage.PAIN_POINT_EXPLORATION,
    ),
    "middle": (
        FunnelStage.SOLUTION_PRESENTATION,
        FunnelStage.PRODUCT_DEMONSTRATION,
        FunnelStage.VALUE_PROPOSITION,
        FunnelStage.PROOF_AND_CREDIBILITY,
    ),
    "closing": (
        FunnelStage.OBJECTION_HANDLING,
        FunnelStage.PRICE_DISCUSSION,
        FunnelStage.CLOSING,
        FunnelStage.CHECKOUT,
    ),
    "post_sale": (
        FunnelStage.POST_PURCHASE_FOLLOWUP,
        FunnelStage.UPSELL,
        FunnelStage.DOWNSELL,
        FunnelStage.CROSS_SELL,
    ),
    "re_engagement": (
        FunnelStage.REACTIVATION,
        FunnelStage.FEEDBACK,
    ),
}

FUNNEL_ORDER = tuple(FunnelStage)

# Objections and re-engagement can come up from any point of the conversation.
_ALWAYS_REACHABLE = frozenset(
    {FunnelStage.OBJECTION_HANDLING, FunnelStage.REACTIVATION, FunnelStage.FEEDBACK}
)

FORWARD_TRANSITIONS = {
    stage: frozenset(FUNNEL_ORDER[index + 1 :]) | (_ALWAYS_REACHABLE - {stage})
    for index, stage in enumerate(FUNNEL_ORDER)
}

_missing = set(FunnelStage) - set(FORWARD_TRANSITIONS)
if _missing:
    raise RuntimeError(f"Stages without a transition entry: {sorted(s.value for s in _missing)}")


def coerce_stage(value) -> FunnelStage:
    """Parse a wire value into a FunnelStage. Raises InvalidStageError."""
    if isinstance(value, FunnelStage):
        return value
    try:
        return FunnelStage(str(value).strip().lower())
    except ValueError:
        raise InvalidStageError(value) from None


def parse_stage(value) -> Optional[FunnelStage]:
    """Like coerce_stage but returns None for unknown values."""
    try:
        return coerce_stage(value)
    except InvalidStageError:
        return None


def stage_group(stage: FunnelStage) -> str:
    for group, stages in STAGE_GROUPS.items():
        if stage in stages:
            return group
    raise InvalidStageError(stage)


def is_backward(from_stage: FunnelStage, to_stage: FunnelStage) -> bool:
    return FUNNEL_ORDER.index(to_stage) < FUNNEL_ORDER.index(from_stage)


def can_transition(from_stage: FunnelStage, to_stage: FunnelStage, allow_backward: bool = True) -> bool:
    """Check if a suggested move between stages is allowed by the transition policy."""
    if from_stage == to_stage:
        return False
    if allow_backward:
        return True
    return to_stage in FORWARD_TRANSITIONS[from_stage]

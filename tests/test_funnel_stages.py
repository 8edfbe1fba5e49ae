import pytest

from salesbot.services.errors import InvalidStageError, ValidationError
from salesbot.services.funnel_stages import (
    FORWARD_TRANSITIONS,
    FUNNEL_ORDER,
    STAGE_GROUPS,
    FunnelStage,
    can_transition,
    coerce_stage,
    is_backward,
    parse_stage,
    stage_group,
)


class TestStageCatalog:
    def test_eighteen_stages(self):
        assert len(FunnelStage) == 18

    def test_every_stage_in_exactly_one_group(self):
        for stage in FunnelStage:
            groups = [name for name, stages in STAGE_GROUPS.items() if stage in stages]
            assert len(groups) == 1, stage

    def test_every_stage_has_transition_entry(self):
        assert set(FORWARD_TRANSITIONS) == set(FunnelStage)

    def test_order_starts_at_greeting(self):
        assert FUNNEL_ORDER[0] == FunnelStage.GREETING
        assert FUNNEL_ORDER[-1] == FunnelStage.FEEDBACK

    def test_stage_group(self):
        assert stage_group(FunnelStage.GREETING) == "initial"
        assert stage_group(FunnelStage.VALUE_PROPOSITION) == "middle"
        assert stage_group(FunnelStage.CHECKOUT) == "closing"
        assert stage_group(FunnelStage.DOWNSELL) == "post_sale"
        assert stage_group(FunnelStage.REACTIVATION) == "re_engagement"


class TestCoerceStage:
    def test_accepts_enum(self):
        assert coerce_stage(FunnelStage.CLOSING) is FunnelStage.CLOSING

    def test_accepts_wire_value(self):
        assert coerce_stage("price_discussion") == FunnelStage.PRICE_DISCUSSION

    def test_normalizes_case_and_whitespace(self):
        assert coerce_stage("  Upsell ") == FunnelStage.UPSELL

    def test_unknown_raises_invalid_stage(self):
        with pytest.raises(InvalidStageError) as exc_info:
            coerce_stage("negotiation")
        assert exc_info.value.stage_id == "negotiation"

    def test_invalid_stage_is_validation_error(self):
        with pytest.raises(ValidationError):
            coerce_stage(None)

    def test_parse_stage_returns_none_for_unknown(self):
        assert parse_stage("negotiation") is None
        assert parse_stage("closing") == FunnelStage.CLOSING


class TestTransitions:
    def test_same_stage_is_not_a_transition(self):
        assert can_transition(FunnelStage.CLOSING, FunnelStage.CLOSING) is False

    def test_backward_allowed_by_default(self):
        assert can_transition(FunnelStage.CLOSING, FunnelStage.GREETING) is True

    def test_backward_rejected_when_disabled(self):
        assert can_transition(FunnelStage.CLOSING, FunnelStage.GREETING, allow_backward=False) is False

    def test_forward_allowed_when_backward_disabled(self):
        assert can_transition(FunnelStage.GREETING, FunnelStage.CLOSING, allow_backward=False) is True

    def test_objection_handling_reachable_from_anywhere(self):
        assert can_transition(FunnelStage.CHECKOUT, FunnelStage.OBJECTION_HANDLING, allow_backward=False) is True
        assert can_transition(FunnelStage.FEEDBACK, FunnelStage.REACTIVATION, allow_backward=False) is True

    def test_is_backward(self):
        assert is_backward(FunnelStage.CLOSING, FunnelStage.QUALIFICATION) is True
        assert is_backward(FunnelStage.QUALIFICATION, FunnelStage.CLOSING) is False

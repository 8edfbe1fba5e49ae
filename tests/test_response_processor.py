from salesbot.services.funnel_stages import FunnelStage
from salesbot.services.response_processor import (
    detect_stage_suggestion,
    extract_directives,
    process_response,
    strip_directives,
)


class TestExtractDirectives:
    def test_returns_directives_in_order(self):
        directives = extract_directives("Veja !prova_social:CASE_1 e depois !checkout:pro_plan")

        assert [(d.type, d.id) for d in directives] == [("social_proof", "case_1"), ("checkout", "pro_plan")]

    def test_normalizes_portuguese_aliases(self):
        directives = extract_directives("!etapa:closing !suporte")

        assert [d.type for d in directives] == ["stage", "support"]
        assert directives[1].id == ""

    def test_keeps_duplicates(self):
        assert len(extract_directives("!support !support")) == 2

    def test_empty_text(self):
        assert extract_directives("") == []

    def test_keeps_raw_match(self):
        directive = extract_directives("Pronto! !checkout:basic_plan")[0]
        assert directive.raw == "!checkout:basic_plan"


class TestStripDirectives:
    def test_removes_directives_and_collapses_newlines(self):
        text = "Olá!\n\n\n\n!prova_social:case_1\n\nTudo bem?"

        assert strip_directives(text) == "Olá!\n\nTudo bem?"

    def test_is_idempotent(self):
        text = "Fechado. !checkout:pro_plan\n\n\n\nAté logo!"
        once = strip_directives(text)

        assert strip_directives(once) == once

    def test_removes_directive_formed_by_removal(self):
        assert strip_directives("!check!stageout:pro_plan") == ""

    def test_plain_exclamation_is_kept(self):
        assert strip_directives("Que ótimo!") == "Que ótimo!"


class TestDetectStageSuggestion:
    def test_explicit_directive_wins(self):
        stage = detect_stage_suggestion("Entendo sua preocupação. !etapa:closing", FunnelStage.GREETING)
        assert stage == FunnelStage.CLOSING

    def test_unknown_directive_falls_back_to_phrases(self):
        stage = detect_stage_suggestion("!stage:negotiation Entendo sua preocupação.", FunnelStage.GREETING)
        assert stage == FunnelStage.OBJECTION_HANDLING

    def test_phrase_match(self):
        stage = detect_stage_suggestion("Temos diferentes planos para você.", FunnelStage.NEED_DISCOVERY)
        assert stage == FunnelStage.PRICE_DISCUSSION

    def test_current_stage_is_skipped(self):
        stage = detect_stage_suggestion("Temos diferentes planos para você.", FunnelStage.PRICE_DISCUSSION)
        assert stage is None

    def test_backward_suggestion_blocked_when_disabled(self):
        text = "Poderia me contar mais sobre sua empresa?"

        assert detect_stage_suggestion(text, FunnelStage.CLOSING, allow_backward=False) is None
        assert detect_stage_suggestion(text, FunnelStage.CLOSING, allow_backward=True) == FunnelStage.QUALIFICATION

    def test_no_match(self):
        assert detect_stage_suggestion("Bom dia!", FunnelStage.GREETING) is None


class TestProcessResponse:
    def test_collects_metadata_and_cleans_content(self):
        raw = "Temos diferentes planos. !checkout:pro_plan !checkout:basic_plan !suporte"

        processed = process_response(raw, FunnelStage.GREETING)

        assert processed.content == "Temos diferentes planos."
        assert len(processed.directives) == 3
        assert processed.metadata.checkout_plan_id == "pro_plan"
        assert processed.metadata.requires_human_support is True
        assert processed.metadata.suggested_stage == FunnelStage.PRICE_DISCUSSION

    def test_first_social_proof_wins(self):
        processed = process_response("!prova_social:case_a !prova_social:case_b Veja só.", None)

        assert processed.metadata.social_proof_id == "case_a"
        assert processed.content == "Veja só."

    def test_plain_reply(self):
        processed = process_response("Olá, tudo bem?", FunnelStage.GREETING)

        assert processed.content == "Olá, tudo bem?"
        assert processed.directives == []
        assert processed.metadata.suggested_stage is None

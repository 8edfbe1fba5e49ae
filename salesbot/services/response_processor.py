"""Post-processing of raw model output: directives, cleanup and stage suggestions.

Directives are embedded in the reply as ``!<name>`` or ``!<name>:<id>``. Names are
social_proof, checkout, stage and support; the Portuguese forms prova_social, etapa and
suporte are accepted and normalized.
"""

import re
from dataclasses import dataclass, field
from typing import Optional

from salesbot.services.funnel_stages import FunnelStage, can_transition, parse_stage

DIRECTIVE_ALIASES = {
    "social_proof": "social_proof",
    "prova_social": "social_proof",
    "checkout": "checkout",
    "stage": "stage",
    "etapa": "stage",
    "support": "support",
    "suporte": "support",
}

DIRECTIVE_PATTERN = re.compile(
    r"!(social_proof|prova_social|checkout|stage|etapa|support|suporte)(?::\s*([a-z0-9_-]+))?",
    re.IGNORECASE,
)
_EXCESS_NEWLINES = re.compile(r"\n{3,}")

# Checked in this order; the first stage with a matching phrase wins.
STAGE_PHRASES: dict[FunnelStage, tuple[re.Pattern, ...]] = {
    stage: tuple(re.compile(p, re.IGNORECASE) for p in patterns)
    for stage, patterns in (
        (
            FunnelStage.QUALIFICATION,
            (
                r"poderia me contar mais sobre",
                r"me fale um pouco sobre sua empresa",
                r"quantos funcionários vocês têm",
                r"qual o tamanho da sua operação",
            ),
        ),
        (
            FunnelStage.NEED_DISCOVERY,
            (
                r"quais são os principais desafios",
                r"o que você busca resolver",
                r"quais problemas você enfrenta",
                r"o que tem sido difícil no seu processo",
            ),
        ),
        (
            FunnelStage.PAIN_POINT_EXPLORATION,
            (
                r"quanto isso tem custado para você",
                r"qual o impacto desse problema",
                r"como isso afeta seus resultados",
                r"que consequências isso traz",
            ),
        ),
        (
            FunnelStage.SOLUTION_PRESENTATION,
            (
                r"nossa solução pode ajudar",
                r"temos uma solução que",
                r"nosso produto resolve isso",
                r"deixe-me apresentar como podemos",
            ),
        ),
        (
            FunnelStage.VALUE_PROPOSITION,
            (
                r"o valor que entregamos",
                r"o retorno sobre o investimento",
                r"nossos clientes conseguem",
                r"em termos de resultados",
            ),
        ),
        (
            FunnelStage.OBJECTION_HANDLING,
            (
                r"entendo sua preocupação",
                r"é natural ter essa dúvida",
                r"muitos clientes também questionam",
                r"compreendo seu ponto",
            ),
        ),
        (
            FunnelStage.PRICE_DISCUSSION,
            (
                r"o investimento para",
                r"nossos preços são",
                r"temos diferentes planos",
                r"o valor do nosso produto",
            ),
        ),
        (
            FunnelStage.CLOSING,
            (
                r"podemos seguir com",
                r"qual plano faz mais sentido para você",
                r"quer começar com",
                r"vamos avançar com",
            ),
        ),
    )
}


@dataclass(frozen=True)
class Directive:
    type: str  # canonical name
    id: str  # lowercased, "" when absent
    raw: str


@dataclass
class ResponseMetadata:
    social_proof_id: Optional[str] = None
    checkout_plan_id: Optional[str] = None
    suggested_stage: Optional[FunnelStage] = None
    requires_human_support: bool = False


@dataclass
class ProcessedResponse:
    content: str
    directives: list[Directive] = field(default_factory=list)
    metadata: ResponseMetadata = field(default_factory=ResponseMetadata)


def extract_directives(text: str) -> list[Directive]:
    """All directives in order of appearance, duplicates included."""
    if not text:
        return []
    return [
        Directive(
            type=DIRECTIVE_ALIASES[match.group(1).lower()],
            id=(match.group(2) or "").lower(),
            raw=match.group(0),
        )
        for match in DIRECTIVE_PATTERN.finditer(text)
    ]


def strip_directives(text: str) -> str:
    """Remove every directive, collapse 3+ newlines to 2 and trim. Idempotent."""
    if not text:
        return ""
    previous = None
    cleaned = text
    # Removing one directive can join the text around it into a new one.
    while cleaned != previous:
        previous = cleaned
        cleaned = DIRECTIVE_PATTERN.sub("", cleaned)
    return _EXCESS_NEWLINES.sub("\n\n", cleaned).strip()


def detect_stage_suggestion(
    text: str,
    current_stage: Optional[FunnelStage],
    allow_backward: bool = True,
) -> Optional[FunnelStage]:
    """Stage the reply suggests moving to, if any.

    A valid explicit stage directive wins regardless of the current stage. Otherwise the
    phrase table is scanned, skipping the current stage and, when ``allow_backward`` is
    off, stages the transition policy would not allow.
    """
    if not text:
        return None

    for directive in extract_directives(text):
        if directive.type == "stage":
            stage = parse_stage(directive.id)
            if stage is not None:
                return stage

    for stage, patterns in STAGE_PHRASES.items():
        if stage == current_stage:
            continue
        if current_stage is not None and not can_transition(current_stage, stage, allow_backward):
            continue
        if any(pattern.search(text) for pattern in patterns):
            return stage
    return None


def process_response(
    raw: str,
    current_stage: Optional[FunnelStage],
    allow_backward: bool = True,
) -> ProcessedResponse:
    directives = extract_directives(raw)
    metadata = ResponseMetadata(suggested_stage=detect_stage_suggestion(raw, current_stage, allow_backward))
    for directive in directives:
        if directive.type == "social_proof" and directive.id and metadata.social_proof_id is None:
            metadata.social_proof_id = directive.id
        elif directive.type == "checkout" and directive.id and metadata.checkout_plan_id is None:
            metadata.checkout_plan_id = directive.id
        elif directive.type == "support":
            metadata.requires_human_support = True
    return ProcessedResponse(content=strip_directives(raw), directives=directives, metadata=metadata)

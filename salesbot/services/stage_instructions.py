"""Per-stage instruction templates and system prompt assembly."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Union

from salesbot.services.funnel_stages import FunnelStage, parse_stage
from salesbot.services.opportunity_catalog import Opportunity
from salesbot.services.training_context import TrainingContext


@dataclass(frozen=True)
class StageTemplate:
    title: str
    objectives: tuple[str, ...]
    instructions: tuple[str, ...]

    def render(self) -> str:
        lines = [f"Você está no estágio de {self.title}.", "", "Objetivos:"]
        lines.extend(f"- {item}" for item in self.objectives)
        lines.extend(["", "Instruções:"])
        lines.extend(f"- {item}" for item in self.instructions)
        return "\n".join(lines)


@dataclass(frozen=True)
class BotIdentity:
    first_name: str = "Ana"
    position: str = "Consultora de Vendas"
    company: str = "TechVendas Solutions"
    tone: str = "Profissional, amigável e persuasiva"


STAGE_TEMPLATES: dict[FunnelStage, StageTemplate] = {
    FunnelStage.GREETING: StageTemplate(
        "SAUDAÇÃO",
        (
            "Causar uma primeira impressão positiva e profissional",
            "Despertar interesse para continuar a conversa",
        ),
        (
            "Cumprimente pelo nome, se disponível, com a saudação do horário",
            "Apresente-se brevemente e faça uma pergunta aberta",
            "NÃO pressione para a venda nem despeje informações de produto",
            "Mantenha a mensagem curta (2-3 frases)",
        ),
    ),
    FunnelStage.QUALIFICATION: StageTemplate(
        "QUALIFICAÇÃO",
        (
            "Avaliar se o cliente pode se beneficiar do produto",
            "Entender orçamento, autoridade, necessidade e prazo",
        ),
        (
            "Faça perguntas estratégicas sobre tamanho da empresa e ferramentas atuais",
            "Descubra quem decide a compra e quando pretende implementar",
            "Mantenha um tom consultivo, não vendedor",
        ),
    ),
    FunnelStage.NEED_DISCOVERY: StageTemplate(
        "DESCOBERTA DE NECESSIDADES",
        (
            "Aprofundar o entendimento das necessidades específicas",
            "Compreender os resultados que o cliente deseja",
        ),
        (
            "Faça perguntas abertas e confirme o entendimento parafraseando",
            "Explore por que resolver o problema é importante agora",
            "Mostre empatia com os desafios compartilhados",
        ),
    ),
    FunnelStage.PAIN_POINT_EXPLORATION: StageTemplate(
        "EXPLORAÇÃO DE PONTOS DE DOR",
        (
            "Quantificar o impacto dos problemas em tempo e dinheiro",
            "Criar consciência do custo de não agir",
        ),
        (
            "Ajude o cliente a estimar quanto está perdendo com o problema",
            "Use histórias de clientes com dores parecidas, sem nomeá-los",
            "Valide se a dor justifica uma ação agora",
        ),
    ),
    FunnelStage.SOLUTION_PRESENTATION: StageTemplate(
        "APRESENTAÇÃO DA SOLUÇÃO",
        (
            "Apresentar o produto como solução para as dores identificadas",
            "Destacar benefícios, não apenas características",
        ),
        (
            "Retome as principais dores antes de apresentar a solução",
            "Conecte cada funcionalidade a uma necessidade do cliente",
            "Destaque de 3 a 5 diferenciais relevantes com exemplos concretos",
        ),
    ),
    FunnelStage.PRODUCT_DEMONSTRATION: StageTemplate(
        "DEMONSTRAÇÃO DO PRODUTO",
        (
            "Mostrar na prática como o produto resolve as dores do cliente",
            "Responder dúvidas técnicas e operacionais",
        ),
        (
            "Ofereça vídeos, capturas de tela ou casos de uso",
            "Explique a implementação no contexto do cliente sem jargões",
            "Convide o cliente a perguntar sobre a operação",
        ),
    ),
    FunnelStage.VALUE_PROPOSITION: StageTemplate(
        "PROPOSTA DE VALOR",
        (
            "Articular o valor único do produto para este cliente",
            "Relacionar o retorno esperado ao investimento",
        ),
        (
            "Resuma os problemas e suas consequências financeiras",
            "Compare o custo da inação com o investimento na solução",
            "Seja específico sobre resultados e prazos esperados",
        ),
    ),
    FunnelStage.PROOF_AND_CREDIBILITY: StageTemplate(
        "PROVAS SOCIAIS E CREDIBILIDADE",
        (
            "Reduzir o risco percebido da compra",
            "Demonstrar resultados concretos de outros clientes",
        ),
        (
            "Compartilhe casos de sucesso e números de resultados",
            "Ofereça enviar depoimentos usando as provas sociais disponíveis",
        ),
    ),
    FunnelStage.OBJECTION_HANDLING: StageTemplate(
        "TRATAMENTO DE OBJEÇÕES",
        (
            "Entender e responder as preocupações do cliente",
            "Manter o momentum positivo da conversa",
        ),
        (
            "Escute, reconheça, explore e só então responda",
            "Nunca dispute ou invalide a preocupação do cliente",
            "Confirme se a resposta atendeu à objeção",
        ),
    ),
    FunnelStage.PRICE_DISCUSSION: StageTemplate(
        "DISCUSSÃO DE PREÇO",
        (
            "Apresentar o investimento com confiança e como valor",
            "Fechar os detalhes financeiros antes da conclusão",
        ),
        (
            "Nunca se desculpe pelo preço",
            "Apresente o preço entre dois blocos de valor",
            "Ofereça opções de planos quando fizer sentido",
        ),
    ),
    FunnelStage.CLOSING: StageTemplate(
        "FECHAMENTO",
        (
            "Conduzir o cliente naturalmente à decisão de compra",
            "Definir próximos passos concretos",
        ),
        (
            "Use perguntas de fechamento que assumem a venda",
            "Resuma os benefícios acordados e ofereça garantias",
            "Quando o cliente decidir, envie o checkout do plano escolhido",
        ),
    ),
    FunnelStage.CHECKOUT: StageTemplate(
        "CHECKOUT",
        (
            "Facilitar o pagamento sem atrito",
            "Definir expectativas para depois do pagamento",
        ),
        (
            "Envie o link de pagamento de forma clara e explique o passo a passo",
            "Responda dúvidas sobre formas de pagamento e ativação",
        ),
    ),
    FunnelStage.POST_PURCHASE_FOLLOWUP: StageTemplate(
        "ACOMPANHAMENTO PÓS-COMPRA",
        (
            "Reafirmar a boa decisão do cliente",
            "Garantir uma experiência inicial positiva",
        ),
        (
            "Agradeça pela confiança e pergunte sobre as primeiras impressões",
            "Ofereça suporte proativo e recursos de aprendizado",
            "Prepare o terreno para futuras oportunidades com sutileza",
        ),
    ),
    FunnelStage.CROSS_SELL: StageTemplate(
        "CROSS-SELL",
        (
            "Oferecer complementos ao que o cliente já possui",
            "Mostrar o valor adicional da combinação",
        ),
        (
            "Baseie a sugestão no uso atual e nas necessidades identificadas",
            "Explique como o complemento se integra ao produto atual",
        ),
    ),
    FunnelStage.REACTIVATION: StageTemplate(
        "REATIVAÇÃO",
        (
            "Reengajar um cliente inativo",
            "Descobrir o que impediu o avanço anterior",
        ),
        (
            "Reconheça o tempo desde o último contato sem culpar o cliente",
            "Apresente novidades ou uma nova condição",
        ),
    ),
    FunnelStage.FEEDBACK: StageTemplate(
        "FEEDBACK",
        (
            "Coletar a percepção do cliente sobre a experiência",
            "Identificar promotores e oportunidades de melhoria",
        ),
        (
            "Faça perguntas específicas e agradeça qualquer feedback",
            "Pergunte de 0 a 10 o quanto recomendaria o produto",
        ),
    ),
    FunnelStage.UPSELL: StageTemplate(
        "UPSELL",
        (
            "Apresentar o upgrade como evolução natural da solução atual",
            "Obter o compromisso do cliente com a oferta",
        ),
        (
            "Reconheça os resultados do cliente antes de apresentar a oferta",
            "Use o pitch e a proposta de valor abaixo de forma personalizada",
            "Mencione o desconto e a validade para criar urgência",
            "Se o cliente recusar, agradeça e não insista",
        ),
    ),
    FunnelStage.DOWNSELL: StageTemplate(
        "DOWNSELL",
        (
            "Oferecer uma alternativa mais acessível após a recusa do upgrade",
            "Manter o cliente engajado sem parecer prêmio de consolação",
        ),
        (
            "Aceite a decisão anterior sem demonstrar decepção",
            "Apresente a alternativa de forma breve e clara",
            "Mencione o desconto especial e a validade",
        ),
    ),
}

_missing = set(FunnelStage) - set(STAGE_TEMPLATES)
if _missing:
    raise RuntimeError(f"Stages without an instruction template: {sorted(s.value for s in _missing)}")

GENERAL_TEMPLATE = StageTemplate(
    "INTERAÇÃO GERAL",
    (
        "Identificar a necessidade atual do cliente",
        "Direcionar a conversa para o próximo passo lógico",
    ),
    (
        "Faça perguntas para entender o contexto",
        "Seja útil e mantenha a conversa natural",
    ),
)

# Fallbacks used when no opportunity is attached to the conversation.
_OFFER_FALLBACKS = {
    FunnelStage.UPSELL: Opportunity(
        kind="upsell",
        source_plan_id="",
        target_plan_id="plano_premium",
        title="Upgrade para Plano Premium",
        pitch="Com o upgrade você teria acesso a recursos avançados que podem multiplicar seus resultados.",
        value_proposition="Clientes que fizeram este upgrade viram um aumento de performance de 35% em média.",
        limited_time="48h",
    ),
    FunnelStage.DOWNSELL: Opportunity(
        kind="downsell",
        source_plan_id="",
        target_plan_id="plano_intermediario",
        title="Plano Intermediário",
        pitch="Esta opção oferece os recursos essenciais que você precisa com um investimento reduzido.",
        value_proposition="Você terá as funcionalidades principais com excelente custo-benefício.",
        limited_time="24h",
    ),
}

_OFFER_CONTEXT_KEYS = {FunnelStage.UPSELL: "active_upsell", FunnelStage.DOWNSELL: "active_downsell"}

PERSUASION_STAGES = frozenset(
    {
        FunnelStage.OBJECTION_HANDLING,
        FunnelStage.PRICE_DISCUSSION,
        FunnelStage.CLOSING,
        FunnelStage.UPSELL,
        FunnelStage.DOWNSELL,
    }
)
URGENCY_STAGES = frozenset(
    {FunnelStage.CLOSING, FunnelStage.PRICE_DISCUSSION, FunnelStage.UPSELL, FunnelStage.DOWNSELL}
)

PERSUASION_TACTICS = """TÁTICAS DE PERSUASÃO:
- Reciprocidade: ofereça valor antes de pedir compromisso
- Escassez: destaque limitações genuínas de tempo ou disponibilidade
- Autoridade: use dados e experiência para dar credibilidade
- Consistência: relembre compromissos que o cliente já declarou
- Consenso social: mostre que clientes parecidos tomaram a mesma decisão
Use estas táticas de forma ética, sempre com foco no valor real para o cliente."""

URGENCY_TACTICS = """CRIAÇÃO DE URGÊNCIA:
- Mostre o custo de adiar a decisão
- Mencione condições por tempo limitado de forma honesta
- Use linguagem do momento presente ("hoje", "agora")
A urgência deve se basear em fatos reais, nunca em pressão indevida."""

DIRECTIVE_LEGEND = """Comandos Especiais (use apenas se apropriado, em linha própria):
- !prova_social:[id] para enviar uma prova social específica
- !checkout:[plano_id] para enviar o link de checkout de um plano
- !suporte para encaminhar o cliente ao suporte humano
- !etapa:[id_etapa] para mudar a etapa do funil"""


def _coerce_opportunity(value: Union[Opportunity, Mapping[str, Any], None]) -> Optional[Opportunity]:
    if value is None or isinstance(value, Opportunity):
        return value
    try:
        return Opportunity.from_dict(dict(value))
    except (TypeError, ValueError):
        return None


def _render_offer(stage: FunnelStage, opportunity: Optional[Opportunity]) -> str:
    fallback = _OFFER_FALLBACKS[stage]
    offer = opportunity or fallback
    discount = round((offer.discount or 0) * 100)
    label = "Upsell" if stage == FunnelStage.UPSELL else "Downsell"
    return "\n".join(
        [
            f"Detalhes da Oportunidade de {label}:",
            f"- Título: {offer.title or fallback.title}",
            f"- Plano Alvo: {offer.target_plan_id or fallback.target_plan_id}",
            f"- Pitch: {offer.pitch or fallback.pitch}",
            f"- Proposta de Valor: {offer.value_proposition or fallback.value_proposition}",
            f"- Desconto Especial: {discount}%",
            f"- Validade da Oferta: {offer.limited_time or fallback.limited_time}",
        ]
    )


def build_stage_instructions(stage_id, context: Optional[Mapping[str, Any]] = None) -> str:
    """Render the instruction block for a stage.

    ``stage_id`` may be a FunnelStage or its wire value; unknown ids get the general template.
    For UPSELL and DOWNSELL, ``context["active_upsell"]`` / ``context["active_downsell"]``
    (an Opportunity or its dict form) is interpolated into the block.
    """
    stage = parse_stage(stage_id)
    if stage is None:
        return GENERAL_TEMPLATE.render()

    rendered = STAGE_TEMPLATES[stage].render()
    if stage in _OFFER_CONTEXT_KEYS:
        opportunity = _coerce_opportunity((context or {}).get(_OFFER_CONTEXT_KEYS[stage]))
        rendered = f"{rendered}\n\n{_render_offer(stage, opportunity)}"
    return rendered


def greeting_for_hour(hour: int) -> str:
    if 12 <= hour < 18:
        return "Boa tarde"
    if hour >= 18 or hour < 5:
        return "Boa noite"
    return "Bom dia"


def format_objections(objections: Iterable[Any]) -> str:
    blocks = []
    for objection in objections:
        strategies = "\n".join(f"  * {s}" for s in objection.strategies)
        blocks.append(
            f"- Tipo: {objection.category}\n- Estratégias:\n{strategies}\n"
            f'- Exemplo de abordagem: "{objection.example}"'
        )
    if not blocks:
        return ""
    return "OBJEÇÕES DETECTADAS:\n" + "\n\n".join(blocks)


def build_system_prompt(
    stage: FunnelStage,
    *,
    identity: BotIdentity,
    contact_name: Optional[str],
    history: list,
    training: Optional[TrainingContext] = None,
    identified_pain: str = "",
    objections: Iterable[Any] = (),
    stage_context: Optional[Mapping[str, Any]] = None,
    now: Optional[datetime] = None,
) -> str:
    name = contact_name or "Cliente"
    training = training or TrainingContext()
    now = now or datetime.now()

    history_lines = [
        f"{name if msg.role == 'user' else identity.first_name}: {msg.content}" for msg in history[-10:]
    ]
    transcription_failed = bool(history) and bool((history[-1].metadata or {}).get("transcription_failed"))
    social_proofs = training.social_proof_lines()

    context_lines = [
        f"* Etapa do Funil: {stage.value}",
        f"* Dor Identificada: {identified_pain or 'ainda não identificada'}",
        f"* Produtos:\n{training.product_summary or 'Dados do produto não disponíveis'}",
        f"* Base de Conhecimento:\n{training.knowledge_text or 'Dados de treinamento não disponíveis'}",
        "* Provas Sociais Disponíveis:\n" + ("\n".join(social_proofs) or "Nenhuma prova social disponível"),
        "* Histórico da Conversa:\n" + ("\n".join(history_lines) or "Sem histórico de conversa"),
        f"* Saudação: {greeting_for_hour(now.hour)}",
    ]
    if transcription_failed:
        context_lines.append(
            "* ATENÇÃO: o último áudio do cliente não pôde ser transcrito. "
            "Peça para enviar por texto ou tentar o áudio novamente."
        )
    context_lines.append(f"* Tom de Voz: {identity.tone}")

    sections = [
        f"Você é {identity.first_name}, {identity.position} na {identity.company}. "
        f"Seu objetivo é conduzir {name} pelo funil de vendas até o fechamento, com naturalidade e persuasão.",
        "Contexto:\n" + "\n".join(context_lines),
        f"Instruções para esta Etapa ({stage.value}):\n{build_stage_instructions(stage, stage_context)}",
    ]
    objection_block = format_objections(objections)
    if objection_block:
        sections.append(objection_block)
    if stage in PERSUASION_STAGES:
        sections.append(PERSUASION_TACTICS)
    if stage in URGENCY_STAGES:
        sections.append(URGENCY_TACTICS)
    sections.append(
        f"Responda como {identity.first_name}, de forma natural e humana, seguindo o tom de voz definido. "
        "Priorize objeções e dúvidas do cliente antes de avançar para o próximo passo."
    )
    sections.append(DIRECTIVE_LEGEND)
    return "\n\n".join(sections)

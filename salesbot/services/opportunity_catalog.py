"""Static sales data: upsell/downsell offers, objection rules and signal keywords."""

from dataclasses import asdict, dataclass, replace
from typing import Optional


@dataclass(frozen=True)
class Opportunity:
    kind: str  # upsell, downsell, cross_sell
    source_plan_id: str
    target_plan_id: str
    title: str
    pitch: str
    value_proposition: str
    discount: float = 0.0
    limited_time: str = "48h"
    timing: Optional[str] = None  # upsell only: quick, standard, premium or "<n>_days"

    def __post_init__(self):
        if not 0.0 <= self.discount <= 1.0:
            raise ValueError(f"discount must be within [0, 1], got {self.discount}")

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Opportunity":
        known = {name: data[name] for name in cls.__dataclass_fields__ if name in data}
        return cls(**known)


@dataclass(frozen=True)
class ObjectionRule:
    category: str
    keywords: tuple[str, ...]
    strategies: tuple[str, ...]
    example: str


UPSELL_OPPORTUNITIES: dict[str, tuple[Opportunity, ...]] = {
    "basic_plan": (
        Opportunity(
            kind="upsell",
            source_plan_id="basic_plan",
            target_plan_id="pro_plan",
            title="Upgrade para Plano Pro",
            pitch=(
                "Com o Plano Pro, você terá acesso às funcionalidades avançadas, que podem aumentar "
                "seus resultados em até 47% com base nos dados de clientes similares."
            ),
            value_proposition="O investimento adicional se paga em poucas semanas com o ganho de produtividade.",
            discount=0.15,
            limited_time="72h",
            timing="standard",
        ),
    ),
    "pro_plan": (
        Opportunity(
            kind="upsell",
            source_plan_id="pro_plan",
            target_plan_id="enterprise_plan",
            title="Upgrade para Plano Enterprise",
            pitch=(
                "O Plano Enterprise inclui recursos exclusivos, suporte prioritário "
                "e consultoria estratégica mensal."
            ),
            value_proposition="Empresas no Enterprise aumentam o ROI em média 3.2x comparado ao Pro.",
            discount=0.10,
            limited_time="7d",
            timing="premium",
        ),
        Opportunity(
            kind="upsell",
            source_plan_id="pro_plan",
            target_plan_id="addon_training",
            title="Treinamento Personalizado",
            pitch=(
                "Complementando seu Plano Pro, oferecemos um programa de treinamento personalizado "
                "para sua equipe aproveitar ao máximo a plataforma."
            ),
            value_proposition="Equipes treinadas reportam 68% mais resultados nos primeiros 60 dias.",
            discount=0.20,
            limited_time="48h",
            timing="quick",
        ),
    ),
}

# Keyed by the rejected upsell's target plan.
DOWNSELL_ALTERNATIVES: dict[str, Opportunity] = {
    "pro_plan": Opportunity(
        kind="downsell",
        source_plan_id="pro_plan",
        target_plan_id="basic_plus_plan",
        title="Plano Básico Plus",
        pitch=(
            "Entendo que o Plano Pro pode não ser o ideal neste momento. O Básico Plus oferece os "
            "recursos essenciais do Pro com um investimento mais acessível."
        ),
        value_proposition="Você obtém 70% dos benefícios do Pro por apenas 50% do investimento.",
        discount=0.25,
        limited_time="24h",
    ),
    "enterprise_plan": Opportunity(
        kind="downsell",
        source_plan_id="enterprise_plan",
        target_plan_id="pro_plus_plan",
        title="Plano Pro Plus",
        pitch=(
            "Desenvolvemos o Pro Plus, que inclui os principais recursos do Enterprise "
            "sem o investimento completo."
        ),
        value_proposition="O Pro Plus entrega 80% do valor do Enterprise por 60% do investimento.",
        discount=0.15,
        limited_time="48h",
    ),
    "addon_training": Opportunity(
        kind="downsell",
        source_plan_id="addon_training",
        target_plan_id="addon_quickstart",
        title="Quickstart Guide Premium",
        pitch=(
            "Como alternativa ao treinamento completo, o Quickstart Guide Premium reúne vídeos "
            "e documentação avançada para auto-aprendizado."
        ),
        value_proposition="Economize 70% comparado ao treinamento personalizado.",
        discount=0.30,
        limited_time="24h",
    ),
}

TRAINING_CROSS_SELL = Opportunity(
    kind="cross_sell",
    source_plan_id="",
    target_plan_id="addon_training",
    title="Treinamento Especializado",
    pitch=(
        "Notei seu interesse em aprender mais sobre nossos recursos. O treinamento especializado "
        "ajuda a dominar a plataforma em metade do tempo."
    ),
    value_proposition="Clientes que investem em treinamento alcançam resultados 2.4x mais rápido.",
    discount=0.15,
    limited_time="48h",
)

OBJECTION_RULES: tuple[ObjectionRule, ...] = (
    ObjectionRule(
        category="price_too_high",
        keywords=("caro", "preço", "custo", "valor", "barato", "desconto", "promoção", "investimento", "orçamento"),
        strategies=(
            "Reconhecer a preocupação com o valor percebido",
            "Focar no ROI e benefícios de longo prazo",
            "Apresentar opções de pagamento ou planos flexíveis",
            "Comparar com o custo de alternativas ou de não agir",
            "Mostrar exemplos de clientes que tiveram retorno positivo",
        ),
        example=(
            "Entendo sua preocupação com o investimento. Muitos clientes pensaram o mesmo e, em 3 meses, "
            "tiveram retorno 3x maior que o valor investido. Posso mostrar alguns resultados?"
        ),
    ),
    ObjectionRule(
        category="need_time",
        keywords=("tempo", "pensar", "depois", "consultar", "decidir", "amanhã", "semana", "reflexão", "analisar"),
        strategies=(
            "Reconhecer a necessidade de reflexão",
            "Criar senso de urgência com ofertas por tempo limitado",
            "Oferecer informações adicionais para facilitar a decisão",
            "Sugerir um compromisso menor para iniciar",
            "Perguntar quais informações ajudariam na decisão",
        ),
        example=(
            "Entendo que precisa de tempo para pensar. O que você precisa saber para se sentir "
            "confortável com essa decisão?"
        ),
    ),
    ObjectionRule(
        category="need_approval",
        keywords=(
            "consultar", "chefe", "sócio", "esposa", "marido", "equipe",
            "decidir junto", "gerente", "superior", "diretor",
        ),
        strategies=(
            "Oferecer materiais para compartilhar com os decisores",
            "Propor uma apresentação para todos os envolvidos",
            "Fornecer casos de estudo e testemunhos relevantes",
            "Perguntar sobre o processo de decisão e oferecer apoio",
        ),
        example=(
            "Compreendo que precisa consultar seu sócio. Posso preparar um material com os pontos "
            "que discutimos para você compartilhar?"
        ),
    ),
    ObjectionRule(
        category="competitor",
        keywords=(
            "concorrente", "outra empresa", "outro sistema", "alternativa",
            "comparando", "diferente", "similar", "serviço parecido",
        ),
        strategies=(
            "Reconhecer os pontos fortes do concorrente",
            "Destacar diferenciais exclusivos do produto",
            "Compartilhar histórias de clientes que migraram",
        ),
        example=(
            "Sim, é um produto sólido. Muitos clientes vieram de lá pelo nosso suporte personalizado "
            "e pela integração nativa com os sistemas que você já usa."
        ),
    ),
    ObjectionRule(
        category="no_need",
        keywords=(
            "não preciso", "desnecessário", "resolvido", "satisfeito",
            "não tenho problema", "sem interesse", "não é prioridade",
        ),
        strategies=(
            "Explorar dores não percebidas ou oportunidades de melhoria",
            "Provocar reflexão sobre custos ocultos da situação atual",
            "Oferecer teste ou demonstração para evidenciar valor",
        ),
        example=(
            "Entendo que está satisfeito com a solução atual. Por curiosidade, quanto tempo sua equipe "
            "gasta por semana com esses processos manuais?"
        ),
    ),
    ObjectionRule(
        category="technical_concerns",
        keywords=(
            "complicado", "difícil", "técnico", "complexo", "implementação",
            "integração", "instalar", "configurar", "aprender",
        ),
        strategies=(
            "Explicar o processo de implementação de forma simples",
            "Destacar o suporte técnico disponível durante a transição",
            "Oferecer demonstração prática da facilidade de uso",
        ),
        example=(
            "Sua preocupação é válida. Nossa equipe cuida da implementação inicial, que leva "
            "normalmente 2 dias. Posso mostrar como funciona na prática?"
        ),
    ),
)

# Keyword families scanned over recent user messages, checked in this priority order.
CLOSING_SIGNALS = ("comprar", "adquirir", "assinar", "contratar", "fechar", "pagamento")
PRICING_SIGNALS = ("preço", "valor", "investimento", "custo", "plano", "pacote", "quanto custa")
DEMO_SIGNALS = ("funciona", "exemplo", "demonstração", "mostrar", "ver como")
OBJECTION_SIGNALS = tuple(keyword for rule in OBJECTION_RULES for keyword in rule.keywords)
TRAINING_INTEREST_SIGNALS = ("aprender", "treinamento", "como fazer", "tutorial", "ajuda")


def upsells_for(plan_id: str) -> tuple[Opportunity, ...]:
    return UPSELL_OPPORTUNITIES.get(plan_id, ())


def downsell_for(upsell_plan_id: str) -> Optional[Opportunity]:
    return DOWNSELL_ALTERNATIVES.get(upsell_plan_id)


def cross_sell_for(source_plan_id: str) -> Opportunity:
    return replace(TRAINING_CROSS_SELL, source_plan_id=source_plan_id)

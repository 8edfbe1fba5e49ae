"""Funnel engine: stage resolution, transitions and upsell/downsell opportunity state."""

import math
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from salesbot.logging_config import get_logger
from salesbot.services import opportunity_catalog as catalog
from salesbot.services.conversation_service import (
    CURRENT_KEY,
    STAGE_KEY,
    ChatState,
    MemoryCategory,
    get_persisted_stage,
)
from salesbot.services.errors import SalesBotError, ValidationError
from salesbot.services.funnel_stages import FunnelStage, coerce_stage
from salesbot.services.memory_store import ConversationStore, utcnow
from salesbot.services.opportunity_catalog import Opportunity
from salesbot.services.stage_instructions import BotIdentity, build_stage_instructions, build_system_prompt
from salesbot.services.training_context import TrainingContext

logger = get_logger("funnel_service")

OFFER_CONFIDENCE_THRESHOLD = 0.7
MAX_UPSELL_DELAY_DAYS = 60

POSITIVE_OFFER_KEYWORDS = (
    "sim", "quero", "aceito", "concordo", "interessante", "gostei", "vamos", "ótimo",
    "excelente", "perfeito", "bom", "legal", "parece bom", "me interessa", "bacana", "gostaria",
)
NEGATIVE_OFFER_KEYWORDS = (
    "não", "agora não", "talvez depois", "muito caro", "caro", "sem condições", "preciso pensar",
    "não tenho interesse", "não quero", "recuso", "não posso", "não consigo", "deixa pra depois",
    "outra hora", "no momento não",
)

_OFFER_CATEGORIES = {
    "upsell": MemoryCategory.ACTIVE_UPSELL,
    "downsell": MemoryCategory.ACTIVE_DOWNSELL,
}


@dataclass(frozen=True)
class FunnelOptions:
    default_stage: FunnelStage = FunnelStage.GREETING
    enable_upsell_downsell: bool = True
    timing_quick_days: int = 3
    timing_standard_days: int = 7
    timing_premium_days: int = 30
    downsell_window_hours: int = 24

    @classmethod
    def from_settings(cls, settings) -> "FunnelOptions":
        return cls(
            enable_upsell_downsell=settings.enable_upsell_downsell,
            timing_quick_days=settings.upsell_timing_quick_days,
            timing_standard_days=settings.upsell_timing_standard_days,
            timing_premium_days=settings.upsell_timing_premium_days,
        )


@dataclass(frozen=True)
class DetectedObjection:
    category: str
    strategies: tuple[str, ...]
    example: str


@dataclass(frozen=True)
class OfferAnalysis:
    accepted: bool
    confidence: float

    @property
    def actionable(self) -> bool:
        return self.confidence > OFFER_CONFIDENCE_THRESHOLD


@dataclass(frozen=True)
class UpsellTiming:
    recommended_days: int
    next_attempt_at: datetime
    factors: dict = field(default_factory=dict)


def days_between(start: datetime, end: datetime) -> int:
    return math.ceil(abs((end - start).total_seconds()) / 86400)


def hours_between(start: datetime, end: datetime) -> int:
    return math.ceil(abs((end - start).total_seconds()) / 3600)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _contains_any(texts: list[str], keywords) -> bool:
    return any(keyword in text for text in texts for keyword in keywords)


def identify_objections(text: str) -> list[DetectedObjection]:
    """Every objection rule with at least one keyword in ``text`` (case-insensitive substring)."""
    if not text:
        return []
    lowered = text.lower()
    return [
        DetectedObjection(category=rule.category, strategies=rule.strategies, example=rule.example)
        for rule in catalog.OBJECTION_RULES
        if any(keyword.lower() in lowered for keyword in rule.keywords)
    ]


def analyze_offer_response(text: str) -> OfferAnalysis:
    """Classify a free-text reply to an upsell/downsell offer.

    Keyword hits on both sides resolve to a rejection when "não" comes before the
    first positive keyword, otherwise to the majority, both at 0.6. A one-sided hit scales
    with the hit count. With no hits, questions read as hesitation (0.65), very short
    replies as 0.5 and anything else as an ambiguous rejection (0.55).
    """
    if not text:
        return OfferAnalysis(accepted=False, confidence=0.0)

    message = text.lower()
    positive_positions = [message.find(k) for k in POSITIVE_OFFER_KEYWORDS if k in message]
    positive = len(positive_positions)
    negative = sum(1 for k in NEGATIVE_OFFER_KEYWORDS if k in message)

    if positive and negative:
        negation_at = message.find("não")
        if negation_at != -1 and negation_at < min(positive_positions):
            return OfferAnalysis(accepted=False, confidence=0.6)
        return OfferAnalysis(accepted=positive > negative, confidence=0.6)
    if positive:
        return OfferAnalysis(accepted=True, confidence=min(0.3 + 0.2 * positive, 0.95))
    if negative:
        return OfferAnalysis(accepted=False, confidence=min(0.3 + 0.2 * negative, 0.95))
    if "?" in message:
        return OfferAnalysis(accepted=False, confidence=0.65)
    if len(message) < 10:
        return OfferAnalysis(accepted=False, confidence=0.5)
    return OfferAnalysis(accepted=False, confidence=0.55)


def _no_price(plan_id: str) -> float:
    return 0.0


class FunnelEngine:
    """Sales funnel state for one store.

    Stage and opportunity state live in the conversation store under the categories of
    ``MemoryCategory``; the engine itself keeps no per-conversation state.
    """

    identify_objections = staticmethod(identify_objections)
    analyze_offer_response = staticmethod(analyze_offer_response)
    build_stage_instructions = staticmethod(build_stage_instructions)

    def __init__(
        self,
        store: ConversationStore,
        options: Optional[FunnelOptions] = None,
        clock: Callable[[], datetime] = utcnow,
        price_lookup: Callable[[str], float] = _no_price,
    ):
        self.store = store
        self.options = options or FunnelOptions()
        self.clock = clock
        self.price_lookup = price_lookup

    def _event_key(self, prefix: str, now: datetime) -> str:
        return f"{prefix}_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:6]}"

    # Stage resolution

    async def determine_stage(self, chat_state: ChatState) -> FunnelStage:
        """Resolve the stage for this turn. Never raises; failures fall back to the default stage."""
        contact_key = chat_state.contact_key
        try:
            persisted = await get_persisted_stage(self.store, contact_key)
            if persisted is not None:
                return persisted

            stage = await self._opportunity_stage(contact_key) or self._stage_from_conversation(chat_state)
            await self.store.set_value(contact_key, STAGE_KEY, stage.value, MemoryCategory.FUNNEL_STAGE)
            return stage
        except Exception as e:
            logger.error(
                f"Failed to determine funnel stage: {e}",
                exc_info=True,
                extra={"context": {"contact_key": contact_key}},
            )
            return self.options.default_stage

    async def _opportunity_stage(self, contact_key: str) -> Optional[FunnelStage]:
        if not self.options.enable_upsell_downsell:
            return None
        now = self.clock()

        purchased = await self.store.get_latest(contact_key, MemoryCategory.PURCHASED_PRODUCT)
        interaction = await self.store.get_latest(contact_key, MemoryCategory.LAST_INTERACTION)
        purchase_date = _parse_timestamp((interaction.value or {}).get("purchase_date")) if interaction else None
        if purchased and purchased.value and purchase_date:
            opportunity = self.check_upsell_opportunity(purchased.value, days_between(purchase_date, now))
            if opportunity:
                await self._activate(contact_key, opportunity)
                logger.info(
                    "Upsell opportunity activated",
                    extra={"context": {"contact_key": contact_key, "target_plan_id": opportunity.target_plan_id}},
                )
                return FunnelStage.UPSELL

        rejected = await self.store.get_latest(contact_key, MemoryCategory.REJECTED_UPSELL)
        if rejected and isinstance(rejected.value, dict):
            rejected_at = _parse_timestamp(rejected.value.get("rejection_time"))
            if rejected_at and hours_between(rejected_at, now) < self.options.downsell_window_hours:
                downsell = self.get_downsell_for_rejected(rejected.value.get("target_plan_id", ""))
                if downsell:
                    await self._activate(contact_key, downsell)
                    logger.info(
                        "Downsell opportunity activated",
                        extra={"context": {"contact_key": contact_key, "target_plan_id": downsell.target_plan_id}},
                    )
                    return FunnelStage.DOWNSELL
        return None

    def _stage_from_conversation(self, chat_state: ChatState) -> FunnelStage:
        count = len(chat_state.messages)
        if count == 0:
            return FunnelStage.GREETING
        if count < 5:
            return FunnelStage.QUALIFICATION
        if count < 10:
            return FunnelStage.NEED_DISCOVERY

        recent = chat_state.recent_user_texts(5)
        if _contains_any(recent, catalog.CLOSING_SIGNALS):
            return FunnelStage.CLOSING
        if _contains_any(recent, catalog.PRICING_SIGNALS):
            return FunnelStage.PRICE_DISCUSSION
        if _contains_any(recent, catalog.OBJECTION_SIGNALS):
            return FunnelStage.OBJECTION_HANDLING
        if _contains_any(recent, catalog.DEMO_SIGNALS):
            return FunnelStage.PRODUCT_DEMONSTRATION

        if count < 15:
            return FunnelStage.PAIN_POINT_EXPLORATION
        if count < 20:
            return FunnelStage.SOLUTION_PRESENTATION
        return FunnelStage.VALUE_PROPOSITION

    async def update_stage(self, contact_key: str, new_stage) -> FunnelStage:
        """Apply a stage change and record the transition.

        Leaving UPSELL records the active upsell as rejected; when a downsell exists for its
        target plan the applied stage becomes DOWNSELL regardless of ``new_stage``.
        Raises InvalidStageError before any write. Store failures propagate.
        """
        requested = coerce_stage(new_stage)
        prior = await get_persisted_stage(self.store, contact_key) or self.options.default_stage
        applied = requested
        now = self.clock()

        if prior == FunnelStage.UPSELL and requested != FunnelStage.UPSELL:
            active = await self.get_active_opportunity(contact_key, "upsell")
            if active:
                await self.store.set_value(
                    contact_key,
                    CURRENT_KEY,
                    {"target_plan_id": active.target_plan_id, "rejection_time": now.isoformat()},
                    MemoryCategory.REJECTED_UPSELL,
                )
                await self.store.delete(contact_key, CURRENT_KEY, MemoryCategory.ACTIVE_UPSELL)
                downsell = self.get_downsell_for_rejected(active.target_plan_id)
                if downsell:
                    await self._activate(contact_key, downsell)
                    applied = FunnelStage.DOWNSELL

        await self.store.set_value(contact_key, STAGE_KEY, applied.value, MemoryCategory.FUNNEL_STAGE)
        await self.store.set_value(
            contact_key,
            self._event_key("stage_transition", now),
            {"from": prior.value, "to": applied.value, "timestamp": now.isoformat()},
            MemoryCategory.FUNNEL_ANALYTICS,
        )
        logger.info(
            f"Funnel stage {prior.value} -> {applied.value}",
            extra={"context": {"contact_key": contact_key, "requested": requested.value}},
        )
        return applied

    # Opportunities

    def resolve_timing_days(self, timing: Optional[str]) -> int:
        buckets = {
            "quick": self.options.timing_quick_days,
            "standard": self.options.timing_standard_days,
            "premium": self.options.timing_premium_days,
        }
        if timing in buckets:
            return buckets[timing]
        match = re.search(r"\d+", timing or "")
        return int(match.group()) if match else self.options.timing_standard_days

    def check_upsell_opportunity(self, plan_id: str, days_since_purchase: int) -> Optional[Opportunity]:
        if not self.options.enable_upsell_downsell:
            return None
        for opportunity in catalog.upsells_for(plan_id):
            timing_days = self.resolve_timing_days(opportunity.timing)
            if timing_days - 1 <= days_since_purchase <= timing_days + 3:
                return opportunity
        return None

    def get_downsell_for_rejected(self, upsell_plan_id: str) -> Optional[Opportunity]:
        if not self.options.enable_upsell_downsell:
            return None
        return catalog.downsell_for(upsell_plan_id)

    async def _activate(self, contact_key: str, opportunity: Opportunity) -> None:
        category = _OFFER_CATEGORIES[opportunity.kind]
        await self.store.set_value(contact_key, CURRENT_KEY, opportunity.to_dict(), category)

    async def get_active_opportunity(self, contact_key: str, kind: str) -> Optional[Opportunity]:
        entry = await self.store.get_latest(contact_key, _OFFER_CATEGORIES[kind])
        if not entry or not isinstance(entry.value, dict):
            return None
        return Opportunity.from_dict(entry.value)

    async def find_sales_opportunities(self, chat_state: ChatState) -> list[Opportunity]:
        """Upsells for the purchased plan, plus a training cross-sell when the contact wants to learn."""
        if not self.options.enable_upsell_downsell:
            return []
        purchased = await self.store.get_latest(chat_state.contact_key, MemoryCategory.PURCHASED_PRODUCT)
        if not purchased or not purchased.value:
            return []
        opportunities = list(catalog.upsells_for(purchased.value))
        if _contains_any(chat_state.recent_user_texts(5), catalog.TRAINING_INTEREST_SIGNALS):
            opportunities.append(catalog.cross_sell_for(purchased.value))
        return opportunities

    # Purchases and offer replies

    async def record_purchase(self, contact_key: str, product_id: str, value: float) -> None:
        """Write the purchase facts, then move to POST_PURCHASE_FOLLOWUP.

        Writes happen in order and are not undone if a later one fails; the failure propagates.
        """
        now = self.clock()
        await self.store.set_value(contact_key, CURRENT_KEY, product_id, MemoryCategory.PURCHASED_PRODUCT)
        await self.store.set_value(
            contact_key,
            self._event_key("purchase", now),
            {"product_id": product_id, "value": value, "purchase_date": now.isoformat()},
            MemoryCategory.PURCHASE_HISTORY,
        )
        await self.store.set_value(
            contact_key,
            CURRENT_KEY,
            {"type": "purchase", "purchase_date": now.isoformat(), "product_id": product_id},
            MemoryCategory.LAST_INTERACTION,
        )
        logger.info(
            "Purchase recorded",
            extra={"context": {"contact_key": contact_key, "product_id": product_id, "value": value}},
        )
        await self.update_stage(contact_key, FunnelStage.POST_PURCHASE_FOLLOWUP)

    async def record_offer_response(self, contact_key: str, offer_kind: str, target_plan_id: str, accepted: bool) -> None:
        if offer_kind not in _OFFER_CATEGORIES:
            raise ValidationError(f"Unknown offer kind: {offer_kind!r}")
        now = self.clock()

        await self.store.set_value(
            contact_key,
            self._event_key(f"{offer_kind}_response", now),
            {
                "offer_kind": offer_kind,
                "target_plan_id": target_plan_id,
                "accepted": accepted,
                "response_date": now.isoformat(),
            },
            MemoryCategory.OFFER_RESPONSE,
        )

        if accepted:
            await self.store.delete(contact_key, CURRENT_KEY, _OFFER_CATEGORIES[offer_kind])
            await self.record_purchase(contact_key, target_plan_id, self.price_lookup(target_plan_id))
        elif offer_kind == "upsell":
            active = await self.get_active_opportunity(contact_key, "upsell")
            await self.store.set_value(
                contact_key,
                CURRENT_KEY,
                {
                    "target_plan_id": active.target_plan_id if active else target_plan_id,
                    "rejection_time": now.isoformat(),
                },
                MemoryCategory.REJECTED_UPSELL,
            )

        logger.info(
            f"{offer_kind} response recorded",
            extra={"context": {"contact_key": contact_key, "target_plan_id": target_plan_id, "accepted": accepted}},
        )

    async def calculate_next_upsell_timing(self, contact_key: str) -> UpsellTiming:
        now = self.clock()
        base = self.options.timing_standard_days
        try:
            purchases = await self.store.get_all(contact_key, category=MemoryCategory.PURCHASE_HISTORY)
            responses = await self.store.get_all(contact_key, category=MemoryCategory.OFFER_RESPONSE)
        except SalesBotError as e:
            logger.warning(f"Could not load offer history, using default upsell timing: {e}")
            return UpsellTiming(recommended_days=base, next_attempt_at=now + timedelta(days=base))

        days = base
        purchase_dates = [
            d for d in (_parse_timestamp((p.value or {}).get("purchase_date")) for p in purchases) if d
        ]
        days_since_purchase = days_between(max(purchase_dates), now) if purchase_dates else None
        if days_since_purchase is not None and days_since_purchase < 3:
            days += 7

        rejections = sum(1 for r in responses if isinstance(r.value, dict) and not r.value.get("accepted"))
        days = min(days + 5 * rejections, MAX_UPSELL_DELAY_DAYS)
        return UpsellTiming(
            recommended_days=days,
            next_attempt_at=now + timedelta(days=days),
            factors={
                "base_days": base,
                "days_since_purchase": days_since_purchase,
                "previous_rejections": rejections,
            },
        )

    # Prompt context

    async def extract_identified_pain(self, contact_key: str) -> str:
        try:
            entry = await self.store.get_latest(contact_key, MemoryCategory.IDENTIFIED_PAIN)
        except SalesBotError as e:
            logger.warning(f"Could not load identified pain: {e}", extra={"context": {"contact_key": contact_key}})
            return ""
        return str(entry.value) if entry and entry.value else ""

    async def generate_system_prompt(
        self,
        stage: FunnelStage,
        chat_state: ChatState,
        identity: BotIdentity,
        training: Optional[TrainingContext] = None,
        now: Optional[datetime] = None,
    ) -> str:
        stage_context = {}
        if stage == FunnelStage.UPSELL:
            stage_context["active_upsell"] = await self.get_active_opportunity(chat_state.contact_key, "upsell")
        elif stage == FunnelStage.DOWNSELL:
            stage_context["active_downsell"] = await self.get_active_opportunity(chat_state.contact_key, "downsell")

        last_user = chat_state.last_user_message()
        return build_system_prompt(
            stage,
            identity=identity,
            contact_name=chat_state.contact_name,
            history=chat_state.messages,
            training=training,
            identified_pain=await self.extract_identified_pain(chat_state.contact_key),
            objections=identify_objections(last_user.content) if last_user else (),
            stage_context=stage_context,
            now=now,
        )

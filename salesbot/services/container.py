"""Explicit wiring of the service instances used by the API process."""

from dataclasses import dataclass
from typing import Any, Callable, Optional

from fastapi import Request
from sqlalchemy.orm import Session

from salesbot.config import Settings
from salesbot.logging_config import get_logger
from salesbot.services.dispatcher import DispatchOptions, OutgoingDispatcher
from salesbot.services.funnel_service import FunnelEngine, FunnelOptions
from salesbot.services.llm import GenerationParams, LLMProvider, ModelGateway, OpenAIProvider
from salesbot.services.memory_store import (
    CachedConversationStore,
    ConversationStore,
    RetryingConversationStore,
    SqlConversationStore,
)
from salesbot.services.message_batcher import MessageBatcher
from salesbot.services.message_dedup import MessageDeduplicator, build_redis_client
from salesbot.services.pricing_catalog import PricingCatalog
from salesbot.services.retry import RetryPolicy
from salesbot.services.sales_agent import SalesAgent
from salesbot.services.stage_instructions import BotIdentity
from salesbot.services.training_context import TrainingContext, load_training_context
from salesbot.services.whatsapp_transport import ChatFlowTransport, MediaUrlSigner, MessagingTransport

logger = get_logger("container")


@dataclass
class ServiceContainer:
    settings: Settings
    store: ConversationStore
    pricing: PricingCatalog
    training: TrainingContext
    funnel: FunnelEngine
    gateway: ModelGateway
    transport: MessagingTransport
    media_signer: MediaUrlSigner
    dispatcher: OutgoingDispatcher
    agent: SalesAgent
    batcher: MessageBatcher
    redis: Any
    dedup: MessageDeduplicator

    async def aclose(self) -> None:
        await self.batcher.aclose()
        await self.dispatcher.aclose()
        await self.gateway.aclose()
        await self.transport.aclose()
        await self.redis.aclose()


def build_store(settings: Settings, session_factory: Callable[[], Session], redis_client) -> ConversationStore:
    """SQL store behind retries, behind the read-through cache."""
    retry_policy = RetryPolicy(
        max_retries=settings.store_max_retries,
        initial_delay=settings.store_initial_delay_seconds,
        max_delay=settings.store_max_delay_seconds,
    )
    return CachedConversationStore(
        RetryingConversationStore(SqlConversationStore(session_factory), retry_policy),
        redis_client,
        ttl_seconds=settings.memory_cache_ttl_seconds,
    )


def build_container(
    settings: Settings,
    *,
    store: Optional[ConversationStore] = None,
    session_factory: Optional[Callable[[], Session]] = None,
    provider: Optional[LLMProvider] = None,
    transport: Optional[MessagingTransport] = None,
    redis_client=None,
) -> ServiceContainer:
    if redis_client is None:
        redis_client = build_redis_client(settings.redis_url, settings.redis_socket_timeout_seconds)

    if store is None:
        if session_factory is None:
            from salesbot.database import SessionLocal

            session_factory = SessionLocal
        store = build_store(settings, session_factory, redis_client)

    pricing = PricingCatalog()
    placeholder_links = pricing.validation_issues()
    if placeholder_links:
        logger.warning(
            "Plans without a real checkout link",
            extra={"context": {"plan_ids": placeholder_links}},
        )

    training = load_training_context(settings.training_manifest_path, product_summary=pricing.describe())
    funnel = FunnelEngine(store, FunnelOptions.from_settings(settings), price_lookup=pricing.price_of)

    provider = provider or OpenAIProvider(
        api_key=settings.openai_api_key,
        default_model=settings.openai_model,
        base_url=settings.openai_base_url,
        transcription_model=settings.transcription_model,
    )
    gateway = ModelGateway(
        provider,
        RetryPolicy(
            max_retries=settings.llm_max_retries,
            initial_delay=settings.llm_initial_delay_seconds,
            max_delay=settings.llm_max_delay_seconds,
        ),
        GenerationParams.from_settings(settings),
    )

    transport = transport or ChatFlowTransport(
        api_url=settings.chatflow_api_url,
        token=settings.chatflow_token,
        instance_id=settings.chatflow_instance_id,
    )
    media_signer = MediaUrlSigner(
        settings.media_signing_secret,
        settings.public_base_url,
        ttl_seconds=settings.media_url_ttl_seconds,
    )
    dispatcher = OutgoingDispatcher(transport, DispatchOptions.from_settings(settings))
    agent = SalesAgent(
        store=store,
        funnel=funnel,
        gateway=gateway,
        dispatcher=dispatcher,
        transport=transport,
        identity=BotIdentity(
            first_name=settings.bot_first_name,
            position=settings.bot_position,
            company=settings.bot_company,
            tone=settings.bot_tone,
        ),
        training=training,
        pricing=pricing,
        media_signer=media_signer,
        allow_backward_stage_suggestions=settings.allow_backward_stage_suggestions,
        max_audio_bytes=settings.max_audio_bytes,
        transcription_language=settings.transcription_language,
        checkout_utm_source=settings.checkout_utm_source,
    )
    batcher = MessageBatcher.from_settings(agent.handle_turn, settings)

    return ServiceContainer(
        settings=settings,
        store=store,
        pricing=pricing,
        training=training,
        funnel=funnel,
        gateway=gateway,
        transport=transport,
        media_signer=media_signer,
        dispatcher=dispatcher,
        agent=agent,
        batcher=batcher,
        redis=redis_client,
        dedup=MessageDeduplicator(redis_client, ttl_seconds=settings.dedup_ttl_seconds),
    )


def get_container(request: Request) -> ServiceContainer:
    """FastAPI dependency: the container built at startup."""
    return request.app.state.container

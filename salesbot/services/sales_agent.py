"""Turn processing for one conversation.

The batcher hands every grouped turn to ``SalesAgent.handle_turn``. Store and model
failures are turned into a single apology message here and nowhere else; delivery
failures propagate back to the batcher, which aborts the run.
"""

import uuid
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from salesbot.logging_config import ConversationLogger, get_logger
from salesbot.services.conversation_service import (
    ChatState,
    MemoryCategory,
    load_chat_state,
    record_message,
    remember_contact_name,
    trim_history,
)
from salesbot.services.dispatcher import OutgoingDispatcher
from salesbot.services.errors import FatalError, SalesBotError, ValidationError
from salesbot.services.funnel_service import FunnelEngine, analyze_offer_response
from salesbot.services.funnel_stages import FunnelStage
from salesbot.services.llm import ModelGateway
from salesbot.services.memory_store import ConversationStore, utcnow
from salesbot.services.message_batcher import InboundFragment, MediaAttachment
from salesbot.services.pricing_catalog import PricingCatalog
from salesbot.services.response_processor import ProcessedResponse, process_response
from salesbot.services.result import Result
from salesbot.services.stage_instructions import BotIdentity
from salesbot.services.training_context import TrainingContext
from salesbot.services.whatsapp_transport import MediaUrlSigner, MessagingTransport

logger = get_logger("sales_agent")

MAX_AUDIO_BYTES = 15 * 1024 * 1024

APOLOGY_MESSAGE = (
    "Desculpe, estou enfrentando dificuldades técnicas no momento. Poderia tentar novamente em alguns instantes?"
)
MEDIA_ACKNOWLEDGEMENTS = {
    "image": "Recebi sua imagem! Posso ajudar com alguma dúvida sobre ela?",
    "video": "Recebi seu vídeo! Se tiver alguma pergunta sobre ele, estou à disposição.",
    "document": "Recebi seu documento! Se precisar de ajuda com algo relacionado a ele, é só me dizer.",
}
GENERIC_MEDIA_ACKNOWLEDGEMENT = "Recebi sua mídia! Em que posso ajudar?"
AUDIO_TOO_LONG_MESSAGE = (
    "Seu áudio é muito longo para ser processado. Por favor, envie um áudio mais curto ou sua mensagem em texto."
)
AUDIO_FAILED_MESSAGE = (
    "Não consegui transcrever seu áudio. Poderia tentar novamente ou enviar sua mensagem em texto?"
)
CHECKOUT_UNAVAILABLE_MESSAGE = (
    "Desculpe, não consegui gerar o link de pagamento neste momento. "
    "Poderia entrar em contato com nosso suporte para finalizar sua compra?"
)
SUPPORT_TRANSFER_MESSAGE = (
    "Estou transferindo você para nossa equipe de suporte humano. "
    "Um consultor especializado entrará em contato em breve. Obrigado pela compreensão!"
)
UNTRANSCRIBED_AUDIO_PLACEHOLDER = "[áudio não transcrito]"

_OFFER_KINDS = {FunnelStage.UPSELL: "upsell", FunnelStage.DOWNSELL: "downsell"}
_AUDIO_EXTENSIONS = {
    "audio/ogg": ".ogg",
    "audio/mpeg": ".mp3",
    "audio/mp4": ".m4a",
    "audio/wav": ".wav",
    "audio/webm": ".webm",
}

MediaFetcher = Callable[[MediaAttachment, int], Awaitable[Tuple[Optional[bytes], Optional[str]]]]


async def download_media_bytes(media: MediaAttachment, max_bytes: int) -> Tuple[Optional[bytes], Optional[str]]:
    """Stream the attachment URL into memory. Returns (data, None) or (None, reason)."""
    if not media.url:
        return None, "missing_url"

    size_bytes = 0
    data = bytearray()
    try:
        async with httpx.AsyncClient(timeout=15.0) as client:
            async with client.stream("GET", media.url) as response:
                response.raise_for_status()
                async for chunk in response.aiter_bytes():
                    size_bytes += len(chunk)
                    if max_bytes and size_bytes > max_bytes:
                        return None, "too_large"
                    data.extend(chunk)
    except httpx.HTTPError as exc:
        return None, f"download_failed:{exc}"
    return bytes(data), None


def add_tracking_params(url: str, params: dict) -> str:
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True) + list(params.items())
    return urlunsplit(parts._replace(query=urlencode(query)))


def _transcript_filename(media: MediaAttachment) -> str:
    if media.file_name:
        return media.file_name
    return f"voice{_AUDIO_EXTENSIONS.get((media.mime or '').split(';')[0].strip(), '.ogg')}"


class SalesAgent:
    def __init__(
        self,
        store: ConversationStore,
        funnel: FunnelEngine,
        gateway: ModelGateway,
        dispatcher: OutgoingDispatcher,
        transport: MessagingTransport,
        identity: BotIdentity,
        training: Optional[TrainingContext] = None,
        pricing: Optional[PricingCatalog] = None,
        media_signer: Optional[MediaUrlSigner] = None,
        allow_backward_stage_suggestions: bool = True,
        max_audio_bytes: int = MAX_AUDIO_BYTES,
        transcription_language: Optional[str] = "pt",
        checkout_utm_source: str = "whatsapp_bot",
        media_fetcher: MediaFetcher = download_media_bytes,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.funnel = funnel
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.transport = transport
        self.identity = identity
        self.training = training or TrainingContext()
        self.pricing = pricing or PricingCatalog()
        self.media_signer = media_signer
        self.allow_backward_stage_suggestions = allow_backward_stage_suggestions
        self.max_audio_bytes = max_audio_bytes
        self.transcription_language = transcription_language
        self.checkout_utm_source = checkout_utm_source
        self.media_fetcher = media_fetcher
        self.clock = clock

    def _event_key(self, prefix: str) -> str:
        return f"{prefix}_{int(self.clock().timestamp() * 1000)}_{uuid.uuid4().hex[:6]}"

    async def _guarded(self, contact_key: str, operation: Callable[[], Awaitable], what: str):
        """Run ``operation``; store and model failures become the apology message."""
        try:
            return await operation()
        except (FatalError, ValidationError) as e:
            logger.error(
                f"Error {what} for {contact_key}: {e}",
                exc_info=True,
                extra={"context": {"contact_key": contact_key, "error_type": type(e).__name__}},
            )
            await self.dispatcher.deliver(contact_key, APOLOGY_MESSAGE)
            return None

    # Turn entry point

    async def handle_turn(self, contact_key: str, fragments: List[InboundFragment]) -> None:
        state = await self._guarded(contact_key, lambda: self._load_state(contact_key, fragments), "loading chat")
        if state is None:
            return

        texts = [f.text.strip() for f in fragments if not f.is_media and f.text and f.text.strip()]
        if texts:
            await self.process_text(state, "\n\n".join(texts))

        for fragment in fragments:
            if fragment.is_media:
                await self.process_media(state, fragment.media)

    async def _load_state(self, contact_key: str, fragments: List[InboundFragment]) -> ChatState:
        state = await load_chat_state(self.store, contact_key)
        names = [f.contact_name for f in fragments if f.contact_name]
        if names:
            await remember_contact_name(self.store, state, names[-1])
        return state

    # Text

    async def process_text(
        self,
        state: ChatState,
        text: str,
        metadata: Optional[dict] = None,
    ) -> Optional[ProcessedResponse]:
        await self.transport.send_typing_state(state.contact_key, True)
        processed = await self._guarded(
            state.contact_key, lambda: self._respond(state, text, metadata), "processing text message"
        )
        if processed is None:
            return None

        await self.dispatcher.deliver(state.contact_key, processed.content)
        await self._run_actions(state, processed)
        return processed

    async def _respond(self, state: ChatState, text: str, metadata: Optional[dict]) -> ProcessedResponse:
        log = ConversationLogger(logger, {"contact_key": state.contact_key})
        await record_message(self.store, state, "user", text, metadata, clock=self.clock)

        stage = await self.funnel.determine_stage(state)
        state.current_stage = stage
        log.debug(f"Current funnel stage: {stage.value}")

        system_prompt = await self.funnel.generate_system_prompt(
            stage, state, self.identity, self.training, now=self.clock()
        )
        response = await self.gateway.complete(trim_history(system_prompt, state.messages))
        processed = process_response(response.content, stage, self.allow_backward_stage_suggestions)

        purchased = await self._handle_offer_reply(state, stage, text)

        await record_message(
            self.store,
            state,
            "assistant",
            processed.content,
            {"stage": stage.value, "model": response.model},
            clock=self.clock,
        )

        suggested = processed.metadata.suggested_stage
        if suggested is not None and suggested != stage and not purchased:
            log.info(f"Stage transition suggested: {stage.value} -> {suggested.value}")
            state.current_stage = await self.funnel.update_stage(state.contact_key, suggested)
        return processed

    async def _handle_offer_reply(self, state: ChatState, stage: FunnelStage, text: str) -> bool:
        """Record a confident accept/reject of the active offer. Returns True when it became a purchase."""
        kind = _OFFER_KINDS.get(stage)
        if kind is None:
            return False
        offer = await self.funnel.get_active_opportunity(state.contact_key, kind)
        if offer is None:
            return False

        analysis = analyze_offer_response(text)
        if not analysis.actionable:
            return False
        await self.funnel.record_offer_response(state.contact_key, kind, offer.target_plan_id, analysis.accepted)
        if analysis.accepted:
            state.current_stage = FunnelStage.POST_PURCHASE_FOLLOWUP
        return analysis.accepted

    # Media

    async def process_media(self, state: ChatState, media: MediaAttachment) -> None:
        if media.media_type == "audio":
            await self._process_audio(state, media)
            return
        if media.caption and media.caption.strip():
            await self.process_text(state, media.caption.strip())
            return
        acknowledgement = MEDIA_ACKNOWLEDGEMENTS.get(media.media_type, GENERIC_MEDIA_ACKNOWLEDGEMENT)
        await self.dispatcher.deliver(state.contact_key, acknowledgement)

    async def _process_audio(self, state: ChatState, media: MediaAttachment) -> None:
        contact_key = state.contact_key
        if media.size_bytes and media.size_bytes > self.max_audio_bytes:
            await self.dispatcher.deliver(contact_key, AUDIO_TOO_LONG_MESSAGE)
            return

        audio_bytes, reason = (media.data, None) if media.data else await self.media_fetcher(media, self.max_audio_bytes)
        if audio_bytes is not None and len(audio_bytes) > self.max_audio_bytes:
            audio_bytes, reason = None, "too_large"
        if reason == "too_large":
            await self.dispatcher.deliver(contact_key, AUDIO_TOO_LONG_MESSAGE)
            return

        transcript = ""
        if audio_bytes:
            await self.transport.send_typing_state(contact_key, True)
            try:
                transcript = await self.gateway.transcribe(
                    audio_bytes, _transcript_filename(media), media.mime, self.transcription_language
                )
            except (SalesBotError, ValueError) as e:
                reason = f"transcription_failed:{e}"

        if not transcript:
            logger.warning(
                "Audio not transcribed",
                extra={"context": {"contact_key": contact_key, "reason": reason or "empty_transcript"}},
            )
            await self._guarded(
                contact_key,
                lambda: record_message(
                    self.store,
                    state,
                    "user",
                    UNTRANSCRIBED_AUDIO_PLACEHOLDER,
                    {"transcription_failed": True},
                    clock=self.clock,
                ),
                "recording untranscribed audio",
            )
            await self.dispatcher.deliver(contact_key, AUDIO_FAILED_MESSAGE)
            return

        logger.debug(f"Transcribed audio from {contact_key}: {transcript[:50]!r}")
        await self.dispatcher.deliver(contact_key, f'Transcrição: "{transcript}"')
        await self.process_text(state, transcript, {"transcribed_audio": True})

    # Directive actions

    async def _run_actions(self, state: ChatState, processed: ProcessedResponse) -> None:
        for directive in processed.directives:
            try:
                if directive.type == "social_proof" and directive.id:
                    await self.send_social_proof(state.contact_key, directive.id)
                elif directive.type == "checkout" and directive.id:
                    await self.send_checkout_link(state.contact_key, directive.id)
                elif directive.type == "support":
                    await self.transfer_to_support(state)
            except SalesBotError as e:
                logger.error(
                    f"Error processing action {directive.type} for {state.contact_key}: {e}",
                    extra={"context": {"contact_key": state.contact_key, "directive": directive.raw}},
                )

    async def send_social_proof(self, contact_key: str, asset_id: str) -> Result[str]:
        asset = self.training.find_social_proof(asset_id)
        if asset is None:
            logger.warning(f"Social proof asset not found: {asset_id}")
            return Result.failure(f"Social proof asset not found: {asset_id}", "asset_not_found")
        if self.media_signer is None or self.training.social_proofs_dir is None:
            logger.warning("Media signing is not configured; social proof not sent")
            return Result.failure("Media signing is not configured", "signing_unavailable")

        relative = asset.path.relative_to(self.training.social_proofs_dir).as_posix()
        media_url = self.media_signer.sign(relative)
        if not media_url:
            return Result.failure("Media signing is not configured", "signing_unavailable")
        await self.transport.send_media(
            contact_key, media_type=asset.type, media_url=media_url, caption=asset.description
        )
        logger.info(f"Sent social proof asset {asset_id} to {contact_key}")
        return Result.success(media_url)

    async def send_checkout_link(self, contact_key: str, plan_id: str) -> Result[str]:
        link = self.pricing.checkout_link(plan_id)
        plan = self.pricing.get_plan(plan_id)
        if not link or plan is None:
            logger.warning(f"Valid checkout link not found for plan: {plan_id}")
            await self.dispatcher.deliver(contact_key, CHECKOUT_UNAVAILABLE_MESSAGE)
            return Result.failure(f"No checkout link for plan {plan_id}", "checkout_unavailable")

        tracking_url = add_tracking_params(
            link,
            {
                "utm_source": self.checkout_utm_source,
                "utm_medium": "chat",
                "utm_campaign": "sales_agent",
                "phone": contact_key,
            },
        )
        await self.store.set_value(
            contact_key,
            self._event_key("checkout_link"),
            {
                "plan_id": plan_id,
                "plan_name": plan.name,
                "checkout_url": tracking_url,
                "sent_at": self.clock().isoformat(),
            },
            MemoryCategory.SALES_ACTIONS,
        )
        await self.dispatcher.deliver(
            contact_key,
            f"Ótima escolha! Aqui está o link para finalizar sua compra de {plan.name}:\n\n{tracking_url}\n\n"
            "O link abrirá uma página segura para você completar o pagamento. "
            "Se precisar de ajuda durante o processo, estou à disposição.",
        )
        logger.info(f"Sent checkout link for plan {plan_id} to {contact_key}")
        return Result.success(tracking_url)

    async def transfer_to_support(self, state: ChatState) -> None:
        logger.info(f"Transferring {state.contact_key} to human support")
        stage = state.current_stage or await self.funnel.determine_stage(state)
        await self.store.set_value(
            state.contact_key,
            self._event_key("support_transfer"),
            {
                "requested_at": self.clock().isoformat(),
                "reason": "ai_requested",
                "current_funnel_stage": stage.value,
            },
            MemoryCategory.SUPPORT_REQUESTS,
        )
        await self.dispatcher.deliver(state.contact_key, SUPPORT_TRANSFER_MESSAGE)

import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import CONTACT
from salesbot.services.conversation_service import CURRENT_KEY, STAGE_KEY, MemoryCategory, load_chat_state
from salesbot.services.errors import DeliveryError, FatalError, RetryableError
from salesbot.services.message_batcher import InboundFragment, MediaAttachment
from salesbot.services.pricing_catalog import PricingCatalog
from salesbot.services.sales_agent import (
    APOLOGY_MESSAGE,
    AUDIO_FAILED_MESSAGE,
    AUDIO_TOO_LONG_MESSAGE,
    CHECKOUT_UNAVAILABLE_MESSAGE,
    MEDIA_ACKNOWLEDGEMENTS,
    SUPPORT_TRANSFER_MESSAGE,
    UNTRANSCRIBED_AUDIO_PLACEHOLDER,
    SalesAgent,
    add_tracking_params,
)
from salesbot.services.stage_instructions import BotIdentity
from salesbot.services.training_context import SocialProofAsset, TrainingContext
from salesbot.services.whatsapp_transport import MediaUrlSigner

PRICING_DATA = {
    "currency_symbol": "R$",
    "products": [
        {
            "id": "ai_sales_agent",
            "name": "Agente de Vendas IA",
            "plans": [
                {
                    "id": "pro_plan",
                    "name": "Plano Profissional",
                    "price": 597,
                    "checkout_link": "https://pay.example.com/pro?ref=site",
                },
                {
                    "id": "basic_plan",
                    "name": "Plano Básico",
                    "price": 297,
                    "checkout_link": "https://checkout.empresa.com/basic",
                },
            ],
        }
    ],
}


@pytest.fixture
def training(tmp_path):
    proofs_dir = tmp_path / "social-proofs"
    proofs_dir.mkdir()
    image = proofs_dir / "acme.jpg"
    image.write_bytes(b"\xff\xd8\xff")
    return TrainingContext(
        product_summary="Agente de Vendas IA",
        social_proofs=[SocialProofAsset(id="case_acme", type="image", description="Depoimento da Acme", path=image)],
        social_proofs_dir=proofs_dir,
    )


@pytest.fixture
def make_agent(store, funnel, gateway, dispatcher, transport, training, clock):
    def factory(**overrides):
        options = dict(
            store=store,
            funnel=funnel,
            gateway=gateway,
            dispatcher=dispatcher,
            transport=transport,
            identity=BotIdentity(first_name="Ana"),
            training=training,
            pricing=PricingCatalog(PRICING_DATA),
            media_signer=MediaUrlSigner("secret", "https://bot.example.com", clock=lambda: 1_700_000_000),
            clock=clock,
        )
        options.update(overrides)
        return SalesAgent(**options)

    return factory


def _text(text, name=None):
    return InboundFragment(contact_key=CONTACT, text=text, contact_name=name)


def _media(**kwargs):
    return InboundFragment(contact_key=CONTACT, media=MediaAttachment(**kwargs))


def _history(store, role=None):
    return asyncio.run(store.get_recent(CONTACT, limit=50, role=role))


class TestTextTurn:
    def test_fragments_become_one_model_call(self, make_agent, provider, transport, store):
        provider.replies = ["Olá Maria! Como posso ajudar?"]
        agent = make_agent()

        asyncio.run(agent.handle_turn(CONTACT, [_text("oi"), _text("tudo bem?", name="Maria")]))

        assert len(provider.calls) == 1
        messages = provider.calls[0]
        assert messages[0]["role"] == "system"
        assert messages[-1] == {"role": "user", "content": "oi\n\ntudo bem?"}
        assert transport.texts() == ["Olá Maria! Como posso ajudar?"]
        assert asyncio.run(store.get_contact_name(CONTACT)) == "Maria"

        history = _history(store)
        assert [m.role for m in history] == ["user", "assistant"]
        assert history[1].metadata == {"stage": "qualification", "model": "test-model"}

    def test_suggested_stage_is_applied(self, make_agent, provider, transport, store):
        provider.replies = ["Temos diferentes planos. !etapa:price_discussion"]

        asyncio.run(make_agent().handle_turn(CONTACT, [_text("quanto custa?")]))

        assert transport.texts() == ["Temos diferentes planos."]
        stage = asyncio.run(store.get_latest(CONTACT, MemoryCategory.FUNNEL_STAGE))
        assert stage.value == "price_discussion"

    def test_typing_starts_before_reply(self, make_agent, provider, transport):
        provider.replies = ["Oi!"]

        asyncio.run(make_agent().handle_turn(CONTACT, [_text("oi")]))

        assert transport.events[0] == ("typing", CONTACT, True)


class TestFailures:
    def test_fatal_model_error_sends_apology(self, make_agent, provider, transport, store):
        provider.replies = [FatalError("OpenAI completion error: 401")]

        asyncio.run(make_agent().handle_turn(CONTACT, [_text("oi")]))

        assert transport.texts() == [APOLOGY_MESSAGE]
        assert [m.role for m in _history(store)] == ["user"]

    def test_exhausted_retries_send_apology(self, make_agent, provider, transport):
        provider.replies = [RetryableError("503")] * 3

        asyncio.run(make_agent().handle_turn(CONTACT, [_text("oi")]))

        assert len(provider.calls) == 3
        assert transport.texts() == [APOLOGY_MESSAGE]

    def test_empty_model_reply_sends_apology(self, make_agent, provider, transport):
        provider.replies = ["   "]

        asyncio.run(make_agent().handle_turn(CONTACT, [_text("oi")]))

        assert transport.texts() == [APOLOGY_MESSAGE]

    def test_store_failure_while_loading_sends_apology(self, make_agent, store, transport, provider):
        store.get_recent = AsyncMock(side_effect=FatalError("store unavailable"))

        asyncio.run(make_agent().handle_turn(CONTACT, [_text("oi")]))

        assert transport.texts() == [APOLOGY_MESSAGE]
        assert provider.calls == []

    def test_delivery_failure_propagates(self, make_agent, provider, transport):
        provider.replies = ["resposta que falha"]
        transport.fail_on = "falha"

        with pytest.raises(DeliveryError):
            asyncio.run(make_agent().handle_turn(CONTACT, [_text("oi")]))


class TestOfferReplies:
    def test_accepted_upsell_records_purchase_and_skips_suggestion(self, make_agent, funnel, provider, store):
        upsell = funnel.check_upsell_opportunity("basic_plan", 7)
        asyncio.run(store.set_value(CONTACT, STAGE_KEY, "upsell", MemoryCategory.FUNNEL_STAGE))
        asyncio.run(store.set_value(CONTACT, CURRENT_KEY, upsell.to_dict(), MemoryCategory.ACTIVE_UPSELL))
        provider.replies = ["Perfeito! Vamos avançar com o upgrade. !etapa:closing"]

        asyncio.run(make_agent().handle_turn(CONTACT, [_text("Sim, quero! Gostei muito")]))

        assert asyncio.run(store.get_latest(CONTACT, MemoryCategory.PURCHASED_PRODUCT)).value == "pro_plan"
        assert asyncio.run(store.get_latest(CONTACT, MemoryCategory.FUNNEL_STAGE)).value == "post_purchase_followup"
        assert asyncio.run(store.get_latest(CONTACT, MemoryCategory.ACTIVE_UPSELL)) is None

    def test_ambiguous_reply_leaves_offer_active(self, make_agent, funnel, provider, store):
        upsell = funnel.check_upsell_opportunity("basic_plan", 7)
        asyncio.run(store.set_value(CONTACT, STAGE_KEY, "upsell", MemoryCategory.FUNNEL_STAGE))
        asyncio.run(store.set_value(CONTACT, CURRENT_KEY, upsell.to_dict(), MemoryCategory.ACTIVE_UPSELL))
        provider.replies = ["Claro, posso explicar melhor."]

        asyncio.run(make_agent().handle_turn(CONTACT, [_text("Como funciona isso?")]))

        assert asyncio.run(store.get_latest(CONTACT, MemoryCategory.ACTIVE_UPSELL)) is not None
        assert asyncio.run(store.get_all(CONTACT, category=MemoryCategory.OFFER_RESPONSE)) == []


class TestDirectiveActions:
    def test_checkout_directive_sends_tracked_link(self, make_agent, provider, transport, store):
        provider.replies = ["Ótimo! !checkout:pro_plan"]

        asyncio.run(make_agent().handle_turn(CONTACT, [_text("quero o pro")]))

        texts = transport.texts()
        assert texts[0] == "Ótimo!"
        link_chunk = next(t for t in texts if "pay.example.com" in t)
        assert "ref=site" in link_chunk
        assert "utm_source=whatsapp_bot" in link_chunk
        assert "utm_campaign=sales_agent" in link_chunk
        actions = asyncio.run(store.get_all(CONTACT, category=MemoryCategory.SALES_ACTIONS, key_prefix="checkout_link_"))
        assert actions[0].value["plan_id"] == "pro_plan"

    def test_placeholder_checkout_link_is_refused(self, make_agent, transport):
        result = asyncio.run(make_agent().send_checkout_link(CONTACT, "basic_plan"))

        assert result.ok is False
        assert result.error_code == "checkout_unavailable"
        assert transport.texts() == [CHECKOUT_UNAVAILABLE_MESSAGE]

    def test_support_directive_records_request(self, make_agent, provider, transport, store):
        provider.replies = ["Vou chamar alguém da equipe. !suporte"]

        asyncio.run(make_agent().handle_turn(CONTACT, [_text("quero falar com um humano")]))

        assert transport.texts() == ["Vou chamar alguém da equipe.", SUPPORT_TRANSFER_MESSAGE]
        requests = asyncio.run(store.get_all(CONTACT, category=MemoryCategory.SUPPORT_REQUESTS))
        assert requests[0].value["reason"] == "ai_requested"
        assert requests[0].value["current_funnel_stage"] == "qualification"

    def test_social_proof_directive_sends_signed_media(self, make_agent, provider, transport):
        provider.replies = ["Veja este caso! !prova_social:case_acme"]

        asyncio.run(make_agent().handle_turn(CONTACT, [_text("tem algum cliente?")]))

        media = transport.media()
        assert len(media) == 1
        _, contact_key, media_type, media_url, caption = media[0]
        assert contact_key == CONTACT
        assert media_type == "image"
        assert media_url.startswith("https://bot.example.com/media/acme.jpg?expires=")
        assert caption == "Depoimento da Acme"

    def test_unknown_social_proof(self, make_agent):
        result = asyncio.run(make_agent().send_social_proof(CONTACT, "case_missing"))

        assert result.error_code == "asset_not_found"

    def test_social_proof_without_signer(self, make_agent, transport):
        result = asyncio.run(make_agent(media_signer=None).send_social_proof(CONTACT, "case_acme"))

        assert result.error_code == "signing_unavailable"
        assert transport.media() == []

    def test_failed_action_does_not_abort_turn(self, make_agent, provider, transport):
        provider.replies = ["Veja! !prova_social:case_acme !suporte"]
        agent = make_agent()
        agent.transport.send_media = AsyncMock(side_effect=DeliveryError("media rejected"))

        asyncio.run(agent.handle_turn(CONTACT, [_text("oi")]))

        assert transport.texts() == ["Veja!", SUPPORT_TRANSFER_MESSAGE]


class TestMedia:
    def test_audio_is_transcribed_and_answered(self, make_agent, provider, transport, store):
        provider.transcripts = ["quero saber o preço"]
        provider.replies = ["O Plano Pro custa R$ 597."]

        asyncio.run(
            make_agent().handle_turn(CONTACT, [_media(media_type="audio", mime="audio/ogg", data=b"OggS")])
        )

        assert transport.texts() == ['Transcrição: "quero saber o preço"', "O Plano Pro custa R$ 597."]
        assert provider.transcribe_calls[0]["filename"] == "voice.ogg"
        assert provider.transcribe_calls[0]["language"] == "pt"
        user_message = _history(store, role="user")[0]
        assert user_message.content == "quero saber o preço"
        assert user_message.metadata == {"transcribed_audio": True}

    def test_audio_is_downloaded_when_not_inline(self, make_agent, provider, transport):
        fetcher = AsyncMock(return_value=(b"OggS", None))
        provider.transcripts = ["oi"]

        asyncio.run(
            make_agent(media_fetcher=fetcher).handle_turn(
                CONTACT, [_media(media_type="audio", url="https://cdn.example.com/a.ogg")]
            )
        )

        fetcher.assert_awaited_once()
        assert transport.texts()[0] == 'Transcrição: "oi"'

    def test_oversized_audio(self, make_agent, provider, transport):
        asyncio.run(
            make_agent(max_audio_bytes=10).handle_turn(
                CONTACT, [_media(media_type="audio", data=b"x" * 5, size_bytes=11)]
            )
        )

        assert transport.texts() == [AUDIO_TOO_LONG_MESSAGE]
        assert provider.transcribe_calls == []

    def test_failed_transcription(self, make_agent, provider, transport, store):
        provider.transcripts = [FatalError("OpenAI transcription error: 400")]

        asyncio.run(make_agent().handle_turn(CONTACT, [_media(media_type="audio", data=b"OggS")]))

        assert transport.texts() == [AUDIO_FAILED_MESSAGE]
        user_message = _history(store, role="user")[0]
        assert user_message.content == UNTRANSCRIBED_AUDIO_PLACEHOLDER
        assert user_message.metadata == {"transcription_failed": True}
        assert provider.calls == []

    def test_image_without_caption_is_acknowledged(self, make_agent, provider, transport):
        asyncio.run(make_agent().handle_turn(CONTACT, [_media(media_type="image", url="https://cdn/x.jpg")]))

        assert transport.texts() == [MEDIA_ACKNOWLEDGEMENTS["image"]]
        assert provider.calls == []

    def test_caption_is_processed_as_text(self, make_agent, provider, transport):
        provider.replies = ["Que legal!"]

        asyncio.run(
            make_agent().handle_turn(CONTACT, [_media(media_type="image", caption="olha meu site")])
        )

        assert provider.calls[0][-1] == {"role": "user", "content": "olha meu site"}
        assert transport.texts() == ["Que legal!"]


class TestHelpers:
    def test_add_tracking_params_keeps_existing_query(self):
        url = add_tracking_params("https://pay.example.com/pro?ref=site", {"utm_source": "bot"})
        assert url == "https://pay.example.com/pro?ref=site&utm_source=bot"

    def test_state_reflects_recorded_turn(self, make_agent, provider, store):
        provider.replies = ["Oi!"]

        asyncio.run(make_agent().handle_turn(CONTACT, [_text("oi", name="João")]))

        state = asyncio.run(load_chat_state(store, CONTACT))
        assert state.contact_name == "João"
        assert len(state.messages) == 2

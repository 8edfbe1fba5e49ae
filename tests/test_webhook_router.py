import base64
from contextlib import asynccontextmanager
from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

from conftest import CONTACT
from salesbot.main import app
from salesbot.routers.webhook import to_fragment
from salesbot.schemas.webhook import WebhookRequest
from salesbot.services.container import build_container
from salesbot.services.training_context import TrainingContext


@pytest.fixture
def container(test_settings, store, transport, provider, redis_client):
    return build_container(
        test_settings, store=store, provider=provider, transport=transport, redis_client=redis_client
    )


@pytest.fixture
def client(container):
    app.state.container = container
    yield TestClient(app)
    app.state.container = None


@pytest.fixture
def batcher(container):
    batcher = Mock()
    batcher.submit = Mock(return_value=True)
    container.batcher = batcher
    return batcher


def _wrapped(message="oi", **metadata):
    meta = {"remoteJid": CONTACT, "sender": "Maria", "messageId": "msg-1"}
    meta.update(metadata)
    return {"body": {"messageType": "text", "message": message, "metadata": meta}}


class TestWebhookIntake:
    def test_wrapped_payload_is_queued(self, client, batcher):
        response = client.post("/webhook", json=_wrapped("Olá, quero saber mais"))

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "message": "Queued",
            "contact_key": CONTACT,
            "queued": True,
        }
        fragment = batcher.submit.call_args.args[0]
        assert fragment.contact_key == CONTACT
        assert fragment.text == "Olá, quero saber mais"
        assert fragment.contact_name == "Maria"
        assert fragment.message_id == "msg-1"
        assert fragment.is_media is False

    def test_flat_chatflow_payload(self, client, batcher):
        response = client.post("/webhook", json={"remoteJid": "+55 11 99999-0000", "text": "oi", "pushName": "João"})

        assert response.json()["contact_key"] == CONTACT
        fragment = batcher.submit.call_args.args[0]
        assert fragment.text == "oi"
        assert fragment.contact_name == "João"

    def test_own_messages_are_ignored(self, client, batcher):
        response = client.post("/webhook", json={"remoteJid": CONTACT, "text": "eco", "fromMe": True})

        assert response.json()["message"] == "Ignored"
        batcher.submit.assert_not_called()

    def test_group_messages_are_ignored(self, client, batcher):
        response = client.post("/webhook", json=_wrapped(remoteJid="120363@g.us"))

        assert response.json()["message"] == "Ignored"
        batcher.submit.assert_not_called()

    def test_payload_without_jid_is_ignored(self, client, batcher):
        response = client.post("/webhook", json={"body": {"message": "oi"}})

        assert response.json() == {"success": True, "message": "Ignored", "contact_key": None, "queued": False}

    def test_redelivered_message_is_dropped(self, client, batcher, redis_client):
        first = client.post("/webhook", json=_wrapped("quero o plano pro"))
        second = client.post("/webhook", json=_wrapped("quero o plano pro"))

        assert first.json()["message"] == "Queued"
        assert second.json() == {"success": True, "message": "Duplicate", "contact_key": CONTACT, "queued": False}
        assert batcher.submit.call_count == 1
        assert redis_client.expirations[f"salesbot:dedup:{CONTACT}:msg-1"] == 3600

    def test_distinct_message_ids_are_both_queued(self, client, batcher):
        client.post("/webhook", json=_wrapped("oi", messageId="msg-1"))
        client.post("/webhook", json=_wrapped("oi", messageId="msg-2"))

        assert batcher.submit.call_count == 2

    def test_dedup_outage_still_queues(self, client, batcher, redis_client):
        redis_client.down = True

        client.post("/webhook", json=_wrapped())
        client.post("/webhook", json=_wrapped())

        assert batcher.submit.call_count == 2

    def test_rate_limited(self, client, batcher):
        batcher.submit.return_value = False

        response = client.post("/webhook", json=_wrapped())

        assert response.json()["message"] == "Rate limited"
        assert response.json()["queued"] is False

    def test_invalid_json(self, client, batcher):
        response = client.post("/webhook", content=b"not json", headers={"Content-Type": "application/json"})

        assert response.json()["success"] is False
        assert response.json()["message"] == "Invalid JSON payload"

    def test_empty_body_probe(self, client, batcher):
        response = client.post("/webhook", content=b"")

        assert response.json() == {"success": True, "message": "Empty payload", "contact_key": None, "queued": False}

    def test_non_object_payload(self, client, batcher):
        response = client.post("/webhook", json=[1, 2, 3])

        assert response.json()["message"] == "Invalid payload format"

    def test_get_probe(self, client):
        assert client.get("/webhook").json()["ok"] is True


class TestToFragment:
    def test_inline_audio(self):
        payload = WebhookRequest(
            body={
                "messageType": "ptt",
                "mediaData": {"mimetype": "audio/ogg; codecs=opus", "base64": base64.b64encode(b"OggS").decode()},
                "metadata": {"remoteJid": CONTACT},
            }
        )

        fragment = to_fragment(payload)

        assert fragment.media.media_type == "audio"
        assert fragment.media.data == b"OggS"
        assert fragment.media.size_bytes == 4
        assert fragment.text == ""

    def test_text_on_media_becomes_caption(self):
        payload = WebhookRequest(
            body={
                "messageType": "image",
                "message": "olha isso",
                "mediaData": {"url": "https://cdn.example.com/x.jpg", "mimetype": "image/jpeg"},
                "metadata": {"remoteJid": CONTACT},
            }
        )

        fragment = to_fragment(payload)

        assert fragment.media.media_type == "image"
        assert fragment.media.caption == "olha isso"
        assert fragment.media.url == "https://cdn.example.com/x.jpg"

    def test_media_type_from_mime(self):
        payload = WebhookRequest(
            body={
                "messageType": "text",
                "mediaData": {"mimetype": "application/pdf", "fileName": "proposta.pdf"},
                "metadata": {"remoteJid": CONTACT},
            }
        )

        fragment = to_fragment(payload)

        assert fragment.media.media_type == "document"
        assert fragment.media.file_name == "proposta.pdf"

    def test_empty_message(self):
        payload = WebhookRequest(body={"message": "   ", "metadata": {"remoteJid": CONTACT}})

        assert to_fragment(payload) is None


class TestMediaRoute:
    def test_serves_signed_file(self, client, container, tmp_path):
        (tmp_path / "acme.jpg").write_bytes(b"\xff\xd8\xffdata")
        container.training = TrainingContext(social_proofs_dir=tmp_path)

        url = container.media_signer.sign("acme.jpg")
        response = client.get(url.replace("https://bot.example.com", ""))

        assert response.status_code == 200
        assert response.content == b"\xff\xd8\xffdata"

    def test_bad_signature(self, client, container, tmp_path):
        (tmp_path / "acme.jpg").write_bytes(b"data")
        container.training = TrainingContext(social_proofs_dir=tmp_path)

        response = client.get("/media/acme.jpg", params={"expires": 9_999_999_999, "sig": "forged"})

        assert response.status_code == 403

    def test_missing_file(self, client, container, tmp_path):
        container.training = TrainingContext(social_proofs_dir=tmp_path)

        url = container.media_signer.sign("missing.jpg")
        response = client.get(url.replace("https://bot.example.com", ""))

        assert response.status_code == 404


class TestMessagesRouter:
    def test_direct_send(self, client, transport):
        response = client.post("/messages/send", json={"contact_key": CONTACT, "content": "Oferta especial hoje!"})

        assert response.json() == {"success": True, "contact_key": CONTACT, "chunks_sent": 1, "message": None}
        assert transport.texts(CONTACT) == ["Oferta especial hoje!"]

    def test_direct_send_failure(self, client, transport):
        transport.fail_on = "Oferta"

        response = client.post("/messages/send", json={"contact_key": CONTACT, "content": "Oferta especial hoje!"})

        assert response.status_code == 200
        assert response.json()["success"] is False

    def test_validation(self, client):
        response = client.post("/messages/send", json={"contact_key": CONTACT, "content": ""})

        assert response.status_code == 422


class TestConversationsRouter:
    def test_unknown_contact_has_no_stage(self, client):
        response = client.get(f"/conversations/{CONTACT}/stage")

        assert response.status_code == 200
        assert response.json()["stage"] is None

    def test_manual_override(self, client):
        response = client.put(f"/conversations/{CONTACT}/stage", json={"stage": "closing"})

        assert response.status_code == 200
        assert response.json() == {"contact_key": CONTACT, "requested_stage": "closing", "applied_stage": "closing"}

        stage = client.get(f"/conversations/{CONTACT}/stage").json()
        assert stage["stage"] == "closing"
        assert stage["stage_group"] == "closing"
        assert stage["active_upsell"] is None

    def test_manual_override_takes_the_contact_lock(self, client, container):
        events = []

        @asynccontextmanager
        async def exclusive(contact_key):
            events.append(("enter", contact_key))
            yield
            events.append(("exit", contact_key))

        container.batcher.exclusive = exclusive

        response = client.put(f"/conversations/{CONTACT}/stage", json={"stage": "closing"})

        assert response.status_code == 200
        assert events == [("enter", CONTACT), ("exit", CONTACT)]

    def test_invalid_stage(self, client):
        response = client.put(f"/conversations/{CONTACT}/stage", json={"stage": "negotiation"})

        assert response.status_code == 422


class TestHealth:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

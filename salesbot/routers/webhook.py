import base64
import binascii
import re
from dataclasses import replace
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import FileResponse
from pydantic import ValidationError as PydanticValidationError
from starlette.requests import ClientDisconnect

from salesbot.logging_config import get_logger
from salesbot.schemas.webhook import WebhookBody, WebhookRequest, WebhookResponse
from salesbot.services.container import ServiceContainer, get_container
from salesbot.services.message_batcher import InboundFragment, MediaAttachment

logger = get_logger("webhook")

router = APIRouter()

MEDIA_TYPE_ALIASES = {
    "image": "image",
    "photo": "image",
    "sticker": "image",
    "audio": "audio",
    "voice": "audio",
    "ptt": "audio",
    "document": "document",
    "pdf": "document",
    "doc": "document",
    "video": "video",
}


def _coerce_remote_jid(value) -> Optional[str]:
    if not value or isinstance(value, (dict, list, tuple)):
        return None
    text = str(value).strip()
    if not text:
        return None
    if "@" in text:
        return text
    digits = re.sub(r"\D", "", text)
    if not digits:
        return None
    return f"{digits}@s.whatsapp.net"


def _first_present(source: dict, keys: tuple[str, ...]):
    for key in keys:
        value = source.get(key)
        if value:
            return value
    return None


def _normalize_chatflow_payload(payload: dict) -> dict:
    """Accept both the wrapped ``{"body": {...}}`` shape and ChatFlow's flat payloads."""
    body = payload.get("body")
    if not isinstance(body, dict):
        body = payload

    body = dict(body)
    metadata = dict(body.get("metadata")) if isinstance(body.get("metadata"), dict) else {}

    remote_jid = metadata.get("remoteJid") or _first_present(
        payload, ("remoteJid", "remote_jid", "jid", "from", "chatId", "phone")
    )
    remote_jid = _coerce_remote_jid(remote_jid)
    if remote_jid:
        metadata["remoteJid"] = remote_jid

    msg_obj = payload.get("message") if isinstance(payload.get("message"), dict) else None
    message_id = metadata.get("messageId") or _first_present(payload, ("messageId", "message_id", "id"))
    if not message_id and msg_obj:
        message_id = msg_obj.get("id") or msg_obj.get("messageId")
    if message_id:
        metadata.setdefault("messageId", str(message_id))

    sender = metadata.get("sender") or _first_present(payload, ("sender", "pushName", "name"))
    if sender:
        metadata.setdefault("sender", sender)

    for flag in ("fromMe", "isGroup"):
        if flag not in metadata and isinstance(payload.get(flag), bool):
            metadata[flag] = payload[flag]

    message = body.get("message")
    if not isinstance(message, str) or not message.strip():
        message = None
        for source in (payload, msg_obj or {}):
            for key in ("text", "body", "message_text", "content", "message"):
                value = source.get(key)
                if isinstance(value, str) and value.strip():
                    message = value
                    break
            if message:
                break
    body["message"] = message
    body["metadata"] = metadata
    return body


def _normalize_media_type(raw_type: Optional[str], mime: Optional[str]) -> str:
    raw = (raw_type or "").strip().lower()
    if raw in MEDIA_TYPE_ALIASES:
        return MEDIA_TYPE_ALIASES[raw]
    if mime:
        if mime.startswith("image/"):
            return "image"
        if mime.startswith("audio/"):
            return "audio"
        if mime.startswith("video/"):
            return "video"
        if mime in {"application/pdf", "application/msword"} or mime.startswith("application/vnd"):
            return "document"
    return "unknown"


def _extract_media(body: WebhookBody) -> Optional[MediaAttachment]:
    media = body.mediaData if isinstance(body.mediaData, dict) else None
    if not media:
        return None
    mime = media.get("mimetype") or media.get("mime")
    mime = mime if isinstance(mime, str) else None
    raw_type = body.messageType if body.messageType and body.messageType != "text" else media.get("type")

    data = None
    base64_data = media.get("base64")
    if isinstance(base64_data, str) and base64_data:
        try:
            data = base64.b64decode(base64_data, validate=False)
        except (binascii.Error, ValueError) as exc:
            logger.warning("Could not decode inline media", extra={"context": {"error": str(exc)}})

    size_bytes = None
    try:
        size_bytes = int(media["size"]) if media.get("size") is not None else None
    except (TypeError, ValueError):
        size_bytes = None
    if size_bytes is None and data is not None:
        size_bytes = len(data)

    url = media.get("url")
    file_name = media.get("fileName") or media.get("filename")
    caption = media.get("caption")
    return MediaAttachment(
        media_type=_normalize_media_type(raw_type if isinstance(raw_type, str) else None, mime),
        mime=mime,
        url=url if isinstance(url, str) else None,
        data=data,
        file_name=file_name if isinstance(file_name, str) else None,
        caption=caption if isinstance(caption, str) else "",
        size_bytes=size_bytes,
    )


def to_fragment(payload: WebhookRequest) -> Optional[InboundFragment]:
    """Inbound fragment for the batcher, or None when the payload is not a contact message."""
    body = payload.body
    metadata = body.metadata
    if metadata is None or not metadata.remoteJid:
        return None
    if metadata.fromMe or metadata.isGroup or metadata.remoteJid.endswith("@g.us"):
        return None

    media = _extract_media(body)
    text = (body.message or "").strip()
    if media is not None and text and not media.caption:
        media = replace(media, caption=text)
        text = ""
    if media is None and not text:
        return None
    return InboundFragment(
        contact_key=metadata.remoteJid,
        text="" if media is not None else text,
        media=media,
        contact_name=metadata.sender,
        message_id=metadata.messageId,
    )


async def _parse_webhook_request(request: Request) -> WebhookRequest | WebhookResponse:
    try:
        payload = await request.json()
    except ClientDisconnect:
        logger.info("Webhook client disconnected during read")
        return WebhookResponse(success=True, message="Client disconnected")
    except ValueError as exc:
        raw = await request.body()
        if not raw or not raw.strip():
            logger.info("Webhook probe with empty body")
            return WebhookResponse(success=True, message="Empty payload")
        logger.warning(
            "Webhook payload is not valid JSON",
            extra={"context": {"error": str(exc), "body_preview": raw[:200].decode("utf-8", "ignore")}},
        )
        return WebhookResponse(success=False, message="Invalid JSON payload")

    if not isinstance(payload, dict):
        return WebhookResponse(success=False, message="Invalid payload format")

    body = _normalize_chatflow_payload(payload)
    try:
        return WebhookRequest(body=body)
    except PydanticValidationError as exc:
        logger.warning("Webhook payload validation failed", extra={"context": {"error": str(exc)}})
        return WebhookResponse(success=False, message="Invalid webhook payload")


@router.post("/webhook", response_model=WebhookResponse)
async def handle_webhook(request: Request, container: ServiceContainer = Depends(get_container)):
    """Accept a ChatFlow message and hand it to the batcher. Processing happens in the background."""
    parsed = await _parse_webhook_request(request)
    if isinstance(parsed, WebhookResponse):
        return parsed

    fragment = to_fragment(parsed)
    if fragment is None:
        metadata = parsed.body.metadata
        logger.info(
            "Webhook payload ignored",
            extra={"context": {"has_message": bool(parsed.body.message), "has_jid": bool(metadata and metadata.remoteJid)}},
        )
        return WebhookResponse(success=True, message="Ignored")

    if await container.dedup.is_duplicate(fragment.contact_key, fragment.message_id):
        logger.info(
            "Duplicate webhook delivery ignored",
            extra={"context": {"contact_key": fragment.contact_key, "message_id": fragment.message_id}},
        )
        return WebhookResponse(success=True, message="Duplicate", contact_key=fragment.contact_key, queued=False)

    queued = container.batcher.submit(fragment)
    return WebhookResponse(
        success=True,
        message="Queued" if queued else "Rate limited",
        contact_key=fragment.contact_key,
        queued=queued,
    )


@router.get("/webhook")
async def handle_webhook_probe():
    """Health probe for ChatFlow UI checks; real webhooks must use POST."""
    return {"ok": True, "message": "Use POST with JSON payload"}


@router.get("/media/{media_path:path}")
async def serve_media(
    media_path: str,
    expires: int,
    sig: str,
    container: ServiceContainer = Depends(get_container),
):
    """Serve social proof files via signed URLs."""
    normalized_path = (media_path or "").strip().lstrip("/")
    if not normalized_path:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing media path")
    if not container.media_signer.verify(normalized_path, expires, sig):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid or expired signature")

    media_root = container.training.social_proofs_dir
    if media_root is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Media not found")
    base_dir = Path(media_root).resolve()
    target_path = (base_dir / normalized_path).resolve()
    if base_dir not in target_path.parents:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid media path")
    if not target_path.is_file():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Media not found")
    return FileResponse(target_path)

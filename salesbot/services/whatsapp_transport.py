import hashlib
import hmac
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional
from urllib.parse import quote

import httpx

from salesbot.logging_config import get_logger
from salesbot.services.errors import DeliveryError

logger = get_logger("whatsapp_transport")

# media type -> (endpoint, url parameter, caption allowed)
MEDIA_ENDPOINTS = {
    "image": ("send-image", "imageurl", True),
    "photo": ("send-image", "imageurl", True),
    "audio": ("send-audio", "audiourl", False),
    "voice": ("send-audio", "audiourl", False),
    "document": ("send-doc", "docurl", True),
    "doc": ("send-doc", "docurl", True),
    "video": ("send-video", "videourl", True),
}


class MessagingTransport(ABC):
    """Outgoing channel to the contact. Failed sends raise DeliveryError."""

    @abstractmethod
    async def send_text(self, contact_key: str, text: str) -> None:
        pass

    @abstractmethod
    async def send_typing_state(self, contact_key: str, on: bool) -> None:
        pass

    @abstractmethod
    async def send_media(
        self,
        contact_key: str,
        *,
        media_type: str,
        media_url: str,
        caption: Optional[str] = None,
    ) -> None:
        pass

    async def aclose(self) -> None:
        pass


def _normalize_media_path(path: str) -> str:
    normalized = (path or "").strip().lstrip("/")
    return normalized.replace("\\", "/")


class MediaUrlSigner:
    """Signed, expiring public URLs for files served from the media route."""

    def __init__(
        self,
        secret: Optional[str],
        public_base_url: str,
        ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ):
        self.secret = secret
        self.public_base_url = public_base_url.rstrip("/")
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def _signature(self, path: str, expires: int) -> str:
        payload = f"{path}:{expires}".encode("utf-8")
        return hmac.new(self.secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()

    def sign(self, relative_path: str) -> Optional[str]:
        if not self.secret:
            logger.error("MEDIA_SIGNING_SECRET not configured")
            return None
        expires = int(self.clock()) + max(int(self.ttl_seconds), 60)
        normalized_path = _normalize_media_path(relative_path)
        signature = self._signature(normalized_path, expires)
        quoted_path = quote(normalized_path, safe="/")
        return f"{self.public_base_url}/media/{quoted_path}?expires={expires}&sig={signature}"

    def verify(self, relative_path: str, expires: int, signature: str) -> bool:
        if not self.secret or not signature:
            return False
        if expires < int(self.clock()):
            return False
        expected = self._signature(_normalize_media_path(relative_path), expires)
        return hmac.compare_digest(expected, signature)


class ChatFlowTransport(MessagingTransport):
    """WhatsApp delivery through the ChatFlow HTTP API."""

    def __init__(
        self,
        api_url: str,
        token: Optional[str],
        instance_id: Optional[str],
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.token = token
        self.instance_id = instance_id
        self._client = httpx.AsyncClient(timeout=timeout_seconds, transport=transport)

    def _base_params(self, contact_key: str) -> dict:
        if not self.token:
            raise DeliveryError("ChatFlow token is missing (CHATFLOW_TOKEN env var not set)")
        if not self.instance_id:
            raise DeliveryError("ChatFlow instance id is missing (CHATFLOW_INSTANCE_ID env var not set)")
        return {"token": self.token, "instance_id": self.instance_id, "jid": contact_key}

    async def _get(self, endpoint: str, params: dict, contact_key: str) -> httpx.Response:
        try:
            response = await self._client.get(f"{self.api_url}/{endpoint}", params=params)
        except httpx.HTTPError as e:
            logger.error(f"Error calling ChatFlow {endpoint}: {e}", extra={"context": {"jid": contact_key}})
            raise DeliveryError(f"ChatFlow {endpoint} failed: {e}") from e
        logger.info(
            f"ChatFlow response: status={response.status_code}, jid={contact_key}, body={response.text[:200]}"
        )
        if response.status_code != 200:
            raise DeliveryError(f"ChatFlow {endpoint} returned {response.status_code}")
        return response

    async def send_text(self, contact_key: str, text: str) -> None:
        if not text:
            logger.warning(f"send_text: empty message for jid={contact_key}")
            return
        params = self._base_params(contact_key)
        params["msg"] = text
        await self._get("send-text", params, contact_key)

    async def send_typing_state(self, contact_key: str, on: bool) -> None:
        # ChatFlow exposes no presence endpoint.
        logger.debug(f"Typing {'on' if on else 'off'} for jid={contact_key}")

    async def send_media(
        self,
        contact_key: str,
        *,
        media_type: str,
        media_url: str,
        caption: Optional[str] = None,
    ) -> None:
        kind = (media_type or "").strip().lower()
        if kind not in MEDIA_ENDPOINTS:
            raise DeliveryError(f"Unsupported media type: {media_type}")
        if not media_url:
            raise DeliveryError("send_media: missing media_url")

        endpoint, url_param, allow_caption = MEDIA_ENDPOINTS[kind]
        params = self._base_params(contact_key)
        params[url_param] = media_url
        if allow_caption:
            # ChatFlow rejects image/doc/video requests without a non-empty caption.
            params["caption"] = caption.strip() if caption and caption.strip() else " "

        response = await self._get(endpoint, params, contact_key)
        try:
            payload = response.json()
        except ValueError as e:
            raise DeliveryError(f"ChatFlow {endpoint} returned a non-JSON body") from e
        if not payload.get("success"):
            raise DeliveryError(f"ChatFlow {endpoint} reported failure")

    async def aclose(self) -> None:
        await self._client.aclose()

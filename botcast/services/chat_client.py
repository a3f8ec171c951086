# botcast/services/chat_client.py
"""
Telegram Bot API client.

Thin async wrapper over httpx. Every failure surfaces as ChatApiError so the
dispatcher can classify it without knowing the wire format.
"""
import logging
from typing import Any, Dict, Optional

import httpx

from botcast.core.config import TELEGRAM_API_BASE, TELEGRAM_TIMEOUT_SECONDS
from botcast.services.message_builder import MediaKind

log = logging.getLogger("botcast.telegram")


class ErrorCategory:
    BLOCKED = "blocked"
    DEACTIVATED = "deactivated"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    INVALID = "invalid"

    RECIPIENT_STATE = (BLOCKED, DEACTIVATED)


class ChatApiError(Exception):
    """Provider failure with enough structure to decide skip vs. retry."""

    def __init__(
        self,
        status: Optional[int],
        description: str = "",
        retry_after: Optional[float] = None,
        method: Optional[str] = None,
    ):
        self.status = status
        self.description = description or ""
        self.retry_after = retry_after
        self.method = method
        super().__init__(f"{method or 'telegram'} failed ({status}): {self.description}")

    @property
    def category(self) -> str:
        desc = self.description.lower()
        if self.status == 429:
            return ErrorCategory.RATE_LIMITED
        if self.status == 403 and "blocked" in desc:
            return ErrorCategory.BLOCKED
        if self.status in (400, 403) and ("deactivated" in desc or "user not found" in desc):
            return ErrorCategory.DEACTIVATED
        if self.status is None or self.status >= 500:
            return ErrorCategory.TRANSIENT
        return ErrorCategory.INVALID

    @property
    def is_recipient_state(self) -> bool:
        return self.category in ErrorCategory.RECIPIENT_STATE


# Single table: media kind -> (API method, payload field)
MEDIA_METHODS: Dict[MediaKind, tuple] = {
    MediaKind.PHOTO: ("sendPhoto", "photo"),
    MediaKind.VIDEO: ("sendVideo", "video"),
    MediaKind.AUDIO: ("sendAudio", "audio"),
    MediaKind.DOCUMENT: ("sendDocument", "document"),
    MediaKind.ANIMATION: ("sendAnimation", "animation"),
}


class TelegramBotClient:
    """One bot token, one shared httpx.AsyncClient."""

    def __init__(
        self,
        token: str,
        http_client: Optional[httpx.AsyncClient] = None,
        api_base: str = TELEGRAM_API_BASE,
        timeout: float = TELEGRAM_TIMEOUT_SECONDS,
    ):
        self.token = token
        self.api_base = api_base.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    async def close(self):
        if self._owns_client:
            await self._client.aclose()

    async def _call(self, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.api_base}/bot{self.token}/{method}"
        try:
            response = await self._client.post(url, json=payload)
        except httpx.HTTPError as e:
            raise ChatApiError(None, f"network error: {e}", method=method) from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 400 or not data.get("ok", False):
            params = data.get("parameters") or {}
            raise ChatApiError(
                data.get("error_code") or response.status_code,
                data.get("description") or response.text[:200],
                retry_after=params.get("retry_after"),
                method=method,
            )
        return data.get("result") or {}

    async def send_text(
        self,
        recipient_id: int,
        text: str,
        parse_mode: Optional[str] = None,
        disable_link_preview: bool = True,
        reply_markup: Optional[Dict[str, Any]] = None,
    ) -> Optional[int]:
        payload: Dict[str, Any] = {
            "chat_id": recipient_id,
            "text": text,
            "disable_web_page_preview": disable_link_preview,
        }
        if parse_mode:
            payload["parse_mode"] = parse_mode
        if reply_markup:
            payload["reply_markup"] = reply_markup

        result = await self._call("sendMessage", payload)
        return result.get("message_id")

    async def send_media(
        self,
        recipient_id: int,
        kind: MediaKind,
        media: str,
        caption: Optional[str] = None,
        parse_mode: Optional[str] = None,
        reply_markup: Optional[Dict[str, Any]] = None,
    ) -> Optional[int]:
        if kind not in MEDIA_METHODS:
            raise ValueError(f"Unsupported media kind: {kind}")

        method, field_name = MEDIA_METHODS[kind]
        payload: Dict[str, Any] = {"chat_id": recipient_id, field_name: media}
        if caption:
            payload["caption"] = caption
            if parse_mode:
                payload["parse_mode"] = parse_mode
        if reply_markup:
            payload["reply_markup"] = reply_markup

        result = await self._call(method, payload)
        return result.get("message_id")

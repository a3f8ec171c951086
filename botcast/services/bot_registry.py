# botcast/services/bot_registry.py
"""Tenant -> Telegram client resolution, sharing one httpx.AsyncClient."""
import logging
from typing import Dict, Optional

import httpx
from sqlalchemy.orm import Session

from botcast.core.config import TELEGRAM_API_BASE, TELEGRAM_TIMEOUT_SECONDS
from botcast.models.bot import Bot
from botcast.services.chat_client import TelegramBotClient

log = logging.getLogger("botcast.bots")


class BotRegistry:

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        api_base: str = TELEGRAM_API_BASE,
        timeout: float = TELEGRAM_TIMEOUT_SECONDS,
    ):
        self.api_base = api_base
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_http = http_client is None
        self._clients: Dict[str, TelegramBotClient] = {}

    def get_client(self, db: Session, tenant_id: str) -> Optional[TelegramBotClient]:
        """Active bot client for the tenant, or None when the tenant has no bot."""
        bot = db.query(Bot).filter(Bot.tenant_id == tenant_id, Bot.is_active == True).first()
        if not bot or not bot.token:
            log.warning(f"⚠️ No active bot for tenant {tenant_id}")
            return None

        client = self._clients.get(bot.token)
        if client is None:
            client = TelegramBotClient(bot.token, http_client=self._http, api_base=self.api_base)
            self._clients[bot.token] = client
        return client

    async def aclose(self):
        self._clients.clear()
        if self._owns_http:
            await self._http.aclose()

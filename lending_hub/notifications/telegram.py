"""Telegram notification service."""
import asyncio
import html
import logging
import ssl

import aiohttp
import certifi

from ..config import TelegramConfig

logger = logging.getLogger(__name__)

# Telegram rejects messages longer than this.
MAX_MESSAGE_LENGTH = 4096


def format_message(message: str, subject: str = "") -> str:
    """Escape for HTML parse mode, with an optional bold subject line."""
    body = html.escape(message, quote=False)
    if subject:
        body = f"<b>{html.escape(subject, quote=False)}</b>\n\n{body}"
    if len(body) > MAX_MESSAGE_LENGTH:
        body = body[: MAX_MESSAGE_LENGTH - 1] + "…"
    return body


class TelegramNotifier:
    """Alerts go to an unmuted bot, status logs to a separate logs bot."""

    def __init__(self, config: TelegramConfig, timeout: int = 15) -> None:
        self.alert_bot_token = config.alert_bot_token
        self.log_bot_token = config.log_bot_token
        self.chat_id = config.chat_id
        self.timeout = timeout

    async def _send_message(self, text: str, bot_token: str, silent: bool = False) -> bool:
        if not bot_token or not self.chat_id:
            logger.warning("Telegram credentials not configured")
            return False

        url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
        payload = {
            "chat_id": self.chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_notification": silent,
        }

        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)

        try:
            async with aiohttp.ClientSession(connector=connector) as session:
                async with session.post(
                    url, json=payload, timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as response:
                    if response.status != 200:
                        logger.error("Telegram API returned HTTP %s", response.status)
                        return False
                    return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Telegram request failed: %s", e)
            return False

    async def send_alert(self, message: str, subject: str = "") -> bool:
        if await self._send_message(format_message(message, subject), self.alert_bot_token):
            logger.info("Telegram alert sent")
            return True
        return False

    async def send_log(self, message: str, silent: bool = True) -> bool:
        if await self._send_message(format_message(message), self.log_bot_token, silent=silent):
            logger.debug("Telegram log sent")
            return True
        return False

"""Telegram ops alerts.

Sends execution and vault events to the operators' chat. Uses a singleton
pattern to share the bot instance.
"""

import asyncio
import html
import logging
from typing import Any, Optional

from aiogram import Bot
from aiogram.exceptions import TelegramBadRequest, TelegramForbiddenError

from celofx.config import get_settings

logger = logging.getLogger(__name__)

# Singleton bot instance
_bot_instance: Optional[Bot] = None
_bot_lock = asyncio.Lock()


async def get_bot() -> Optional[Bot]:
    """Get or create the bot instance for notifications."""
    global _bot_instance

    if _bot_instance is not None:
        return _bot_instance

    async with _bot_lock:
        # Double-check after acquiring lock
        if _bot_instance is not None:
            return _bot_instance

        settings = get_settings()
        if not settings.telegram_bot_token:
            logger.warning("Telegram bot token not configured - notifications disabled")
            return None

        _bot_instance = Bot(token=settings.telegram_bot_token)
        return _bot_instance


async def close_bot() -> None:
    """Close the bot session (call on shutdown)."""
    global _bot_instance
    if _bot_instance is not None:
        await _bot_instance.session.close()
        _bot_instance = None


def format_ops_event(event: str, payload: dict[str, Any]) -> str:
    """Render an ops event as an HTML message."""
    title = event.replace("_", " ").title()
    lines = [f"<b>{html.escape(title)}</b>", ""]
    for key, value in payload.items():
        if value is None:
            continue
        text = str(value)
        # Truncate hashes for display
        if text.startswith("0x") and len(text) > 20:
            text = f"{text[:10]}...{text[-8:]}"
        lines.append(f"{html.escape(key)}: <code>{html.escape(text)}</code>")
    return "\n".join(lines)


class TelegramNotifier:
    """Sends ops events to a Telegram chat."""

    def __init__(self, chat_id: str, bot: Optional[Bot] = None):
        """Initialize with the target chat and an optional bot instance.

        If no bot provided, will use the singleton instance.
        """
        self.chat_id = chat_id
        self._bot = bot

    async def _get_bot(self) -> Optional[Bot]:
        """Get the bot instance."""
        if self._bot:
            return self._bot
        return await get_bot()

    async def send_message(self, message: str, parse_mode: Optional[str] = "HTML") -> bool:
        """Send a message to the ops chat.

        Returns:
            True if message was sent successfully
        """
        bot = await self._get_bot()
        if not bot:
            logger.warning("Cannot send notification - bot not initialized")
            return False

        try:
            await bot.send_message(chat_id=self.chat_id, text=message, parse_mode=parse_mode)
            return True
        except TelegramForbiddenError:
            logger.warning(f"Bot was removed from ops chat {self.chat_id}")
            return False
        except TelegramBadRequest as e:
            logger.error(f"Bad request sending to {self.chat_id}: {e}")
            return False

    async def notify_event(self, event: str, payload: dict[str, Any]) -> bool:
        return await self.send_message(format_ops_event(event, payload))

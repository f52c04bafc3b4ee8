"""Operator alert channel over Telegram.

Alerts go to a single operator chat. Delivery problems are logged and never
propagate to the caller. Uses a singleton pattern to share the bot instance.
"""

import asyncio
import html
import logging
from datetime import datetime, timezone
from typing import Optional

from aiogram import Bot
from aiogram.exceptions import TelegramBadRequest, TelegramForbiddenError

from creditsync.config import get_settings
from creditsync.utils.tasks import TaskSet

logger = logging.getLogger(__name__)

# Singleton bot instance
_bot_instance: Optional[Bot] = None
_bot_lock = asyncio.Lock()


async def get_bot() -> Optional[Bot]:
    """Get or create the bot instance for alerts."""
    global _bot_instance

    if _bot_instance is not None:
        return _bot_instance

    async with _bot_lock:
        # Double-check after acquiring lock
        if _bot_instance is not None:
            return _bot_instance

        settings = get_settings()
        if not settings.telegram_bot_token:
            logger.warning("Telegram bot token not configured - operator alerts disabled")
            return None

        _bot_instance = Bot(token=settings.telegram_bot_token)
        return _bot_instance


async def close_bot() -> None:
    """Close the bot session (call on shutdown)."""
    global _bot_instance
    if _bot_instance is not None:
        await _bot_instance.session.close()
        _bot_instance = None


def format_alert(
    subject: str,
    error: Optional[BaseException] = None,
    context: str = "",
    environment: str = "development",
) -> str:
    """Build the HTML body of an operator alert."""
    timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
    message = (
        f"<b>[{html.escape(environment.upper())}] {html.escape(subject)}</b>\n\n"
        f"Time: <code>{timestamp}</code>\n"
    )
    if context:
        message += f"\n{html.escape(context)}\n"
    if error is not None:
        message += (
            f"\nError: <code>{html.escape(type(error).__name__)}</code>\n"
            f"<pre>{html.escape(str(error))}</pre>"
        )
    return message


class OperatorAlerts:
    """Sends operational alerts to the operator chat."""

    def __init__(
        self,
        bot: Optional[Bot] = None,
        chat_id: Optional[int] = None,
        tasks: Optional[TaskSet] = None,
    ):
        """Initialize with optional bot instance and chat.

        If no bot provided, will use the singleton instance. If no chat is
        provided, `operator_chat_id` from settings is used.
        """
        settings = get_settings()
        self._bot = bot
        self.chat_id = chat_id if chat_id is not None else settings.operator_chat_id
        self.environment = settings.environment
        self._tasks = tasks or TaskSet("alerts")

    async def _get_bot(self) -> Optional[Bot]:
        """Get the bot instance."""
        if self._bot:
            return self._bot
        return await get_bot()

    async def notify(
        self,
        subject: str,
        error: Optional[BaseException] = None,
        context: str = "",
    ) -> bool:
        """Deliver an alert.

        Returns:
            True if the alert was delivered
        """
        logger.warning(f"Operator alert: {subject}" + (f" - {context}" if context else ""))

        if not self.chat_id:
            logger.warning(f"Operator chat not configured - alert '{subject}' suppressed")
            return False

        bot = await self._get_bot()
        if not bot:
            return False

        message = format_alert(subject, error, context, self.environment)
        try:
            await bot.send_message(chat_id=self.chat_id, text=message, parse_mode="HTML")
            return True
        except TelegramForbiddenError:
            logger.error(f"Bot is blocked in operator chat {self.chat_id}")
            return False
        except TelegramBadRequest as e:
            logger.error(f"Bad request sending alert '{subject}': {e}")
            return False
        except Exception as e:
            logger.error(f"Failed to send alert '{subject}': {e}")
            return False

    def alert(
        self,
        subject: str,
        error: Optional[BaseException] = None,
        context: str = "",
    ) -> None:
        """Fire-and-forget variant of notify()."""
        self._tasks.spawn(self.notify(subject, error, context), name=f"alert:{subject}")

    async def drain(self) -> None:
        """Wait for queued alerts to be delivered."""
        await self._tasks.wait()

"""
Operator notifications through a Telegram bot (aiogram).

Messages are best-effort: delivery is attempted up to three times, and the
last failure is raised to the caller (the lifecycle sink logs it).
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from aiogram import Bot
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.exceptions import TelegramAPIError

from callbridge.config.constants import LOGGER_NAME
from callbridge.services.summary import CallSummary

logger = logging.getLogger(LOGGER_NAME)

MAX_ATTEMPTS = 3
RETRY_DELAY = 1.0  # seconds

STATUS_TEMPLATES = {
    "initiated": "📞 Calling {number}... [{time}]",
    "ringing": "🔔 Ringing... [{time}]",
    "answered": "✅ Answered. [{time}]",
    "in-progress": "✅ Answered. [{time}]",
    "completed": "📴 Call completed. [{time}]",
}


def create_bot(token: str) -> Bot:
    return Bot(token=token, default=DefaultBotProperties(parse_mode=ParseMode.MARKDOWN))


class TelegramNotifier:
    def __init__(
        self,
        bot_token: Optional[str],
        admin_chat_id: Optional[str] = None,
        retry_delay: float = RETRY_DELAY,
        bot_factory: Callable[[str], Bot] = create_bot,
    ):
        self.bot_token = bot_token
        self.admin_chat_id = admin_chat_id
        self.retry_delay = retry_delay
        self._bot_factory = bot_factory
        self._bot: Optional[Bot] = None

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token)

    def recipient(self, user_chat_id: Optional[str]) -> Optional[str]:
        return user_chat_id or self.admin_chat_id

    @property
    def bot(self) -> Bot:
        if self._bot is None:
            self._bot = self._bot_factory(self.bot_token)
        return self._bot

    async def send(self, chat_id: Optional[str], text: str) -> bool:
        """
        Send one Markdown message.

        Returns:
            False when notifications are disabled or there is no recipient

        Raises:
            TelegramAPIError: Every attempt failed
        """
        if not self.enabled or not chat_id:
            logger.debug("Skipping notification: no bot token or recipient")
            return False

        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                await self.bot.send_message(chat_id=chat_id, text=text)
                return True
            except TelegramAPIError as e:
                logger.warning(f"Telegram notification attempt {attempt} failed: {e}")
                if attempt == MAX_ATTEMPTS:
                    raise
            await asyncio.sleep(self.retry_delay)
        return False

    async def close(self) -> None:
        if self._bot is not None:
            await self._bot.session.close()
            self._bot = None

    async def notify_status(
        self, chat_id: Optional[str], status: str, number: Optional[str] = None
    ) -> bool:
        time = datetime.now().strftime("%H:%M:%S")
        template = STATUS_TEMPLATES.get(status, "📟 Status: {status} [{time}]")
        text = template.format(status=status, time=time, number=number or "unknown")
        return await self.send(chat_id, text)

    async def notify_summary(
        self,
        chat_id: Optional[str],
        call_sid: str,
        number: Optional[str],
        summary: CallSummary,
    ) -> bool:
        text = (
            "📝 *Call Summary*\n"
            f"🆔 Call SID: `{call_sid}`\n"
            f"📱 To: `{number or 'unknown'}`\n"
            f"⏱️ Duration: {summary.duration_seconds} sec\n"
            f"🕓 Time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n\n"
            f"{summary.summary}"
        )
        return await self.send(chat_id, text)

    async def notify_adaptation(self, chat_id: Optional[str], call_sid: str, name: str, kind: str) -> bool:
        label = "Personality" if kind == "personality" else "Function"
        return await self.send(chat_id, f"🎭 {label} change on `{call_sid}`: *{name}*")

"""
Telegram notification system.

Sends signal alerts (buy, cancel, standby, state change, heartbeat) as
plain text to one or more chats.

Features:
- Async message sending with a sync wrapper
- One event loop per notifier, reused across sends
- No retries: a failed send is reported to the caller, which decides what
  to persist
"""

import asyncio
import threading
from typing import Optional, Sequence

import structlog
from telegram import Bot
from telegram.error import TelegramError

logger = structlog.get_logger(__name__)


class TelegramNotifier:
    """
    Telegram notifier for signal alerts.

    Setup:
    1. Message @BotFather on Telegram
    2. Create new bot with /newbot
    3. Copy the bot token
    4. Message @userinfobot to get your chat_id
    5. Set TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_IDS in .env
    """

    # Telegram API limit is 4096 characters
    MAX_MESSAGE_LENGTH = 4096
    SEND_TIMEOUT_SECONDS = 30

    def __init__(
        self,
        bot_token: str,
        chat_ids: Sequence[str],
        enabled: bool = True,
    ):
        """
        Initialize Telegram notifier.

        Args:
            bot_token: Telegram bot token from @BotFather
            chat_ids: Chat ids receiving every alert
            enabled: Whether notifications are enabled
        """
        self.chat_ids = [str(chat_id) for chat_id in chat_ids]
        self.enabled = enabled
        self._bot: Optional[Bot] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._lock = threading.Lock()

        if enabled and bot_token and self.chat_ids:
            self._bot = Bot(token=bot_token)
            logger.info("telegram_notifier_initialized", chats=len(self.chat_ids))
        else:
            logger.warning("telegram_notifier_disabled")

    def _truncate(self, message: str) -> str:
        if len(message) <= self.MAX_MESSAGE_LENGTH:
            return message
        return message[: self.MAX_MESSAGE_LENGTH - 3] + "..."

    async def send_message(self, message: str) -> bool:
        """
        Send a message to every configured chat.

        Returns:
            True if at least one chat received it
        """
        if not self.enabled or not self._bot:
            logger.debug("telegram_message_skipped", reason="disabled")
            return False

        text = self._truncate(message)
        delivered = 0
        for chat_id in self.chat_ids:
            try:
                await self._bot.send_message(chat_id=chat_id, text=text)
                delivered += 1
            except TelegramError as e:
                logger.error("telegram_send_failed", chat_id=chat_id, error=str(e))

        return delivered > 0

    def send_message_sync(self, message: str) -> bool:
        """
        Send a message synchronously (blocking).

        Safe to call from worker threads: sends are serialized on the
        notifier's own event loop.

        Returns:
            True if sent successfully
        """
        with self._lock:
            if self._loop is None or self._loop.is_closed():
                self._loop = asyncio.new_event_loop()
            try:
                return self._loop.run_until_complete(
                    asyncio.wait_for(self.send_message(message), timeout=self.SEND_TIMEOUT_SECONDS)
                )
            except asyncio.TimeoutError:
                logger.warning("telegram_send_timeout", timeout=self.SEND_TIMEOUT_SECONDS)
                return False

    def send(self, message: str) -> bool:
        return self.send_message_sync(message)

    def close(self) -> None:
        """Close the notifier's event loop."""
        with self._lock:
            if self._loop is not None and not self._loop.is_closed():
                self._loop.close()
            self._loop = None

"""
Tests for Telegram notification system.

Tests cover:
- Delivery to every configured chat
- Disabled notifier never calls the API
- TelegramError handling (logged, reported as failure, not retried)
- Message truncation
- Log notifier used by dry runs
"""

import pytest
from unittest.mock import MagicMock, patch, AsyncMock

from telegram.error import TelegramError

from src.notifications.notifier import LogNotifier
from src.notifications.telegram import TelegramNotifier


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def mock_bot():
    """Create a mock Telegram Bot."""
    with patch("src.notifications.telegram.Bot") as mock_bot_class:
        mock_bot_instance = MagicMock()
        mock_bot_instance.send_message = AsyncMock(return_value=MagicMock())
        mock_bot_class.return_value = mock_bot_instance
        yield mock_bot_instance


@pytest.fixture
def notifier(mock_bot):
    """Create a notifier with mocked bot and two chats."""
    notifier = TelegramNotifier(
        bot_token="test_token",
        chat_ids=["111", "222"],
        enabled=True,
    )
    yield notifier
    notifier.close()


# ============================================================================
# Delivery Tests
# ============================================================================

def test_send_to_every_chat(notifier, mock_bot):
    assert notifier.send_message_sync("⚡ BUY - BITCOIN") is True

    assert mock_bot.send_message.await_count == 2
    chat_ids = [call.kwargs["chat_id"] for call in mock_bot.send_message.await_args_list]
    assert chat_ids == ["111", "222"]


def test_plain_text_without_parse_mode(notifier, mock_bot):
    notifier.send("hello")
    assert "parse_mode" not in mock_bot.send_message.await_args.kwargs


def test_repeated_sends_reuse_loop(notifier, mock_bot):
    assert notifier.send("one")
    assert notifier.send("two")
    assert mock_bot.send_message.await_count == 4


def test_disabled_notifier_skips(mock_bot):
    notifier = TelegramNotifier(bot_token="test_token", chat_ids=["111"], enabled=False)

    assert notifier.send_message_sync("hello") is False
    mock_bot.send_message.assert_not_called()


def test_no_chats_disables_notifier(mock_bot):
    notifier = TelegramNotifier(bot_token="test_token", chat_ids=[], enabled=True)
    assert notifier.send_message_sync("hello") is False


# ============================================================================
# Failure Tests
# ============================================================================

def test_all_chats_fail(notifier, mock_bot):
    mock_bot.send_message.side_effect = TelegramError("Forbidden")

    assert notifier.send_message_sync("hello") is False
    # No retries: one attempt per chat
    assert mock_bot.send_message.await_count == 2


def test_partial_failure_counts_as_delivered(notifier, mock_bot):
    mock_bot.send_message.side_effect = [TelegramError("chat not found"), MagicMock()]
    assert notifier.send_message_sync("hello") is True


def test_long_message_truncated(notifier, mock_bot):
    notifier.send("x" * 5000)

    text = mock_bot.send_message.await_args.kwargs["text"]
    assert len(text) == TelegramNotifier.MAX_MESSAGE_LENGTH
    assert text.endswith("...")


# ============================================================================
# LogNotifier Tests
# ============================================================================

def test_log_notifier_records_messages():
    notifier = LogNotifier()

    assert notifier.send("first")
    assert notifier.send("second")
    assert notifier.sent == ["first", "second"]

from unittest.mock import AsyncMock, MagicMock

import pytest
from aiogram.enums import ParseMode
from aiogram.exceptions import TelegramNetworkError, TelegramServerError
from aiogram.methods import SendMessage

from callbridge.services.notifications import MAX_ATTEMPTS, TelegramNotifier, create_bot
from callbridge.services.summary import CallSummary


def telegram_error(error_cls, message="reset"):
    return error_cls(method=SendMessage(chat_id="chat-1", text="hello"), message=message)


def make_notifier(*failures, bot_token="123:abc", admin_chat_id="admin"):
    bot = MagicMock()
    bot.send_message = AsyncMock(side_effect=list(failures) + [MagicMock()] * 5)
    bot.session.close = AsyncMock()
    tokens = []

    def factory(token):
        tokens.append(token)
        return bot

    notifier = TelegramNotifier(bot_token, admin_chat_id, retry_delay=0, bot_factory=factory)
    return notifier, bot, tokens


def sent_texts(bot):
    return [call.kwargs["text"] for call in bot.send_message.await_args_list]


def test_recipient_falls_back_to_admin():
    notifier, _, _ = make_notifier()

    assert notifier.recipient("user-chat") == "user-chat"
    assert notifier.recipient(None) == "admin"


def test_bot_sends_markdown_by_default():
    bot = create_bot("123456:ABC-DEF1234ghIkl-zyx57W2v1u123ew11")

    assert bot.default.parse_mode == ParseMode.MARKDOWN


@pytest.mark.asyncio
class TestTelegramNotifier:

    async def test_send(self):
        notifier, bot, tokens = make_notifier()

        assert await notifier.send("chat-1", "hello") is True

        bot.send_message.assert_awaited_once_with(chat_id="chat-1", text="hello")
        assert tokens == ["123:abc"]

    async def test_bot_is_created_once(self):
        notifier, _, tokens = make_notifier()

        await notifier.send("chat-1", "one")
        await notifier.send("chat-1", "two")

        assert tokens == ["123:abc"]

    async def test_disabled_without_token(self):
        notifier, bot, tokens = make_notifier(bot_token=None)

        assert notifier.enabled is False
        assert await notifier.send("chat-1", "hello") is False
        bot.send_message.assert_not_awaited()
        assert tokens == []

    async def test_skipped_without_recipient(self):
        notifier, bot, _ = make_notifier(admin_chat_id=None)

        assert await notifier.send(None, "hello") is False
        bot.send_message.assert_not_awaited()

    async def test_retries_after_failure(self):
        notifier, bot, _ = make_notifier(
            telegram_error(TelegramServerError, "Bad Gateway"),
            telegram_error(TelegramNetworkError),
        )

        assert await notifier.send("chat-1", "hello") is True
        assert bot.send_message.await_count == 3

    async def test_raises_after_last_attempt(self):
        notifier, bot, _ = make_notifier(
            *[telegram_error(TelegramServerError, "Internal error") for _ in range(MAX_ATTEMPTS)]
        )

        with pytest.raises(TelegramServerError):
            await notifier.send("chat-1", "hello")
        assert bot.send_message.await_count == MAX_ATTEMPTS

    async def test_close_releases_bot_session(self):
        notifier, bot, _ = make_notifier()
        await notifier.send("chat-1", "hello")

        await notifier.close()

        bot.session.close.assert_awaited_once()

    async def test_close_without_bot_is_a_no_op(self):
        notifier, bot, tokens = make_notifier()

        await notifier.close()

        assert tokens == []
        bot.session.close.assert_not_awaited()

    async def test_status_messages(self):
        notifier, bot, _ = make_notifier()

        await notifier.notify_status("chat-1", "initiated", "+15550001")
        await notifier.notify_status("chat-1", "busy")

        first, second = sent_texts(bot)
        assert first.startswith("📞 Calling +15550001...")
        assert second.startswith("📟 Status: busy")

    async def test_summary_message(self):
        notifier, bot, _ = make_notifier()
        summary = CallSummary(summary="Call completed with 4 messages", duration_seconds=61)

        await notifier.notify_summary("chat-1", "CA1", "+15550001", summary)

        text = sent_texts(bot)[0]
        assert "`CA1`" in text
        assert "61 sec" in text
        assert text.endswith("Call completed with 4 messages")

    async def test_adaptation_message(self):
        notifier, bot, _ = make_notifier()

        await notifier.notify_adaptation("chat-1", "CA1", "calm", "personality")

        assert sent_texts(bot) == ["🎭 Personality change on `CA1`: *calm*"]

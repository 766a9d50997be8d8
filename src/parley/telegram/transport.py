from __future__ import annotations

from ..logging import get_logger
from ..transport import (
    ChannelId,
    EditOutcome,
    MessageId,
    MessageRef,
    RenderedMessage,
    SendOptions,
)
from .client import TelegramClient

logger = get_logger(__name__)


def _as_int(value: ChannelId | MessageId, *, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise TypeError(f"Telegram {label} must be int")
    try:
        return int(value)
    except ValueError as exc:
        raise TypeError(f"Telegram {label} must be int") from exc


class TelegramTransport:
    def __init__(self, client: TelegramClient) -> None:
        self._client = client

    @property
    def client(self) -> TelegramClient:
        return self._client

    async def close(self) -> None:
        await self._client.close()

    async def send(
        self,
        *,
        channel_id: ChannelId,
        message: RenderedMessage,
        options: SendOptions | None = None,
    ) -> MessageRef | None:
        chat_id = _as_int(channel_id, label="chat_id")
        reply_to_message_id: int | None = None
        disable_notification = None
        reply_markup = None
        if options is not None:
            disable_notification = not options.notify
            reply_markup = options.controls
            if options.reply_to is not None:
                reply_to_message_id = _as_int(
                    options.reply_to.message_id, label="reply_to_message_id"
                )
        sent = await self._client.send_message(
            chat_id,
            message.text,
            reply_to_message_id=reply_to_message_id,
            disable_notification=disable_notification,
            parse_mode=message.extra.get("parse_mode"),
            reply_markup=reply_markup,
        )
        if sent is None:
            return None
        return MessageRef(channel_id=chat_id, message_id=sent.message_id, raw=sent)

    async def edit(self, *, ref: MessageRef, message: RenderedMessage) -> EditOutcome:
        return await self._client.edit_message_text(
            _as_int(ref.channel_id, label="chat_id"),
            _as_int(ref.message_id, label="message_id"),
            message.text,
            parse_mode=message.extra.get("parse_mode"),
        )

    async def react(self, *, ref: MessageRef, emoji: str | None) -> None:
        ok = await self._client.set_message_reaction(
            _as_int(ref.channel_id, label="chat_id"),
            _as_int(ref.message_id, label="message_id"),
            emoji,
        )
        if not ok:
            logger.debug(
                "telegram.reaction_failed",
                chat_id=ref.channel_id,
                message_id=ref.message_id,
            )

    async def typing(self, channel_id: ChannelId) -> bool:
        return await self._client.send_chat_action(
            _as_int(channel_id, label="chat_id"), "typing"
        )

    async def answer_callback(self, callback_id: str, text: str | None = None) -> bool:
        return await self._client.answer_callback_query(callback_id, text)

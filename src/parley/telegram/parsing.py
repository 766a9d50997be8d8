from __future__ import annotations

import re
from typing import TypeAlias

import msgspec

from ..logging import get_logger
from ..routing import TRANSPORT_NAME
from ..transport import AttachmentRef, CallbackEvent, ChatKind, InboundEvent
from .api_models import CallbackQuery, Message, PhotoSize, Update

logger = get_logger(__name__)

IncomingUpdate: TypeAlias = InboundEvent | CallbackEvent

_HANDLE_RE = re.compile(r"(?<![\w@])@([A-Za-z0-9_]{3,})")


def chat_kind(chat_type: str | None) -> ChatKind:
    match chat_type:
        case "private":
            return "dm"
        case "group" | "supergroup":
            return "group"
        case _:
            return "other"


def mentioned_handles(text: str) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for match in _HANDLE_RE.finditer(text):
        seen.setdefault(match.group(1).lower(), None)
    return tuple(seen)


def _best_photo(photos: list[PhotoSize] | None) -> PhotoSize | None:
    if not photos:
        return None
    return max(photos, key=lambda item: (item.file_size or 0, item.width * item.height))


def _attachments(msg: Message) -> tuple[AttachmentRef, ...]:
    refs: list[AttachmentRef] = []
    photo = _best_photo(msg.photo)
    if photo is not None:
        refs.append(
            AttachmentRef(
                kind="photo",
                file_id=photo.file_id,
                file_name="photo.jpg",
                file_size=photo.file_size,
            )
        )
    if msg.document is not None:
        refs.append(
            AttachmentRef(
                kind="document",
                file_id=msg.document.file_id,
                file_name=msg.document.file_name or "document",
                file_size=msg.document.file_size,
            )
        )
    if msg.voice is not None:
        refs.append(
            AttachmentRef(
                kind="voice",
                file_id=msg.voice.file_id,
                file_name="voice.ogg",
                file_size=msg.voice.file_size,
            )
        )
    return tuple(refs)


def parse_incoming_update(
    update: Update, *, bot_id: int | None = None
) -> IncomingUpdate | None:
    if update.message is not None:
        return parse_message(update.message, bot_id=bot_id)
    if update.callback_query is not None:
        return parse_callback_query(update.callback_query)
    return None


def parse_message(msg: Message, *, bot_id: int | None = None) -> InboundEvent | None:
    sender = msg.from_
    if sender is None or msg.chat is None:
        logger.debug("telegram.parse.skipped", message_id=msg.message_id)
        return None
    if bot_id is not None and sender.id == bot_id:
        return None
    reply = msg.reply_to_message
    is_reply_to_bot = (
        bot_id is not None
        and reply is not None
        and reply.from_ is not None
        and reply.from_.id == bot_id
    )
    body = msg.text if msg.text is not None else msg.caption or ""
    return InboundEvent(
        transport=TRANSPORT_NAME,
        sender_id=sender.id,
        chat_id=msg.chat.id,
        chat_kind=chat_kind(msg.chat.type),
        message_id=msg.message_id,
        text=msg.text,
        caption=msg.caption,
        sender_handle=sender.username,
        sender_name=sender.first_name,
        chat_title=msg.chat.title,
        mentioned_handles=mentioned_handles(body),
        is_reply_to_bot=is_reply_to_bot,
        attachments=_attachments(msg),
        raw=msgspec.to_builtins(msg),
    )


def parse_callback_query(query: CallbackQuery) -> CallbackEvent | None:
    if query.data is None:
        return None
    msg = query.message
    chat = msg.chat if msg is not None else None
    return CallbackEvent(
        transport=TRANSPORT_NAME,
        callback_id=query.id,
        sender_id=query.from_.id,
        chat_id=chat.id if chat is not None else None,
        chat_kind=chat_kind(chat.type if chat is not None else None),
        data=query.data,
        sender_handle=query.from_.username,
        sender_name=query.from_.first_name,
        chat_title=chat.title if chat is not None else None,
        message_id=msg.message_id if msg is not None else None,
    )

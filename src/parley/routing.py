from __future__ import annotations

import re
from dataclasses import dataclass
from typing import NewType

from .transport import InboundEvent

ConversationKey = NewType("ConversationKey", str)

TRANSPORT_NAME = "telegram"


@dataclass(frozen=True, slots=True)
class ChannelDescriptor:
    type: str
    id: str
    name: str | None = None


@dataclass(frozen=True, slots=True)
class Route:
    key: ConversationKey
    channel: ChannelDescriptor
    text: str
    mentioned: bool = False


def conversation_key(*, is_group: bool, chat_id: int, sender_id: int) -> ConversationKey:
    if is_group:
        return ConversationKey(f"{TRANSPORT_NAME}-group:{chat_id}")
    return ConversationKey(f"{TRANSPORT_NAME}-dm:{sender_id}")


def channel_descriptor(
    *,
    is_group: bool,
    chat_id: int,
    sender_id: int,
    chat_title: str | None = None,
    sender_name: str | None = None,
) -> ChannelDescriptor:
    scoped = f"group:{chat_id}" if is_group else f"dm:{sender_id}"
    return ChannelDescriptor(
        type=TRANSPORT_NAME,
        id=scoped,
        name=chat_title or sender_name or "Telegram DM",
    )


def _mention_re(handle: str) -> re.Pattern[str]:
    return re.compile(
        rf"(?<![\w@])@{re.escape(handle)}(?![A-Za-z0-9_])\s*", re.IGNORECASE
    )


def is_mentioned(event: InboundEvent, bot_handle: str | None) -> bool:
    if not bot_handle:
        return False
    wanted = bot_handle.lower()
    if any(handle.lower() == wanted for handle in event.mentioned_handles):
        return True
    return _mention_re(bot_handle).search(event.body) is not None


def strip_mention(text: str, bot_handle: str) -> str:
    return _mention_re(bot_handle).sub("", text).strip()


def route(event: InboundEvent, *, bot_handle: str | None) -> Route | None:
    """Derive the conversation for an event, or None when it should be ignored.

    Group messages only pass when they mention the bot or reply to one of
    its messages; DMs always pass. Events with neither text nor attachments
    are dropped.
    """
    text = event.body
    mentioned = False
    if event.is_group:
        mentioned = is_mentioned(event, bot_handle)
        if not mentioned and not event.is_reply_to_bot:
            return None
        if mentioned and bot_handle:
            text = strip_mention(text, bot_handle)

    if not text and not event.attachments:
        return None

    return Route(
        key=conversation_key(
            is_group=event.is_group,
            chat_id=event.chat_id,
            sender_id=event.sender_id,
        ),
        channel=channel_descriptor(
            is_group=event.is_group,
            chat_id=event.chat_id,
            sender_id=event.sender_id,
            chat_title=event.chat_title,
            sender_name=event.sender_name,
        ),
        text=text,
        mentioned=mentioned,
    )


def sender_label(
    *, sender_name: str | None, sender_handle: str | None, sender_id: int
) -> str:
    return sender_name or sender_handle or str(sender_id)

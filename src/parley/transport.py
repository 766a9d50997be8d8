from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol, TypeAlias

ChannelId: TypeAlias = int | str
MessageId: TypeAlias = int | str
ChatKind: TypeAlias = Literal["dm", "group", "other"]
AttachmentKind: TypeAlias = Literal["photo", "document", "voice"]


@dataclass(frozen=True, slots=True)
class AttachmentRef:
    kind: AttachmentKind
    file_id: str
    file_name: str
    file_size: int | None = None


@dataclass(frozen=True, slots=True)
class InboundEvent:
    transport: str
    sender_id: int
    chat_id: int
    chat_kind: ChatKind
    message_id: int
    text: str | None = None
    caption: str | None = None
    sender_handle: str | None = None
    sender_name: str | None = None
    chat_title: str | None = None
    mentioned_handles: tuple[str, ...] = ()
    is_reply_to_bot: bool = False
    attachments: tuple[AttachmentRef, ...] = ()
    raw: dict[str, Any] | None = field(default=None, compare=False, hash=False)

    @property
    def is_group(self) -> bool:
        return self.chat_kind == "group"

    @property
    def body(self) -> str:
        return self.text or self.caption or ""


@dataclass(frozen=True, slots=True)
class CallbackEvent:
    transport: str
    callback_id: str
    sender_id: int
    chat_id: int | None
    chat_kind: ChatKind
    data: str
    sender_handle: str | None = None
    sender_name: str | None = None
    chat_title: str | None = None
    message_id: int | None = None


@dataclass(frozen=True, slots=True)
class MessageRef:
    channel_id: ChannelId
    message_id: MessageId
    raw: Any | None = field(default=None, compare=False, hash=False)


@dataclass(frozen=True, slots=True)
class RenderedMessage:
    text: str
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SendOptions:
    reply_to: MessageRef | None = None
    controls: dict[str, Any] | None = None
    notify: bool = True


class EditOutcome(enum.Enum):
    OK = "ok"
    UNCHANGED = "unchanged"
    FAILED = "failed"


class Transport(Protocol):
    async def close(self) -> None: ...

    async def send(
        self,
        *,
        channel_id: ChannelId,
        message: RenderedMessage,
        options: SendOptions | None = None,
    ) -> MessageRef | None: ...

    async def edit(
        self,
        *,
        ref: MessageRef,
        message: RenderedMessage,
    ) -> EditOutcome: ...

    async def react(self, *, ref: MessageRef, emoji: str | None) -> None: ...

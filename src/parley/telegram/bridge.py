from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import anyio

from ..agent import AgentIdentity, AgentRuntime
from ..attachments import (
    AttachmentResolver,
    ResolvedAttachment,
    append_attachment_lines,
    format_size_limit,
)
from ..constants import TELEGRAM_DOWNLOAD_LIMIT_BYTES, TELEGRAM_HARD_LIMIT, TYPING_REFRESH_S
from ..delivery import send_chunked
from ..errors import (
    AttachmentDownloadFailed,
    AttachmentTooLarge,
    DeliveryFailed,
    ParleyError,
)
from ..invoker import MEDIA_PLACEHOLDER, AgentInvoker, InvokeResult
from ..keyboards import DEFAULT_MODELS
from ..logging import bound_context, get_logger
from ..policy import PolicyEvaluator
from ..reactions import ack_reaction, is_standard_reaction
from ..registry import SessionFactory, StreamRegistry
from ..routing import Route, route, sender_label
from ..streaming import StreamSession
from ..transport import (
    AttachmentRef,
    CallbackEvent,
    ChannelId,
    InboundEvent,
    MessageRef,
    Transport,
)
from .commands import handle_callback, handle_command, parse_slash_command

logger = get_logger(__name__)

GENERIC_APOLOGY = "Sorry, something went wrong while processing your message."


class BridgeTransport(Transport, Protocol):
    async def typing(self, channel_id: ChannelId) -> bool: ...

    async def answer_callback(
        self, callback_id: str, text: str | None = None
    ) -> bool: ...


@dataclass(frozen=True, slots=True)
class BridgeSettings:
    policy: PolicyEvaluator = field(default_factory=PolicyEvaluator)
    message_limit: int = TELEGRAM_HARD_LIMIT
    media_max_bytes: int = 5 * 1024 * 1024
    ack_reaction: str = ""
    agent_name: str = "parley"
    agent_timeout_s: float | None = None
    typing_interval_s: float = TYPING_REFRESH_S
    models: tuple[str, ...] = DEFAULT_MODELS


def session_factory(
    transport: Transport,
    *,
    limit: int = TELEGRAM_HARD_LIMIT,
    flush_interval_s: float,
    call_timeout_s: float | None = None,
) -> SessionFactory:
    def build(
        key: str, seq: int, channel_id: ChannelId, reply_to: MessageRef | None
    ) -> StreamSession:
        return StreamSession(
            transport=transport,
            channel_id=channel_id,
            key=key,
            seq=seq,
            reply_to=reply_to,
            limit=limit,
            flush_interval_s=flush_interval_s,
            call_timeout_s=call_timeout_s,
        )

    return build


def rejection_text(ref: AttachmentRef, error: AttachmentTooLarge) -> str:
    noun = {"photo": "photo", "document": "file", "voice": "voice message"}[ref.kind]
    size = f"{error.size / (1024 * 1024):.1f} MB"
    if error.limit >= TELEGRAM_DOWNLOAD_LIMIT_BYTES:
        return (
            f"Sorry, that {noun} is too large to process ({size}, "
            f"Telegram limits bot downloads to {format_size_limit(error.limit)})."
        )
    return (
        f"Sorry, that {noun} exceeds the configured size limit "
        f"({size}, limit is {format_size_limit(error.limit)})."
    )


class TelegramBridge:
    """Turns inbound chat events into agent invocations and replies."""

    def __init__(
        self,
        *,
        transport: BridgeTransport,
        runtime: AgentRuntime,
        registry: StreamRegistry,
        settings: BridgeSettings | None = None,
        resolver: AttachmentResolver | None = None,
        bot_handle: str | None = None,
        identity: AgentIdentity | None = None,
    ) -> None:
        self.transport = transport
        self.runtime = runtime
        self.registry = registry
        self.settings = settings or BridgeSettings()
        self.resolver = resolver
        self.bot_handle = bot_handle
        self.identity = identity
        self.invoker = AgentInvoker(
            runtime=runtime,
            transport=transport,
            registry=registry,
            limit=self.settings.message_limit,
            timeout_s=self.settings.agent_timeout_s,
        )

    @property
    def agent_name(self) -> str:
        if self.identity is not None and self.identity.name:
            return self.identity.name
        return self.settings.agent_name

    def is_allowed(
        self, *, sender_id: int, sender_handle: str | None, is_group: bool
    ) -> bool:
        return self.settings.policy.is_allowed(str(sender_id), sender_handle, is_group)

    async def reply(
        self,
        channel_id: ChannelId,
        text: str,
        *,
        reply_to: MessageRef | None = None,
        controls: dict[str, Any] | None = None,
    ) -> bool:
        try:
            await send_chunked(
                self.transport,
                channel_id=channel_id,
                text=text,
                limit=self.settings.message_limit,
                reply_to=reply_to,
                controls=controls,
            )
        except DeliveryFailed as exc:
            logger.error("bridge.reply_failed", channel_id=channel_id, error=str(exc))
            return False
        return True

    async def handle_update(self, update: InboundEvent | CallbackEvent) -> None:
        if isinstance(update, CallbackEvent):
            await handle_callback(self, update)
        else:
            await self.handle_message(update)

    async def handle_message(self, event: InboundEvent) -> None:
        if not self.is_allowed(
            sender_id=event.sender_id,
            sender_handle=event.sender_handle,
            is_group=event.is_group,
        ):
            logger.info(
                "bridge.policy.rejected",
                sender_id=event.sender_id,
                chat_id=event.chat_id,
                chat_kind=event.chat_kind,
            )
            return

        command = parse_slash_command(event.body, bot_handle=self.bot_handle)
        if command is not None:
            await handle_command(self, event, *command)
            return

        routed = route(event, bot_handle=self.bot_handle)
        if routed is None:
            logger.debug(
                "bridge.event.ignored",
                chat_id=event.chat_id,
                message_id=event.message_id,
            )
            return

        with bound_context(session_key=routed.key, chat_id=event.chat_id):
            await self._handle_routed(event, routed)

    async def _handle_routed(self, event: InboundEvent, routed: Route) -> None:
        label = sender_label(
            sender_name=event.sender_name,
            sender_handle=event.sender_handle,
            sender_id=event.sender_id,
        )
        await self.runtime.log_message(
            routed.key,
            routed.text or MEDIA_PLACEHOLDER,
            sender=label,
            channel=routed.channel,
        )
        source = MessageRef(channel_id=event.chat_id, message_id=event.message_id)
        await self._acknowledge(source)

        resolved = await self._resolve_attachments(event, source)
        if resolved is None:
            return
        prompt = append_attachment_lines(routed.text, resolved)
        images = [str(item.path) for item in resolved if item.is_image]

        async with anyio.create_task_group() as tg:
            tg.start_soon(self._keep_typing, event.chat_id)
            try:
                await self._invoke(routed, label, event, prompt, images, source)
            finally:
                tg.cancel_scope.cancel()

    async def _invoke(
        self,
        routed: Route,
        label: str,
        event: InboundEvent,
        prompt: str,
        images: Sequence[str],
        source: MessageRef,
    ) -> InvokeResult | None:
        try:
            result = await self.invoker.invoke(
                routed.key,
                prompt,
                sender_label=label,
                channel=routed.channel,
                chat_id=event.chat_id,
                reply_to=source,
                images=images,
            )
        except ParleyError as exc:
            logger.error(
                "bridge.invoke.failed",
                session_key=routed.key,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            await self.reply(event.chat_id, GENERIC_APOLOGY, reply_to=source)
            return None
        except Exception as exc:
            logger.exception(
                "bridge.invoke.crashed",
                session_key=routed.key,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            await self.reply(event.chat_id, GENERIC_APOLOGY, reply_to=source)
            return None
        logger.info(
            "bridge.invoke.done",
            session_key=routed.key,
            outcome=result.outcome.value,
            length=len(result.response),
        )
        return result

    async def _acknowledge(self, source: MessageRef) -> None:
        emoji = ack_reaction(self.settings.ack_reaction, self.identity)
        if not is_standard_reaction(emoji):
            logger.debug("bridge.reaction.skipped", emoji=emoji)
            return
        try:
            await self.transport.react(ref=source, emoji=emoji)
        except Exception as exc:  # noqa: BLE001
            logger.debug("bridge.reaction.failed", error=str(exc))

    async def _resolve_attachments(
        self, event: InboundEvent, source: MessageRef
    ) -> list[ResolvedAttachment] | None:
        if not event.attachments:
            return []
        if self.resolver is None:
            logger.warning(
                "bridge.attachments.unsupported", count=len(event.attachments)
            )
            return []
        resolved: list[ResolvedAttachment] = []
        for ref in event.attachments:
            try:
                resolved.append(
                    await self.resolver.resolve(
                        ref,
                        sender_id=event.sender_id,
                        max_bytes=self.settings.media_max_bytes,
                    )
                )
            except AttachmentTooLarge as exc:
                logger.info(
                    "bridge.attachment.too_large",
                    kind=ref.kind,
                    size=exc.size,
                    limit=exc.limit,
                )
                await self.reply(event.chat_id, rejection_text(ref, exc), reply_to=source)
                return None
            except AttachmentDownloadFailed as exc:
                logger.warning(
                    "bridge.attachment.download_failed", kind=ref.kind, reason=exc.reason
                )
                await self.reply(
                    event.chat_id,
                    "Sorry, I couldn't download that attachment.",
                    reply_to=source,
                )
                return None
        if resolved:
            logger.info("bridge.attachments.resolved", count=len(resolved))
        return resolved

    async def _keep_typing(self, channel_id: ChannelId) -> None:
        while True:
            try:
                await self.transport.typing(channel_id)
            except Exception as exc:  # noqa: BLE001
                logger.debug("bridge.typing.failed", error=str(exc))
            await anyio.sleep(self.settings.typing_interval_s)

"""Live rendering of a streamed agent reply into a single chat message."""

from __future__ import annotations

import math
from typing import Any

import anyio
from anyio.abc import TaskGroup

from .constants import STREAM_FLUSH_INTERVAL_S, TELEGRAM_HARD_LIMIT
from .logging import get_logger
from .transport import (
    ChannelId,
    EditOutcome,
    MessageRef,
    RenderedMessage,
    SendOptions,
    Transport,
)

logger = get_logger(__name__)

TRUNCATION_MARKER = " ..."
SETTLE_POLL_S = 0.1
SETTLE_ATTEMPTS = 50


def truncate_for_display(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER


def displayed_prefix_length(limit: int) -> int:
    """Characters of the full text a truncated display shows."""
    return limit - len(TRUNCATION_MARKER)


class StreamSession:
    """Owns one outbound message for one agent invocation.

    Fragments are pushed through an unbounded memory channel so the producer
    never waits on the transport. A periodic task drains the channel every
    ``flush_interval_s`` and sends (first time) or edits the message. The
    full text is always kept, even when the display is truncated or a
    transport call fails.
    """

    def __init__(
        self,
        *,
        transport: Transport,
        channel_id: ChannelId,
        key: str = "",
        seq: int = 0,
        reply_to: MessageRef | None = None,
        limit: int = TELEGRAM_HARD_LIMIT,
        flush_interval_s: float = STREAM_FLUSH_INTERVAL_S,
        call_timeout_s: float | None = None,
        settle_poll_s: float = SETTLE_POLL_S,
        settle_attempts: int = SETTLE_ATTEMPTS,
        extra: dict[str, Any] | None = None,
    ) -> None:
        self.transport = transport
        self.channel_id = channel_id
        self.key = key
        self.seq = seq
        self.reply_to = reply_to
        self.limit = limit
        self.flush_interval_s = flush_interval_s
        self.call_timeout_s = call_timeout_s
        self.settle_poll_s = settle_poll_s
        self.settle_attempts = settle_attempts
        self.extra = dict(extra or {})
        self._fragments_send, self._fragments_recv = (
            anyio.create_memory_object_stream[str](math.inf)
        )
        self._stopped = anyio.Event()
        self._content = ""
        self._displayed: str | None = None
        self._ref: MessageRef | None = None
        self._processing = False
        self._finalized = False
        self._cancelled = False
        self._failed = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def finalized(self) -> bool:
        return self._finalized

    @property
    def needs_fallback(self) -> bool:
        return self._failed

    @property
    def has_message(self) -> bool:
        return self._ref is not None

    @property
    def full_text(self) -> str:
        return self._content

    @property
    def displayed_text(self) -> str | None:
        return self._displayed

    @property
    def has_pending(self) -> bool:
        return self._fragments_recv.statistics().current_buffer_used > 0

    def start(self, task_group: TaskGroup) -> None:
        task_group.start_soon(self.run)

    async def run(self) -> None:
        while not self._stopped.is_set():
            with anyio.move_on_after(self.flush_interval_s):
                await self._stopped.wait()
            if self._stopped.is_set():
                return
            await self.flush()

    def append(self, fragment: str) -> None:
        if self._finalized or self._cancelled or not fragment:
            return
        try:
            self._fragments_send.send_nowait(fragment)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            return

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._stopped.set()
        self._close_channel()
        logger.debug("stream.cancelled", key=self.key, seq=self.seq)

    async def flush(self) -> None:
        if (
            self._processing
            or self._finalized
            or self._cancelled
            or not self.has_pending
        ):
            return
        self._processing = True
        try:
            batch = self._drain()
            if not batch:
                return
            self._content += batch
            if self._failed:
                return
            await self._render(truncate_for_display(self._content, self.limit))
        finally:
            self._processing = False

    async def finalize(self) -> str:
        if self._finalized:
            return self._content
        self._stopped.set()

        attempts = 0
        while self._processing and attempts < self.settle_attempts:
            await anyio.sleep(self.settle_poll_s)
            attempts += 1
        if self._processing:
            logger.warning("stream.finalize.flush_pending", key=self.key, seq=self.seq)

        self._finalized = True
        self._content += self._drain()
        self._close_channel()

        if self._cancelled:
            return self._content
        if self._ref is not None and not self._failed and self._content:
            display = truncate_for_display(self._content, self.limit)
            if display != self._displayed:
                await self._render(display)
        logger.debug(
            "stream.finalized",
            key=self.key,
            seq=self.seq,
            length=len(self._content),
            failed=self._failed,
            has_message=self.has_message,
        )
        return self._content

    def _close_channel(self) -> None:
        self._fragments_send.close()
        self._fragments_recv.close()

    def _drain(self) -> str:
        parts: list[str] = []
        while True:
            try:
                parts.append(self._fragments_recv.receive_nowait())
            except (anyio.WouldBlock, anyio.EndOfStream, anyio.ClosedResourceError):
                break
        return "".join(parts)

    async def _render(self, text: str) -> None:
        message = RenderedMessage(text=text, extra=dict(self.extra))
        try:
            with anyio.fail_after(self.call_timeout_s):
                if self._ref is None:
                    ok = await self._send_initial(message)
                else:
                    ok = await self._edit(self._ref, message)
        except TimeoutError:
            logger.error(
                "stream.transport_timeout",
                key=self.key,
                seq=self.seq,
                timeout_s=self.call_timeout_s,
            )
            ok = False
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "stream.transport_error",
                key=self.key,
                seq=self.seq,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            ok = False
        if ok:
            self._displayed = text
        else:
            self._failed = True

    async def _send_initial(self, message: RenderedMessage) -> bool:
        ref = await self.transport.send(
            channel_id=self.channel_id,
            message=message,
            options=SendOptions(reply_to=self.reply_to),
        )
        if ref is None:
            logger.error("stream.send_failed", key=self.key, seq=self.seq)
            return False
        self._ref = ref
        logger.debug(
            "stream.sent",
            key=self.key,
            seq=self.seq,
            channel_id=ref.channel_id,
            message_id=ref.message_id,
        )
        return True

    async def _edit(self, ref: MessageRef, message: RenderedMessage) -> bool:
        outcome = await self.transport.edit(ref=ref, message=message)
        if outcome is EditOutcome.FAILED:
            logger.error(
                "stream.edit_failed",
                key=self.key,
                seq=self.seq,
                message_id=ref.message_id,
            )
            return False
        return True

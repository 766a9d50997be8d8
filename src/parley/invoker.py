from __future__ import annotations

import enum
from collections.abc import Sequence
from dataclasses import dataclass

import anyio

from .agent import AgentRuntime, Fragment, SubmitOptions
from .constants import TELEGRAM_HARD_LIMIT
from .delivery import send_chunked
from .errors import AgentUnavailable
from .logging import get_logger
from .registry import StreamRegistry
from .routing import ChannelDescriptor
from .streaming import StreamSession, displayed_prefix_length
from .transport import ChannelId, MessageRef, Transport

logger = get_logger(__name__)


class InvokeOutcome(enum.Enum):
    # live stream showed the whole reply
    STREAMED = "streamed"
    # reply sent in full as new messages
    FALLBACK = "fallback"
    # live stream showed a truncated reply, the tail was sent separately
    OVERFLOW = "overflow"
    # runtime failed after output was already visible
    PARTIAL = "partial"
    # a newer invocation took over the conversation
    SUPERSEDED = "superseded"


@dataclass(frozen=True, slots=True)
class InvokeResult:
    outcome: InvokeOutcome
    response: str
    seq: int


MEDIA_PLACEHOLDER = "[media]"


def format_prompt(sender_label: str, text: str) -> str:
    return f"[{sender_label}]: {text or MEDIA_PLACEHOLDER}"


class AgentInvoker:
    def __init__(
        self,
        *,
        runtime: AgentRuntime,
        transport: Transport,
        registry: StreamRegistry,
        limit: int = TELEGRAM_HARD_LIMIT,
        timeout_s: float | None = None,
    ) -> None:
        self.runtime = runtime
        self.transport = transport
        self.registry = registry
        self.limit = limit
        self.timeout_s = timeout_s

    async def invoke(
        self,
        session_key: str,
        prompt: str,
        *,
        sender_label: str,
        channel: ChannelDescriptor,
        chat_id: ChannelId,
        reply_to: MessageRef | None = None,
        images: Sequence[str] = (),
    ) -> InvokeResult:
        session, seq = self.registry.start(
            session_key, channel_id=chat_id, reply_to=reply_to
        )

        def on_fragment(fragment: Fragment) -> None:
            if fragment.type == "text":
                session.append(fragment.content)

        options = SubmitOptions(
            sender=sender_label,
            channel=channel,
            images=tuple(images),
            on_fragment=on_fragment,
        )
        try:
            with anyio.fail_after(self.timeout_s):
                response = await self.runtime.submit(
                    session_key, format_prompt(sender_label, prompt), options
                )
        except TimeoutError as exc:
            error: Exception = AgentUnavailable(
                f"agent runtime did not answer within {self.timeout_s}s"
            )
            error.__cause__ = exc
            return await self._on_failure(session_key, session, seq, error)
        except Exception as exc:
            return await self._on_failure(session_key, session, seq, exc)

        await session.finalize()
        self.registry.clear(session_key, seq)
        return await self._deliver(session_key, session, seq, response, reply_to)

    async def _deliver(
        self,
        session_key: str,
        session: StreamSession,
        seq: int,
        response: str,
        reply_to: MessageRef | None,
    ) -> InvokeResult:
        if session.cancelled:
            logger.info("invoke.superseded", session_key=session_key, seq=seq)
            return InvokeResult(InvokeOutcome.SUPERSEDED, response, seq)

        if session.needs_fallback or not session.has_message:
            logger.info(
                "invoke.fallback",
                session_key=session_key,
                seq=seq,
                edit_failed=session.needs_fallback,
                length=len(response),
            )
            await send_chunked(
                self.transport,
                channel_id=session.channel_id,
                text=response,
                limit=self.limit,
                reply_to=reply_to,
            )
            return InvokeResult(InvokeOutcome.FALLBACK, response, seq)

        if len(response) > self.limit:
            overflow = response[displayed_prefix_length(self.limit) :]
            if overflow.strip():
                logger.info(
                    "invoke.overflow",
                    session_key=session_key,
                    seq=seq,
                    length=len(overflow),
                )
                await send_chunked(
                    self.transport,
                    channel_id=session.channel_id,
                    text=overflow,
                    limit=self.limit,
                )
            return InvokeResult(InvokeOutcome.OVERFLOW, response, seq)

        return InvokeResult(InvokeOutcome.STREAMED, response, seq)

    async def _on_failure(
        self,
        session_key: str,
        session: StreamSession,
        seq: int,
        error: Exception,
    ) -> InvokeResult:
        await session.finalize()
        self.registry.clear(session_key, seq)
        if not session.has_message:
            raise error
        logger.error(
            "invoke.failed_after_partial_stream",
            session_key=session_key,
            seq=seq,
            error=str(error),
            error_type=error.__class__.__name__,
        )
        return InvokeResult(InvokeOutcome.PARTIAL, session.full_text, seq)

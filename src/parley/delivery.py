from __future__ import annotations

from typing import Any

from .chunking import chunk_text
from .errors import DeliveryFailed
from .logging import get_logger
from .transport import ChannelId, MessageRef, RenderedMessage, SendOptions, Transport

logger = get_logger(__name__)


async def send_chunked(
    transport: Transport,
    *,
    channel_id: ChannelId,
    text: str,
    limit: int,
    reply_to: MessageRef | None = None,
    controls: dict[str, Any] | None = None,
    extra: dict[str, Any] | None = None,
) -> list[MessageRef]:
    """Send ``text`` as one or more messages.

    Only the first chunk replies to ``reply_to`` and only the last chunk
    carries ``controls``. Raises ``DeliveryFailed`` when a chunk is refused;
    chunks already sent stay sent.
    """
    chunks = chunk_text(text, limit)
    if not chunks:
        logger.debug("delivery.empty", channel_id=channel_id)
        return []
    sent: list[MessageRef] = []
    last = len(chunks) - 1
    for idx, chunk in enumerate(chunks):
        options = SendOptions(
            reply_to=reply_to if idx == 0 else None,
            controls=controls if idx == last else None,
        )
        logger.debug(
            "transport.send_message",
            channel_id=channel_id,
            chunk=idx,
            chunks=len(chunks),
            length=len(chunk),
        )
        ref = await transport.send(
            channel_id=channel_id,
            message=RenderedMessage(text=chunk, extra=dict(extra or {})),
            options=options,
        )
        if ref is None:
            logger.error(
                "delivery.send_failed",
                channel_id=channel_id,
                chunk=idx,
                chunks=len(chunks),
            )
            raise DeliveryFailed(
                f"failed to send chunk {idx + 1}/{len(chunks)} to {channel_id}"
            )
        sent.append(ref)
    return sent

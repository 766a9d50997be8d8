from __future__ import annotations

from typing import Any
from urllib.parse import quote

import httpx
import msgspec

from ..agent import AgentIdentity, Fragment, SubmitOptions
from ..errors import AgentError, AgentUnavailable
from ..logging import get_logger
from ..routing import ChannelDescriptor

logger = get_logger(__name__)


class StreamFrame(msgspec.Struct, forbid_unknown_fields=False):
    type: str
    content: str = ""
    error: str | None = None


class _SessionsPayload(msgspec.Struct, forbid_unknown_fields=False):
    sessions: list[str] = msgspec.field(default_factory=list)


class _IdentityPayload(msgspec.Struct, forbid_unknown_fields=False):
    name: str | None = None
    emoji: str | None = None


_FRAME_DECODER = msgspec.json.Decoder(StreamFrame)


def _channel_payload(channel: ChannelDescriptor) -> dict[str, Any]:
    return {"type": channel.type, "id": channel.id, "name": channel.name}


def _session_path(session_key: str, suffix: str) -> str:
    return f"/v1/sessions/{quote(session_key, safe='')}/{suffix}"


class HttpAgentRuntime:
    """Agent runtime reached over HTTP.

    ``submit`` posts the message and reads newline-delimited JSON frames:
    ``{"type": "text", "content": ...}`` for each fragment, then either
    ``{"type": "done", "content": <full reply>}`` or
    ``{"type": "error", "error": ...}``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 300,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = http_client or httpx.AsyncClient(
            base_url=base_url, timeout=timeout_s
        )
        self._owns_client = http_client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def submit(
        self, session_key: str, text: str, options: SubmitOptions
    ) -> str:
        body = {
            "text": text,
            "from": options.sender,
            "channel": _channel_payload(options.channel),
            "images": list(options.images),
            "stream": options.on_fragment is not None,
        }
        path = _session_path(session_key, "messages")
        logger.debug("agent.submit", session_key=session_key, stream=body["stream"])
        try:
            async with self._client.stream("POST", path, json=body) as resp:
                if resp.status_code >= 400:
                    detail = (await resp.aread()).decode("utf-8", errors="replace")
                    raise AgentError(
                        f"agent runtime returned {resp.status_code}: {detail}"
                    )
                return await self._read_frames(resp, options)
        except httpx.TransportError as exc:
            logger.error(
                "agent.unreachable",
                session_key=session_key,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            raise AgentUnavailable(f"agent runtime unreachable: {exc}") from exc

    async def _read_frames(self, resp: httpx.Response, options: SubmitOptions) -> str:
        streamed: list[str] = []
        async for line in resp.aiter_lines():
            if not line.strip():
                continue
            try:
                frame = _FRAME_DECODER.decode(line)
            except msgspec.DecodeError as exc:
                raise AgentError(f"invalid frame from agent runtime: {exc}") from exc
            match frame.type:
                case "text":
                    streamed.append(frame.content)
                    if options.on_fragment is not None:
                        options.on_fragment(Fragment(type="text", content=frame.content))
                case "done":
                    return frame.content or "".join(streamed)
                case "error":
                    raise AgentError(frame.error or "agent runtime error")
                case _:
                    if options.on_fragment is not None:
                        options.on_fragment(
                            Fragment(type=frame.type, content=frame.content)
                        )
        raise AgentError("agent runtime closed the stream without a response")

    async def log_message(
        self,
        session_key: str,
        text: str,
        *,
        sender: str,
        channel: ChannelDescriptor,
    ) -> None:
        try:
            resp = await self._client.post(
                _session_path(session_key, "log"),
                json={
                    "text": text,
                    "from": sender,
                    "channel": _channel_payload(channel),
                },
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "agent.log_message.failed",
                session_key=session_key,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )

    async def sessions(self) -> list[str]:
        try:
            resp = await self._client.get("/v1/sessions")
            resp.raise_for_status()
            return msgspec.json.decode(resp.content, type=_SessionsPayload).sessions
        except (httpx.HTTPError, msgspec.DecodeError) as exc:
            logger.warning(
                "agent.sessions.failed",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return []

    async def identity(self) -> AgentIdentity | None:
        try:
            resp = await self._client.get("/v1/identity")
            resp.raise_for_status()
            payload = msgspec.json.decode(resp.content, type=_IdentityPayload)
        except (httpx.HTTPError, msgspec.DecodeError) as exc:
            logger.warning(
                "agent.identity.failed",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return None
        return AgentIdentity(name=payload.name, emoji=payload.emoji)

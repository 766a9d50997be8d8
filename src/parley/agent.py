"""Agent runtime protocol and shared definitions."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from .routing import ChannelDescriptor


@dataclass(frozen=True, slots=True)
class Fragment:
    type: str
    content: str


FragmentHandler = Callable[[Fragment], None]


@dataclass(frozen=True, slots=True)
class AgentIdentity:
    name: str | None = None
    emoji: str | None = None


@dataclass(frozen=True, slots=True)
class SubmitOptions:
    sender: str
    channel: ChannelDescriptor
    images: tuple[str, ...] = ()
    on_fragment: FragmentHandler | None = None


class AgentRuntime(Protocol):
    async def submit(
        self, session_key: str, text: str, options: SubmitOptions
    ) -> str: ...

    async def log_message(
        self,
        session_key: str,
        text: str,
        *,
        sender: str,
        channel: ChannelDescriptor,
    ) -> None: ...

    async def sessions(self) -> list[str]: ...

    async def identity(self) -> AgentIdentity | None: ...

    async def close(self) -> None: ...

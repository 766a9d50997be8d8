from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import TypeAlias

import anyio

from ..agent import AgentIdentity, Fragment, SubmitOptions
from ..routing import ChannelDescriptor


@dataclass(frozen=True, slots=True)
class Emit:
    text: str
    type: str = "text"


@dataclass(frozen=True, slots=True)
class Sleep:
    seconds: float


@dataclass(frozen=True, slots=True)
class Wait:
    event: anyio.Event


@dataclass(frozen=True, slots=True)
class Return:
    answer: str | None = None


@dataclass(frozen=True, slots=True)
class Raise:
    error: Exception


ScriptStep: TypeAlias = Emit | Sleep | Wait | Return | Raise


@dataclass(frozen=True, slots=True)
class SubmitCall:
    session_key: str
    text: str
    options: SubmitOptions


class ScriptRuntime:
    """Plays back a fixed script for every submission.

    Without a ``Return`` step the reply is the concatenation of the emitted
    text fragments.
    """

    def __init__(
        self,
        script: Iterable[ScriptStep] = (),
        *,
        identity: AgentIdentity | None = None,
        sessions: Iterable[str] = (),
    ) -> None:
        self._script = list(script)
        self._identity = identity
        self._sessions = list(sessions)
        self.calls: list[SubmitCall] = []
        self.logged: list[tuple[str, str]] = []
        self.closed = False

    async def submit(
        self, session_key: str, text: str, options: SubmitOptions
    ) -> str:
        self.calls.append(SubmitCall(session_key=session_key, text=text, options=options))
        emitted: list[str] = []
        for step in self._script:
            match step:
                case Emit(text=fragment, type=kind):
                    if kind == "text":
                        emitted.append(fragment)
                    if options.on_fragment is not None:
                        options.on_fragment(Fragment(type=kind, content=fragment))
                    await anyio.sleep(0)
                case Sleep(seconds=seconds):
                    await anyio.sleep(seconds)
                case Wait(event=event):
                    await event.wait()
                case Return(answer=answer):
                    return "".join(emitted) if answer is None else answer
                case Raise(error=error):
                    raise error
        return "".join(emitted)

    async def log_message(
        self,
        session_key: str,
        text: str,
        *,
        sender: str,
        channel: ChannelDescriptor,
    ) -> None:
        _ = sender, channel
        self.logged.append((session_key, text))

    async def sessions(self) -> list[str]:
        return list(self._sessions)

    async def identity(self) -> AgentIdentity | None:
        return self._identity

    async def close(self) -> None:
        self.closed = True

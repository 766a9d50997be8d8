from __future__ import annotations

import itertools
from collections.abc import Callable
from dataclasses import dataclass

from anyio.abc import TaskGroup

from .logging import get_logger
from .streaming import StreamSession
from .transport import ChannelId, MessageRef

logger = get_logger(__name__)

# Builds a session for (key, seq, channel id, reply target).
SessionFactory = Callable[[str, int, ChannelId, MessageRef | None], StreamSession]


@dataclass(frozen=True, slots=True)
class StreamEntry:
    seq: int
    session: StreamSession


class StreamRegistry:
    """At most one live stream per conversation.

    Entries are versioned by a monotonic sequence number. Replacing an entry
    cancels the old session; clearing only succeeds while the caller's
    sequence number is still the registered one, so a late finishing stream
    never removes its successor.
    """

    def __init__(self, *, task_group: TaskGroup, factory: SessionFactory) -> None:
        self._task_group = task_group
        self._factory = factory
        self._entries: dict[str, StreamEntry] = {}
        self._seq = itertools.count(1)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def get(self, key: str) -> StreamEntry | None:
        return self._entries.get(key)

    def start(
        self,
        key: str,
        *,
        channel_id: ChannelId,
        reply_to: MessageRef | None = None,
    ) -> tuple[StreamSession, int]:
        existing = self._entries.pop(key, None)
        if existing is not None:
            logger.info(
                "stream.superseded",
                key=key,
                seq=existing.seq,
            )
            existing.session.cancel()
        seq = next(self._seq)
        session = self._factory(key, seq, channel_id, reply_to)
        self._entries[key] = StreamEntry(seq=seq, session=session)
        session.start(self._task_group)
        logger.debug("stream.started", key=key, seq=seq)
        return session, seq

    def clear(self, key: str, expected_seq: int) -> bool:
        entry = self._entries.get(key)
        if entry is None or entry.seq != expected_seq:
            return False
        del self._entries[key]
        return True

    def cancel_all(self) -> int:
        entries = list(self._entries.values())
        self._entries.clear()
        for entry in entries:
            entry.session.cancel()
        if entries:
            logger.info("stream.cancel_all", count=len(entries))
        return len(entries)

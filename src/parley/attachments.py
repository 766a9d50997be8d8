"""Resolution of inbound attachments to local files."""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .transport import AttachmentKind, AttachmentRef

_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9._-]")


@dataclass(frozen=True, slots=True)
class ResolvedAttachment:
    kind: AttachmentKind
    path: Path
    size: int

    @property
    def is_image(self) -> bool:
        return self.kind == "photo"


class AttachmentResolver(Protocol):
    async def resolve(
        self, ref: AttachmentRef, *, sender_id: int, max_bytes: int
    ) -> ResolvedAttachment:
        """Fetch ``ref`` to local storage.

        Raises ``AttachmentTooLarge`` or ``AttachmentDownloadFailed``.
        """
        ...


def safe_file_name(name: str) -> str:
    cleaned = _UNSAFE_CHARS_RE.sub("_", Path(name).name)
    return cleaned.strip(".") or "file"


def stored_file_name(name: str, *, sender_id: int, timestamp_ms: int) -> str:
    return f"{timestamp_ms}-{sender_id}-{safe_file_name(name)}"


def format_size_limit(limit: int) -> str:
    mb = limit / (1024 * 1024)
    return f"{mb:g} MB"


def append_attachment_lines(text: str, attachments: Iterable[ResolvedAttachment]) -> str:
    lines = [f"[Attachment: {item.path}]" for item in attachments]
    if not lines:
        return text
    block = "\n".join(lines)
    return f"{text}\n\n{block}" if text else block

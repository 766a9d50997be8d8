from __future__ import annotations

import time
from collections.abc import Callable
from pathlib import Path

from ..attachments import ResolvedAttachment, stored_file_name
from ..constants import TELEGRAM_DOWNLOAD_LIMIT_BYTES
from ..errors import AttachmentDownloadFailed, AttachmentTooLarge
from ..logging import get_logger
from ..transport import AttachmentRef
from .client import TelegramClient

logger = get_logger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _check_size(size: int | None, max_bytes: int) -> None:
    if size is None:
        return
    if size > TELEGRAM_DOWNLOAD_LIMIT_BYTES:
        raise AttachmentTooLarge(size, TELEGRAM_DOWNLOAD_LIMIT_BYTES)
    if size > max_bytes:
        raise AttachmentTooLarge(size, max_bytes)


class TelegramAttachmentResolver:
    """Downloads Telegram media into ``directory``.

    Declared sizes are checked before anything is fetched; the size reported
    by ``getFile`` is checked again, and the download itself is capped.
    """

    def __init__(
        self,
        client: TelegramClient,
        directory: Path,
        *,
        clock_ms: Callable[[], int] = _now_ms,
    ) -> None:
        self._client = client
        self._directory = directory
        self._clock_ms = clock_ms

    async def resolve(
        self, ref: AttachmentRef, *, sender_id: int, max_bytes: int
    ) -> ResolvedAttachment:
        limit = min(max_bytes, TELEGRAM_DOWNLOAD_LIMIT_BYTES)
        _check_size(ref.file_size, max_bytes)
        file = await self._client.get_file(ref.file_id)
        if file is None or not file.file_path:
            logger.warning("media.get_file.failed", file_id=ref.file_id)
            raise AttachmentDownloadFailed("telegram returned no file path")
        _check_size(file.file_size, max_bytes)

        self._directory.mkdir(parents=True, exist_ok=True)
        dest = self._directory / stored_file_name(
            ref.file_name, sender_id=sender_id, timestamp_ms=self._clock_ms()
        )
        written = await self._client.download_file(file.file_path, dest, max_bytes=limit)
        if written is None:
            raise AttachmentDownloadFailed(f"download of {ref.kind} failed")
        logger.info(
            "media.downloaded",
            kind=ref.kind,
            path=str(dest),
            size=written,
        )
        return ResolvedAttachment(kind=ref.kind, path=dest, size=written)

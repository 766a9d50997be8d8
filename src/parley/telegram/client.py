from __future__ import annotations

import itertools
import time
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import anyio
import httpx
import msgspec

from ..logging import get_logger
from ..transport import EditOutcome
from .api_models import File, Message, Update, User

if TYPE_CHECKING:
    from anyio.abc import TaskGroup
else:
    TaskGroup = object

logger = get_logger(__name__)

API_BASE = "https://api.telegram.org"

SEND_PRIORITY = 0
REACTION_PRIORITY = 1
EDIT_PRIORITY = 2
CHAT_ACTION_PRIORITY = 3

NOT_MODIFIED_MARKER = "message is not modified"
DEFAULT_RETRY_AFTER_S = 5.0


class _Superseded:
    def __repr__(self) -> str:
        return "SUPERSEDED"


# Result of a pending operation replaced by a newer one under the same key.
SUPERSEDED = _Superseded()

M = TypeVar("M")


class TelegramRetryAfter(Exception):
    def __init__(self, retry_after: float, description: str | None = None) -> None:
        super().__init__(description or f"retry after {retry_after}")
        self.retry_after = float(retry_after)
        self.description = description


class TelegramNotModified(Exception):
    pass


def is_group_chat_id(chat_id: int) -> bool:
    return chat_id < 0


def retry_after_from_payload(payload: dict[str, Any]) -> float | None:
    params = payload.get("parameters")
    if isinstance(params, dict):
        retry_after = params.get("retry_after")
        if isinstance(retry_after, (int, float)):
            return float(retry_after)
    return None


def _convert(value: Any, model: type[M]) -> M | None:
    if value is None:
        return None
    try:
        return msgspec.convert(value, type=model)
    except msgspec.ValidationError as exc:
        logger.error(
            "telegram.decode_failed",
            model=model.__name__,
            error=str(exc),
        )
        return None


@dataclass(slots=True)
class OutboxOp:
    execute: Callable[[], Awaitable[Any]]
    priority: int
    queued_at: float
    chat_id: int | None
    label: str
    attempts: int = 0
    done: anyio.Event = field(default_factory=anyio.Event)
    result: Any = None

    def resolve(self, result: Any) -> None:
        if self.done.is_set():
            return
        self.result = result
        self.done.set()


class TelegramOutbox:
    """Single worker that spaces Bot API calls per chat.

    Pending operations are keyed; enqueuing under a key that is already
    pending supersedes the older operation (it resolves to ``SUPERSEDED``). The
    lowest priority value runs first, ties by queue time. A ``retry_after``
    from Telegram blocks the whole outbox and re-queues the operation until
    the retry budget or the delay ceiling is exhausted.
    """

    def __init__(
        self,
        *,
        interval_for_chat: Callable[[int | None], float],
        max_retries: int = 3,
        retry_max_delay_s: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    ) -> None:
        self._interval_for_chat = interval_for_chat
        self._max_retries = max_retries
        self._retry_max_delay_s = retry_max_delay_s
        self._clock = clock
        self._sleep = sleep
        self._pending: dict[Hashable, OutboxOp] = {}
        self._cond = anyio.Condition()
        self._start_lock = anyio.Lock()
        self._closed = False
        self._tg: TaskGroup | None = None
        self.next_at = 0.0
        self.retry_at = 0.0

    async def ensure_worker(self) -> None:
        async with self._start_lock:
            if self._tg is not None or self._closed:
                return
            self._tg = await anyio.create_task_group().__aenter__()
            self._tg.start_soon(self.run)

    async def enqueue(self, *, key: Hashable, op: OutboxOp, wait: bool = True) -> Any:
        await self.ensure_worker()
        async with self._cond:
            if self._closed:
                op.resolve(None)
                return None
            previous = self._pending.get(key)
            if previous is not None:
                op.queued_at = previous.queued_at
                previous.resolve(SUPERSEDED)
            self._pending[key] = op
            self._cond.notify()
        if not wait:
            return None
        await op.done.wait()
        return op.result

    async def close(self) -> None:
        async with self._cond:
            self._closed = True
            self._resolve_pending()
            self._cond.notify_all()
        if self._tg is not None:
            self._tg.cancel_scope.cancel()
            await self._tg.__aexit__(None, None, None)
            self._tg = None

    def _resolve_pending(self) -> None:
        for pending in self._pending.values():
            pending.resolve(None)
        self._pending.clear()

    def _pick_locked(self) -> tuple[Hashable, OutboxOp] | None:
        if not self._pending:
            return None
        return min(
            self._pending.items(),
            key=lambda item: (item[1].priority, item[1].queued_at),
        )

    async def _execute(self, op: OutboxOp) -> Any:
        try:
            return await op.execute()
        except TelegramRetryAfter:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "telegram.outbox.request_failed",
                method=op.label,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return None

    def _should_retry(self, op: OutboxOp, exc: TelegramRetryAfter) -> bool:
        if op.attempts > self._max_retries:
            return False
        return exc.retry_after <= self._retry_max_delay_s

    async def _requeue(self, key: Hashable, op: OutboxOp) -> None:
        async with self._cond:
            if self._closed:
                op.resolve(None)
                return
            if key in self._pending:
                op.resolve(SUPERSEDED)
                return
            self._pending[key] = op
            self._cond.notify()

    async def run(self) -> None:
        while True:
            async with self._cond:
                while not self._pending and not self._closed:
                    await self._cond.wait()
                if self._closed:
                    return
            blocked_until = max(self.next_at, self.retry_at)
            if self._clock() < blocked_until:
                await self._sleep(blocked_until - self._clock())
                continue
            async with self._cond:
                picked = self._pick_locked()
                if picked is None:
                    continue
                key, op = picked
                self._pending.pop(key, None)
            started_at = self._clock()
            op.attempts += 1
            try:
                result = await self._execute(op)
            except TelegramRetryAfter as exc:
                self.retry_at = max(self.retry_at, self._clock() + exc.retry_after)
                if self._should_retry(op, exc):
                    await self._requeue(key, op)
                else:
                    logger.warning(
                        "telegram.outbox.retry_exhausted",
                        method=op.label,
                        attempts=op.attempts,
                        retry_after=exc.retry_after,
                    )
                    op.resolve(None)
                continue
            self.next_at = started_at + self._interval_for_chat(op.chat_id)
            op.resolve(result)


class TelegramClient:
    def __init__(
        self,
        token: str,
        *,
        timeout_s: float = 30,
        http_client: httpx.AsyncClient | None = None,
        private_chat_rps: float = 1.0,
        group_chat_rps: float = 20.0 / 60.0,
        max_retries: int = 3,
        retry_max_delay_s: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    ) -> None:
        if not token:
            raise ValueError("Telegram token is empty")
        self._base = f"{API_BASE}/bot{token}"
        self._file_base = f"{API_BASE}/file/bot{token}"
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_s)
        self._owns_http_client = http_client is None
        self._sleep = sleep
        self._private_interval = (
            0.0 if private_chat_rps <= 0 else 1.0 / private_chat_rps
        )
        self._group_interval = 0.0 if group_chat_rps <= 0 else 1.0 / group_chat_rps
        self._outbox = TelegramOutbox(
            interval_for_chat=self.interval_for_chat,
            max_retries=max_retries,
            retry_max_delay_s=retry_max_delay_s,
            clock=clock,
            sleep=sleep,
        )
        self._clock = clock
        self._seq = itertools.count()

    def interval_for_chat(self, chat_id: int | None) -> float:
        if chat_id is not None and is_group_chat_id(chat_id):
            return self._group_interval
        return self._private_interval

    def unique_key(self, prefix: str) -> tuple[str, int]:
        return (prefix, next(self._seq))

    async def _enqueue(
        self,
        *,
        key: Hashable,
        label: str,
        execute: Callable[[], Awaitable[Any]],
        priority: int,
        chat_id: int | None,
        wait: bool = True,
    ) -> Any:
        op = OutboxOp(
            execute=execute,
            priority=priority,
            queued_at=self._clock(),
            chat_id=chat_id,
            label=label,
        )
        return await self._outbox.enqueue(key=key, op=op, wait=wait)

    async def close(self) -> None:
        await self._outbox.close()
        if self._owns_http_client:
            await self._http_client.aclose()

    async def _post(self, method: str, json_data: dict[str, Any]) -> Any | None:
        logger.debug("telegram.request", method=method, payload=json_data)
        try:
            resp = await self._http_client.post(f"{self._base}/{method}", json=json_data)
        except httpx.HTTPError as exc:
            logger.error(
                "telegram.network_error",
                method=method,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return None

        try:
            payload = resp.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            logger.error(
                "telegram.bad_response",
                method=method,
                status=resp.status_code,
                body=resp.text,
            )
            return None

        if resp.status_code == 429 or payload.get("error_code") == 429:
            retry_after = retry_after_from_payload(payload)
            retry_after = DEFAULT_RETRY_AFTER_S if retry_after is None else retry_after
            logger.warning(
                "telegram.rate_limited",
                method=method,
                status=resp.status_code,
                retry_after=retry_after,
            )
            raise TelegramRetryAfter(retry_after, payload.get("description"))

        if not payload.get("ok") or resp.status_code >= 400:
            description = str(payload.get("description") or "")
            if NOT_MODIFIED_MARKER in description:
                raise TelegramNotModified(description)
            logger.error(
                "telegram.api_error",
                method=method,
                status=resp.status_code,
                description=description,
            )
            return None

        logger.debug("telegram.response", method=method, payload=payload)
        return payload.get("result")

    async def get_updates(
        self,
        offset: int | None,
        timeout_s: int = 50,
        allowed_updates: list[str] | None = None,
    ) -> list[Update] | None:
        params: dict[str, Any] = {"timeout": timeout_s}
        if offset is not None:
            params["offset"] = offset
        if allowed_updates is not None:
            params["allowed_updates"] = allowed_updates
        while True:
            try:
                result = await self._post("getUpdates", params)
            except TelegramRetryAfter as exc:
                await self._sleep(exc.retry_after)
                continue
            if not isinstance(result, list):
                return None
            updates: list[Update] = []
            for item in result:
                update = _convert(item, Update)
                if update is not None:
                    updates.append(update)
            return updates

    async def get_me(self) -> User | None:
        async def execute() -> User | None:
            return _convert(await self._post("getMe", {}), User)

        return await self._enqueue(
            key=self.unique_key("get_me"),
            label="get_me",
            execute=execute,
            priority=SEND_PRIORITY,
            chat_id=None,
        )

    async def send_message(
        self,
        chat_id: int,
        text: str,
        *,
        reply_to_message_id: int | None = None,
        disable_notification: bool | None = None,
        parse_mode: str | None = None,
        reply_markup: dict[str, Any] | None = None,
    ) -> Message | None:
        params: dict[str, Any] = {"chat_id": chat_id, "text": text}
        if reply_to_message_id is not None:
            params["reply_to_message_id"] = reply_to_message_id
        if disable_notification is not None:
            params["disable_notification"] = disable_notification
        if parse_mode is not None:
            params["parse_mode"] = parse_mode
        if reply_markup is not None:
            params["reply_markup"] = reply_markup

        async def execute() -> Message | None:
            return _convert(await self._post("sendMessage", params), Message)

        return await self._enqueue(
            key=self.unique_key("send"),
            label="send_message",
            execute=execute,
            priority=SEND_PRIORITY,
            chat_id=chat_id,
        )

    async def edit_message_text(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        *,
        parse_mode: str | None = None,
        reply_markup: dict[str, Any] | None = None,
    ) -> EditOutcome:
        params: dict[str, Any] = {
            "chat_id": chat_id,
            "message_id": message_id,
            "text": text,
        }
        if parse_mode is not None:
            params["parse_mode"] = parse_mode
        if reply_markup is not None:
            params["reply_markup"] = reply_markup

        async def execute() -> EditOutcome:
            try:
                result = await self._post("editMessageText", params)
            except TelegramNotModified:
                return EditOutcome.UNCHANGED
            return EditOutcome.OK if result is not None else EditOutcome.FAILED

        outcome = await self._enqueue(
            key=("edit", chat_id, message_id),
            label="edit_message_text",
            execute=execute,
            priority=EDIT_PRIORITY,
            chat_id=chat_id,
        )
        if outcome is SUPERSEDED:
            return EditOutcome.UNCHANGED
        return outcome if isinstance(outcome, EditOutcome) else EditOutcome.FAILED

    async def set_message_reaction(
        self, chat_id: int, message_id: int, emoji: str | None
    ) -> bool:
        reaction = [] if emoji is None else [{"type": "emoji", "emoji": emoji}]

        async def execute() -> bool:
            result = await self._post(
                "setMessageReaction",
                {"chat_id": chat_id, "message_id": message_id, "reaction": reaction},
            )
            return bool(result)

        result = await self._enqueue(
            key=("reaction", chat_id, message_id),
            label="set_message_reaction",
            execute=execute,
            priority=REACTION_PRIORITY,
            chat_id=chat_id,
        )
        return result is SUPERSEDED or bool(result)

    async def send_chat_action(self, chat_id: int, action: str = "typing") -> bool:
        async def execute() -> bool:
            result = await self._post(
                "sendChatAction", {"chat_id": chat_id, "action": action}
            )
            return bool(result)

        result = await self._enqueue(
            key=("chat_action", chat_id),
            label="send_chat_action",
            execute=execute,
            priority=CHAT_ACTION_PRIORITY,
            chat_id=chat_id,
        )
        return result is SUPERSEDED or bool(result)

    async def answer_callback_query(
        self, callback_query_id: str, text: str | None = None
    ) -> bool:
        params: dict[str, Any] = {"callback_query_id": callback_query_id}
        if text is not None:
            params["text"] = text

        async def execute() -> bool:
            return bool(await self._post("answerCallbackQuery", params))

        return bool(
            await self._enqueue(
                key=self.unique_key("answer_callback_query"),
                label="answer_callback_query",
                execute=execute,
                priority=SEND_PRIORITY,
                chat_id=None,
            )
        )

    async def set_my_commands(self, commands: list[dict[str, str]]) -> bool:
        async def execute() -> bool:
            return bool(await self._post("setMyCommands", {"commands": commands}))

        return bool(
            await self._enqueue(
                key=self.unique_key("set_my_commands"),
                label="set_my_commands",
                execute=execute,
                priority=SEND_PRIORITY,
                chat_id=None,
            )
        )

    async def get_file(self, file_id: str) -> File | None:
        try:
            result = await self._post("getFile", {"file_id": file_id})
        except TelegramRetryAfter as exc:
            logger.warning("telegram.get_file.rate_limited", retry_after=exc.retry_after)
            return None
        return _convert(result, File)

    async def download_file(
        self, file_path: str, dest: Path, *, max_bytes: int
    ) -> int | None:
        """Stream a file to ``dest``; ``None`` on failure or when it exceeds ``max_bytes``."""
        written = 0
        try:
            async with self._http_client.stream(
                "GET", f"{self._file_base}/{file_path}"
            ) as resp:
                if resp.status_code != 200:
                    logger.warning(
                        "telegram.download.http_error",
                        status=resp.status_code,
                    )
                    return None
                async with await anyio.open_file(dest, "wb") as handle:
                    async for chunk in resp.aiter_bytes():
                        written += len(chunk)
                        if written > max_bytes:
                            break
                        await handle.write(chunk)
        except (httpx.HTTPError, OSError) as exc:
            logger.warning(
                "telegram.download.failed",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            dest.unlink(missing_ok=True)
            return None
        if written > max_bytes:
            logger.warning("telegram.download.too_large", limit=max_bytes)
            dest.unlink(missing_ok=True)
            return None
        return written

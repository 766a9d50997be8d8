from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from functools import partial
from pathlib import Path

import anyio

from ..agent import AgentIdentity, AgentRuntime
from ..attachments import AttachmentResolver
from ..config import ConfigError
from ..logging import get_logger
from ..registry import StreamRegistry
from ..runtimes.http import HttpAgentRuntime
from ..settings import ParleySettings
from .bridge import BridgeSettings, BridgeTransport, TelegramBridge, session_factory
from .client import TelegramClient
from .commands import command_menu
from .media import TelegramAttachmentResolver
from .parsing import IncomingUpdate, parse_incoming_update
from .transport import TelegramTransport

logger = get_logger(__name__)

__all__ = ["poll_updates", "run_bridge", "run_main_loop"]

ALLOWED_UPDATES = ["message", "callback_query"]
POLL_TIMEOUT_S = 50
POLL_RETRY_S = 2.0

Poller = Callable[[], AsyncIterator[IncomingUpdate]]


async def _drain_backlog(client: TelegramClient, offset: int | None) -> int | None:
    drained = 0
    while True:
        updates = await client.get_updates(
            offset=offset, timeout_s=0, allowed_updates=ALLOWED_UPDATES
        )
        if updates is None:
            logger.info("startup.backlog.failed")
            return offset
        if not updates:
            if drained:
                logger.info("startup.backlog.drained", count=drained)
            return offset
        offset = updates[-1].update_id + 1
        drained += len(updates)


async def poll_updates(
    client: TelegramClient, *, bot_id: int | None = None
) -> AsyncIterator[IncomingUpdate]:
    offset = await _drain_backlog(client, None)
    while True:
        updates = await client.get_updates(
            offset=offset, timeout_s=POLL_TIMEOUT_S, allowed_updates=ALLOWED_UPDATES
        )
        if updates is None:
            logger.info("loop.get_updates.failed")
            await anyio.sleep(POLL_RETRY_S)
            continue
        for upd in updates:
            offset = upd.update_id + 1
            parsed = parse_incoming_update(upd, bot_id=bot_id)
            if parsed is not None:
                yield parsed


async def _dispatch(bridge: TelegramBridge, update: IncomingUpdate) -> None:
    try:
        await bridge.handle_update(update)
    except Exception as exc:  # noqa: BLE001
        logger.error(
            "loop.update_failed",
            update_type=type(update).__name__,
            chat_id=update.chat_id,
            error=str(exc),
            error_type=exc.__class__.__name__,
        )


async def run_main_loop(
    *,
    transport: BridgeTransport,
    runtime: AgentRuntime,
    poller: Poller,
    settings: BridgeSettings,
    flush_interval_s: float,
    call_timeout_s: float | None = None,
    resolver: AttachmentResolver | None = None,
    bot_handle: str | None = None,
    default_identity: AgentIdentity | None = None,
) -> None:
    identity = await runtime.identity() or default_identity
    async with anyio.create_task_group() as tg:
        registry = StreamRegistry(
            task_group=tg,
            factory=session_factory(
                transport,
                limit=settings.message_limit,
                flush_interval_s=flush_interval_s,
                call_timeout_s=call_timeout_s,
            ),
        )
        bridge = TelegramBridge(
            transport=transport,
            runtime=runtime,
            registry=registry,
            settings=settings,
            resolver=resolver,
            bot_handle=bot_handle,
            identity=identity,
        )
        try:
            async for update in poller():
                tg.start_soon(_dispatch, bridge, update)
        except anyio.get_cancelled_exc_class():
            cancelled = registry.cancel_all()
            logger.info("loop.shutdown", streams_cancelled=cancelled)
            raise


def bridge_settings(settings: ParleySettings) -> BridgeSettings:
    tg = settings.telegram
    return BridgeSettings(
        policy=tg.policy(),
        message_limit=tg.message_limit,
        media_max_bytes=tg.media_max_bytes,
        ack_reaction=tg.ack_reaction,
        agent_name=settings.agent.name,
        agent_timeout_s=settings.agent.timeout_seconds,
    )


async def run_bridge(settings: ParleySettings, config_path: Path | None = None) -> None:
    tg_settings = settings.telegram
    client = TelegramClient(
        tg_settings.resolve_token(),
        timeout_s=tg_settings.timeout_seconds,
        private_chat_rps=tg_settings.private_chat_rps,
        group_chat_rps=tg_settings.group_chat_rps,
        max_retries=tg_settings.max_retries,
        retry_max_delay_s=tg_settings.retry_max_delay_s,
    )
    transport = TelegramTransport(client)
    runtime = HttpAgentRuntime(
        settings.agent.url, timeout_s=settings.agent.timeout_seconds
    )
    try:
        me = await client.get_me()
        if me is None:
            raise ConfigError("Telegram rejected the bot token (getMe failed).")
        logger.info("startup.bot", bot_id=me.id, username=me.username)
        if not await client.set_my_commands(command_menu()):
            logger.warning("startup.commands.failed")

        attachments_dir = Path(tg_settings.attachments_dir).expanduser()
        if not attachments_dir.is_absolute() and config_path is not None:
            attachments_dir = config_path.parent / attachments_dir
        resolver = TelegramAttachmentResolver(client, attachments_dir)

        await run_main_loop(
            transport=transport,
            runtime=runtime,
            poller=partial(poll_updates, client, bot_id=me.id),
            settings=bridge_settings(settings),
            flush_interval_s=tg_settings.stream_flush_interval_s,
            call_timeout_s=tg_settings.timeout_seconds,
            resolver=resolver,
            bot_handle=me.username,
            default_identity=AgentIdentity(
                name=settings.agent.name, emoji=settings.agent.emoji
            ),
        )
    finally:
        await transport.close()
        await runtime.close()

"""Slash commands and inline keyboard callbacks."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any

from ..agent import SubmitOptions
from ..errors import ParleyError
from ..invoker import format_prompt
from ..keyboards import (
    main_keyboard,
    model_keyboard,
    parse_callback_data,
    session_keyboard,
)
from ..logging import get_logger
from ..routing import (
    ChannelDescriptor,
    channel_descriptor,
    conversation_key,
    sender_label,
)
from ..transport import CallbackEvent, ChannelId, InboundEvent, MessageRef

if TYPE_CHECKING:
    from .bridge import TelegramBridge

logger = get_logger(__name__)

BOT_COMMANDS: tuple[tuple[str, str], ...] = (
    ("ask", "Ask the agent a question"),
    ("model", "Switch AI model (e.g. /model gpt-4o)"),
    ("session", "Switch to a named session"),
    ("status", "Show current session status"),
    ("claim", "Claim bot ownership with pairing code"),
    ("help", "Show available commands"),
)

USAGE = {
    "ask": "Usage: /ask <your question>\n\nExample: /ask What is the meaning of life?",
    "model": "Usage: /model <model-name>\n\nExample: /model gpt-4o\nExample: /model opus",
    "session": "Usage: /session <name>\n\nExample: /session project-alpha",
    "claim": "Usage: /claim <pairing-code>\n\nExample: /claim ABC123",
}

KNOWN_COMMANDS = frozenset(command for command, _ in BOT_COMMANDS)

CLAIM_DM_ONLY = "The /claim command only works in DMs. Please DM me to claim ownership."
COMMAND_FAILED = "An error occurred processing your request."


def command_menu() -> list[dict[str, str]]:
    return [
        {"command": command, "description": description}
        for command, description in BOT_COMMANDS
    ]


def help_text(agent_name: str) -> str:
    return "\n".join(
        [
            f"{agent_name} Telegram commands",
            "",
            "/ask <question> - Ask a question",
            "/model <name> - Switch AI model (e.g. opus, haiku, gpt-4o)",
            "/session <name> - Switch to a named session",
            "/status - Show current session status",
            "/claim <code> - Claim bot ownership (DM only)",
            "/help - Show this help",
            "",
            "You can also mention me or reply to my messages to chat.",
        ]
    )


def status_text(agent_name: str, session_key: str, sessions: list[str]) -> str:
    active = "Yes" if session_key in sessions else "No"
    return "\n".join(
        [
            "Session Status",
            "",
            f"Bot: {agent_name}",
            f"Session: {session_key}",
            f"Active: {active}",
            f"Active Sessions: {len(sessions)}",
        ]
    )


def parse_slash_command(
    text: str, *, bot_handle: str | None = None
) -> tuple[str, str] | None:
    """Split ``/name@bot args`` into ``(name, args)`` for known commands."""
    stripped = text.strip()
    if not stripped.startswith("/"):
        return None
    parts = stripped[1:].split(maxsplit=1)
    if not parts:
        return None
    name, _, target = parts[0].partition("@")
    if target and (bot_handle is None or target.lower() != bot_handle.lower()):
        return None
    name = name.lower()
    if name not in KNOWN_COMMANDS:
        return None
    args = parts[1].strip() if len(parts) > 1 else ""
    return name, args


def _scope(
    *,
    is_group: bool,
    chat_id: int,
    sender_id: int,
    chat_title: str | None,
    sender_name: str | None,
) -> tuple[str, ChannelDescriptor]:
    key = conversation_key(is_group=is_group, chat_id=chat_id, sender_id=sender_id)
    channel = channel_descriptor(
        is_group=is_group,
        chat_id=chat_id,
        sender_id=sender_id,
        chat_title=chat_title,
        sender_name=sender_name,
    )
    return key, channel


async def forward_to_agent(
    bridge: TelegramBridge,
    *,
    session_key: str,
    channel: ChannelDescriptor,
    sender: str,
    message: str,
    chat_id: ChannelId,
    reply_to: MessageRef | None = None,
    controls: dict[str, Any] | None = None,
) -> bool:
    await bridge.runtime.log_message(session_key, message, sender=sender, channel=channel)
    try:
        response = await bridge.runtime.submit(
            session_key,
            format_prompt(sender, message),
            SubmitOptions(sender=sender, channel=channel),
        )
    except ParleyError as exc:
        logger.error(
            "commands.forward_failed",
            session_key=session_key,
            error=str(exc),
            error_type=exc.__class__.__name__,
        )
        return False
    await bridge.reply(chat_id, response, reply_to=reply_to, controls=controls)
    return True


async def handle_command(
    bridge: TelegramBridge, event: InboundEvent, name: str, args: str
) -> None:
    source = MessageRef(channel_id=event.chat_id, message_id=event.message_id)
    logger.info("commands.received", command=name, chat_id=event.chat_id)

    if name == "help":
        await bridge.reply(
            event.chat_id,
            help_text(bridge.agent_name),
            reply_to=source,
            controls=main_keyboard(),
        )
        return

    key, channel = _scope(
        is_group=event.is_group,
        chat_id=event.chat_id,
        sender_id=event.sender_id,
        chat_title=event.chat_title,
        sender_name=event.sender_name,
    )

    if name == "status":
        sessions = await bridge.runtime.sessions()
        await bridge.reply(
            event.chat_id,
            status_text(bridge.agent_name, key, sessions),
            reply_to=source,
            controls=main_keyboard(),
        )
        return

    if name == "claim" and event.is_group:
        await bridge.reply(event.chat_id, CLAIM_DM_ONLY, reply_to=source)
        return

    if not args:
        await bridge.reply(event.chat_id, USAGE[name], reply_to=source)
        return

    message = args if name == "ask" else f"/{name} {args}"
    sender = sender_label(
        sender_name=event.sender_name,
        sender_handle=event.sender_handle,
        sender_id=event.sender_id,
    )
    ok = await forward_to_agent(
        bridge,
        session_key=key,
        channel=channel,
        sender=sender,
        message=message,
        chat_id=event.chat_id,
        reply_to=source,
    )
    if not ok:
        await bridge.reply(event.chat_id, COMMAND_FAILED, reply_to=source)


async def handle_callback(bridge: TelegramBridge, event: CallbackEvent) -> None:
    answer = bridge.transport.answer_callback
    if event.chat_id is None:
        await answer(event.callback_id, "Bot is not ready.")
        return
    is_group = event.chat_kind == "group"
    if not bridge.is_allowed(
        sender_id=event.sender_id,
        sender_handle=event.sender_handle,
        is_group=is_group,
    ):
        logger.info("commands.callback.rejected", sender_id=event.sender_id)
        await answer(event.callback_id, "Not authorized.")
        return

    chat_id = event.chat_id
    key, channel = _scope(
        is_group=is_group,
        chat_id=chat_id,
        sender_id=event.sender_id,
        chat_title=event.chat_title,
        sender_name=event.sender_name,
    )
    sender = sender_label(
        sender_name=event.sender_name,
        sender_handle=event.sender_handle,
        sender_id=event.sender_id,
    )
    action = parse_callback_data(event.data)
    logger.info("commands.callback", action=action.type, chat_id=chat_id)

    try:
        match action.type:
            case "help":
                await answer(event.callback_id)
                await bridge.reply(
                    chat_id, help_text(bridge.agent_name), controls=main_keyboard()
                )
            case "model_list":
                await answer(event.callback_id)
                await bridge.reply(
                    chat_id,
                    "Select a model:",
                    controls=model_keyboard(bridge.settings.models),
                )
            case "model_switch":
                await answer(event.callback_id, f"Switching to {action.value}...")
                ok = await forward_to_agent(
                    bridge,
                    session_key=key,
                    channel=channel,
                    sender=sender,
                    message=f"/model {action.value}",
                    chat_id=chat_id,
                    controls=main_keyboard(),
                )
                if not ok:
                    await bridge.reply(
                        chat_id, "Failed to switch model. Try /model <name> instead."
                    )
            case "session_new":
                await answer(event.callback_id, "Starting new session...")
                name = f"telegram-{int(time.time() * 1000)}"
                ok = await forward_to_agent(
                    bridge,
                    session_key=name,
                    channel=channel,
                    sender=sender,
                    message=f"/session {name}",
                    chat_id=chat_id,
                    controls=main_keyboard(),
                )
                if not ok:
                    await bridge.reply(chat_id, "Failed to create new session.")
            case "session_list":
                await answer(event.callback_id)
                sessions = await bridge.runtime.sessions()
                if sessions:
                    await bridge.reply(
                        chat_id, "Select a session:", controls=session_keyboard(sessions)
                    )
                else:
                    await bridge.reply(chat_id, "No active sessions.")
            case "session_switch":
                await answer(event.callback_id, "Switching session...")
                target = action.value or key
                ok = await forward_to_agent(
                    bridge,
                    session_key=target,
                    channel=channel,
                    sender=sender,
                    message=f"/session {target}",
                    chat_id=chat_id,
                    controls=main_keyboard(),
                )
                if not ok:
                    await bridge.reply(chat_id, "Failed to switch session.")
            case "status":
                await answer(event.callback_id)
                sessions = await bridge.runtime.sessions()
                await bridge.reply(
                    chat_id,
                    status_text(bridge.agent_name, key, sessions),
                    controls=main_keyboard(),
                )
            case _:
                await answer(event.callback_id, "Unknown action.")
    except Exception as exc:  # noqa: BLE001
        logger.error(
            "commands.callback.failed",
            action=action.type,
            error=str(exc),
            error_type=exc.__class__.__name__,
        )
        await answer(event.callback_id, "An error occurred.")

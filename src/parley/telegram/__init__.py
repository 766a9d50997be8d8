"""Telegram Bot API client, transport and bridge."""

from .bridge import BridgeSettings, TelegramBridge
from .client import TelegramClient
from .parsing import parse_incoming_update
from .transport import TelegramTransport

__all__ = [
    "BridgeSettings",
    "TelegramBridge",
    "TelegramClient",
    "TelegramTransport",
    "parse_incoming_update",
]

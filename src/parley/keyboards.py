"""Inline keyboard markup and callback data parsing."""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Literal, TypeAlias

CB_HELP = "help"
CB_MODEL_LIST = "model_list"
CB_MODEL_SWITCH = "model:"
CB_SESSION_NEW = "session_new"
CB_SESSION_LIST = "session_list"
CB_SESSION_SWITCH = "session:"
CB_STATUS = "status"

DEFAULT_MODELS = ("opus", "sonnet", "haiku", "gpt-4o", "gpt-4o-mini")

_SESSION_LABEL_PREFIX_RE = re.compile(r"^telegram-(dm|group):")
_SESSION_LABEL_MAX = 30

Markup: TypeAlias = dict[str, Any]


def _button(text: str, data: str) -> dict[str, str]:
    return {"text": text, "callback_data": data}


def _rows_of_two(buttons: list[dict[str, str]]) -> list[list[dict[str, str]]]:
    return [buttons[idx : idx + 2] for idx in range(0, len(buttons), 2)]


def main_keyboard() -> Markup:
    return {
        "inline_keyboard": [
            [
                _button("Switch Model", CB_MODEL_LIST),
                _button("New Session", CB_SESSION_NEW),
            ],
            [
                _button("Status", CB_STATUS),
                _button("Help", CB_HELP),
            ],
        ]
    }


def model_keyboard(models: Iterable[str]) -> Markup:
    buttons = [_button(model, f"{CB_MODEL_SWITCH}{model}") for model in models]
    return {"inline_keyboard": _rows_of_two(buttons)}


def session_label(session: str) -> str:
    return _SESSION_LABEL_PREFIX_RE.sub("", session)[:_SESSION_LABEL_MAX]


def session_keyboard(sessions: Iterable[str]) -> Markup:
    buttons = [
        _button(session_label(session), f"{CB_SESSION_SWITCH}{session}")
        for session in sessions
    ]
    return {"inline_keyboard": _rows_of_two(buttons)}


@dataclass(frozen=True, slots=True)
class CallbackAction:
    type: Literal[
        "help",
        "model_list",
        "model_switch",
        "session_new",
        "session_list",
        "session_switch",
        "status",
        "unknown",
    ]
    value: str | None = None


_EXACT_ACTIONS = {
    CB_HELP: "help",
    CB_MODEL_LIST: "model_list",
    CB_SESSION_NEW: "session_new",
    CB_SESSION_LIST: "session_list",
    CB_STATUS: "status",
}


def parse_callback_data(data: str) -> CallbackAction:
    exact = _EXACT_ACTIONS.get(data)
    if exact is not None:
        return CallbackAction(type=exact)  # type: ignore[arg-type]
    if data.startswith(CB_MODEL_SWITCH):
        return CallbackAction(type="model_switch", value=data[len(CB_MODEL_SWITCH) :])
    if data.startswith(CB_SESSION_SWITCH):
        return CallbackAction(
            type="session_switch", value=data[len(CB_SESSION_SWITCH) :]
        )
    return CallbackAction(type="unknown", value=data)

"""Access policy for inbound senders."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Literal, TypeAlias

DmPolicy: TypeAlias = Literal["allowlist", "pairing", "open", "disabled"]
GroupPolicy: TypeAlias = Literal["allowlist", "open", "disabled"]

WILDCARD = "*"
ID_PREFIX = "tg:"

# Receives (sender id, sender handle) for DMs under the pairing policy.
PairingHook: TypeAlias = Callable[[str, str | None], bool]


def matches_allow_list(
    allowed: Iterable[str], sender_id: str, sender_handle: str | None
) -> bool:
    entries = [entry.strip() for entry in allowed]
    if WILDCARD in entries:
        return True
    candidates = {sender_id, f"{ID_PREFIX}{sender_id}"}
    if sender_handle:
        candidates.add(f"@{sender_handle}")
        candidates.add(sender_handle)
    return any(entry in candidates for entry in entries)


@dataclass(frozen=True, slots=True)
class PolicyEvaluator:
    """Decides whether a sender may trigger the agent.

    The evaluator is a pure predicate over its configuration. Under the
    ``pairing`` DM policy every sender is accepted; finer grained trust
    lives downstream and can be plugged in through ``pairing_hook``.
    """

    dm_policy: DmPolicy = "pairing"
    allow_from: tuple[str, ...] = ()
    group_policy: GroupPolicy = "allowlist"
    group_allow_from: tuple[str, ...] = ()
    pairing_hook: PairingHook | None = field(default=None, compare=False)

    def is_allowed(
        self, sender_id: str | int, sender_handle: str | None, is_group: bool
    ) -> bool:
        sender = str(sender_id)
        if is_group:
            return self._group_allowed(sender, sender_handle)
        return self._dm_allowed(sender, sender_handle)

    def _dm_allowed(self, sender: str, handle: str | None) -> bool:
        match self.dm_policy:
            case "disabled":
                return False
            case "open":
                return True
            case "pairing":
                if self.pairing_hook is None:
                    return True
                return self.pairing_hook(sender, handle)
            case _:
                return matches_allow_list(self.allow_from, sender, handle)

    def _group_allowed(self, sender: str, handle: str | None) -> bool:
        match self.group_policy:
            case "disabled":
                return False
            case "open":
                return True
            case _:
                allowed = self.group_allow_from or self.allow_from
                return matches_allow_list(allowed, sender, handle)

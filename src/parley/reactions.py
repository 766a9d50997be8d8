from __future__ import annotations

from .agent import AgentIdentity

DEFAULT_ACK_REACTION = "\N{EYES}"

# Emoji Telegram accepts as bot message reactions.
STANDARD_REACTIONS: frozenset[str] = frozenset(
    {
        "\U0001f44d",
        "\U0001f44e",
        "\u2764",
        "\U0001f525",
        "\U0001f970",
        "\U0001f44f",
        "\U0001f601",
        "\U0001f914",
        "\U0001f92f",
        "\U0001f631",
        "\U0001f92c",
        "\U0001f622",
        "\U0001f389",
        "\U0001f929",
        "\U0001f92e",
        "\U0001f4a9",
        "\U0001f64f",
        "\U0001f44c",
        "\U0001f54a",
        "\U0001f921",
        "\U0001f971",
        "\U0001f974",
        "\U0001f60d",
        "\U0001f433",
        "\u2764\u200d\U0001f525",
        "\U0001f31a",
        "\U0001f32d",
        "\U0001f4af",
        "\U0001f923",
        "\u26a1",
        "\U0001f34c",
        "\U0001f3c6",
        "\U0001f494",
        "\U0001f928",
        "\U0001f610",
        "\U0001f353",
        "\U0001f37e",
        "\U0001f48b",
        "\U0001f595",
        "\U0001f608",
        "\U0001f634",
        "\U0001f62d",
        "\U0001f913",
        "\U0001f47b",
        "\U0001f468\u200d\U0001f4bb",
        "\U0001f440",
        "\U0001f383",
        "\U0001f648",
        "\U0001f607",
        "\U0001f628",
        "\U0001f91d",
        "\u270d",
        "\U0001f917",
        "\U0001fae1",
        "\U0001f385",
        "\U0001f384",
        "\u2603",
        "\U0001f485",
        "\U0001f92a",
        "\U0001f5ff",
        "\U0001f192",
        "\U0001f498",
        "\U0001f649",
        "\U0001f984",
        "\U0001f618",
        "\U0001f48a",
        "\U0001f64a",
        "\U0001f60e",
        "\U0001f47e",
        "\U0001f937\u200d\u2642",
        "\U0001f937",
        "\U0001f937\u200d\u2640",
        "\U0001f621",
    }
)


def is_standard_reaction(emoji: str) -> bool:
    return emoji in STANDARD_REACTIONS


def ack_reaction(configured: str | None, identity: AgentIdentity | None) -> str:
    if configured and configured.strip():
        return configured.strip()
    if identity is not None and identity.emoji and identity.emoji.strip():
        return identity.emoji.strip()
    return DEFAULT_ACK_REACTION

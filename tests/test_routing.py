from parley.routing import (
    channel_descriptor,
    conversation_key,
    route,
    sender_label,
)
from parley.transport import AttachmentRef, InboundEvent


def _event(**kwargs) -> InboundEvent:
    values = {
        "transport": "telegram",
        "sender_id": 11,
        "chat_id": 11,
        "chat_kind": "dm",
        "message_id": 1,
        "text": "hi",
    }
    values.update(kwargs)
    return InboundEvent(**values)


def test_dm_key_is_scoped_to_sender() -> None:
    routed = route(_event(), bot_handle="parley_bot")
    assert routed is not None
    assert routed.key == "telegram-dm:11"
    assert routed.channel.id == "dm:11"
    assert routed.channel.type == "telegram"
    assert routed.text == "hi"


def test_group_key_is_scoped_to_chat() -> None:
    assert conversation_key(is_group=True, chat_id=-100, sender_id=5) == (
        "telegram-group:-100"
    )
    assert conversation_key(is_group=False, chat_id=-100, sender_id=5) == (
        "telegram-dm:5"
    )


def test_channel_name_fallbacks() -> None:
    titled = channel_descriptor(
        is_group=True, chat_id=-1, sender_id=2, chat_title="Team", sender_name="Al"
    )
    named = channel_descriptor(is_group=False, chat_id=2, sender_id=2, sender_name="Al")
    anonymous = channel_descriptor(is_group=False, chat_id=2, sender_id=2)
    assert titled.name == "Team"
    assert named.name == "Al"
    assert anonymous.name == "Telegram DM"


def test_group_without_mention_or_reply_is_ignored() -> None:
    event = _event(chat_id=-100, chat_kind="group", text="hello everyone")
    assert route(event, bot_handle="parley_bot") is None


def test_group_mention_is_stripped() -> None:
    event = _event(chat_id=-100, chat_kind="group", text="@Parley_Bot   hello")
    routed = route(event, bot_handle="parley_bot")
    assert routed is not None
    assert routed.mentioned
    assert routed.text == "hello"
    assert routed.key == "telegram-group:-100"


def test_group_mention_of_longer_handle_is_ignored() -> None:
    event = _event(
        chat_id=-100,
        chat_kind="group",
        text="@parley_bot_dev please deploy",
        mentioned_handles=("parley_bot_dev",),
    )
    assert route(event, bot_handle="parley_bot") is None


def test_mention_inside_longer_handle_is_not_stripped() -> None:
    event = _event(
        chat_id=-100, chat_kind="group", text="@parley_bot ask @parley_bot_dev about it"
    )
    routed = route(event, bot_handle="parley_bot")
    assert routed is not None
    assert routed.text == "ask @parley_bot_dev about it"


def test_group_reply_to_bot_passes_without_mention() -> None:
    event = _event(
        chat_id=-100, chat_kind="group", text="and then?", is_reply_to_bot=True
    )
    routed = route(event, bot_handle="parley_bot")
    assert routed is not None
    assert not routed.mentioned
    assert routed.text == "and then?"


def test_group_mention_from_entities() -> None:
    event = _event(
        chat_id=-100,
        chat_kind="group",
        text="ping",
        mentioned_handles=("parley_bot",),
    )
    assert route(event, bot_handle="parley_bot") is not None


def test_empty_event_is_dropped() -> None:
    assert route(_event(text=None), bot_handle=None) is None
    assert route(_event(text=""), bot_handle=None) is None


def test_attachment_only_event_is_routed() -> None:
    ref = AttachmentRef(kind="photo", file_id="f", file_name="photo.jpg")
    routed = route(_event(text=None, attachments=(ref,)), bot_handle=None)
    assert routed is not None
    assert routed.text == ""


def test_caption_is_used_as_text() -> None:
    routed = route(_event(text=None, caption="look"), bot_handle=None)
    assert routed is not None
    assert routed.text == "look"


def test_other_chat_kinds_route_like_dms() -> None:
    routed = route(_event(chat_kind="other", chat_id=-5), bot_handle=None)
    assert routed is not None
    assert routed.key == "telegram-dm:11"


def test_sender_label_fallbacks() -> None:
    assert sender_label(sender_name="Al", sender_handle="al", sender_id=1) == "Al"
    assert sender_label(sender_name=None, sender_handle="al", sender_id=1) == "al"
    assert sender_label(sender_name=None, sender_handle=None, sender_id=1) == "1"

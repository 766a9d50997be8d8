import anyio
import pytest

from fakes import FakeResolver, FakeTransport, wait_until
from parley.agent import AgentIdentity
from parley.errors import AgentUnavailable, AttachmentDownloadFailed, AttachmentTooLarge
from parley.keyboards import main_keyboard
from parley.policy import PolicyEvaluator
from parley.registry import StreamRegistry
from parley.runtimes.mock import Emit, Raise, Return, ScriptRuntime, Wait
from parley.telegram.bridge import (
    GENERIC_APOLOGY,
    BridgeSettings,
    TelegramBridge,
    session_factory,
)
from parley.transport import AttachmentRef, InboundEvent

BOT = "parley_bot"
MB = 1024 * 1024
OPEN = BridgeSettings(
    policy=PolicyEvaluator(dm_policy="open", group_policy="open"),
    typing_interval_s=60.0,
)


def _dm(text: str | None = "hi", **kwargs) -> InboundEvent:
    values = {
        "transport": "telegram",
        "sender_id": 11,
        "chat_id": 11,
        "chat_kind": "dm",
        "message_id": 1,
        "text": text,
        "sender_name": "Alice",
        "sender_handle": "alice",
    }
    values.update(kwargs)
    return InboundEvent(**values)


def _group(text: str, **kwargs) -> InboundEvent:
    return _dm(text, chat_id=-100, chat_kind="group", chat_title="Team", **kwargs)


async def _run(
    transport: FakeTransport,
    runtime: ScriptRuntime,
    *events: InboundEvent,
    settings: BridgeSettings = OPEN,
    resolver: FakeResolver | None = None,
    identity: AgentIdentity | None = None,
    flush_interval_s: float = 60.0,
) -> TelegramBridge:
    async with anyio.create_task_group() as tg:
        registry = StreamRegistry(
            task_group=tg,
            factory=session_factory(
                transport,
                limit=settings.message_limit,
                flush_interval_s=flush_interval_s,
            ),
        )
        bridge = TelegramBridge(
            transport=transport,
            runtime=runtime,
            registry=registry,
            settings=settings,
            resolver=resolver,
            bot_handle=BOT,
            identity=identity,
        )
        for event in events:
            await bridge.handle_update(event)
    return bridge


@pytest.mark.anyio
async def test_dm_reply_is_sent_once() -> None:
    transport = FakeTransport()
    runtime = ScriptRuntime([Emit("Hello!")])

    await _run(transport, runtime, _dm("hi"))

    assert [call.session_key for call in runtime.calls] == ["telegram-dm:11"]
    assert runtime.calls[0].text == "[Alice]: hi"
    assert runtime.logged == [("telegram-dm:11", "hi")]
    assert transport.texts == ["Hello!"]
    assert transport.sent[0].options.reply_to.message_id == 1
    assert transport.edits == []
    assert transport.reactions[0][1] == "\N{EYES}"
    assert transport.typing_calls == [11]


@pytest.mark.anyio
async def test_group_message_without_mention_is_ignored() -> None:
    transport = FakeTransport()
    runtime = ScriptRuntime([Emit("nope")])

    await _run(transport, runtime, _group("hello all"))

    assert runtime.calls == []
    assert runtime.logged == []
    assert transport.sent == []
    assert transport.reactions == []


@pytest.mark.anyio
async def test_group_mention_is_stripped_before_invoking() -> None:
    transport = FakeTransport()
    runtime = ScriptRuntime([Emit("Hey team.")])

    await _run(transport, runtime, _group("@parley_bot hello"))

    assert runtime.calls[0].session_key == "telegram-group:-100"
    assert runtime.calls[0].text == "[Alice]: hello"
    assert runtime.calls[0].options.channel.id == "group:-100"
    assert runtime.calls[0].options.channel.name == "Team"
    assert transport.texts == ["Hey team."]


@pytest.mark.anyio
async def test_streamed_reply_ends_with_full_text() -> None:
    transport = FakeTransport()
    release = anyio.Event()
    runtime = ScriptRuntime([Emit("Hi"), Wait(release), Emit(" there")])

    async with anyio.create_task_group() as tg:

        async def feed() -> None:
            await _run(transport, runtime, _dm("hi"), flush_interval_s=0.01)

        tg.start_soon(feed)
        await wait_until(lambda: transport.sent)
        release.set()

    assert transport.texts == ["Hi"]
    assert transport.edits[-1][1] == "Hi there"


@pytest.mark.anyio
async def test_long_fallback_reply_is_chunked() -> None:
    transport = FakeTransport()
    body = ("Sentence number something. " * 200)[:5000]
    runtime = ScriptRuntime([Return(body)])

    await _run(transport, runtime, _dm("long please"))

    assert len(transport.sent) >= 2
    assert len(transport.texts[0]) <= 4096
    assert "".join(transport.texts) == body
    assert transport.sent[0].options.reply_to is not None
    assert all(msg.options.reply_to is None for msg in transport.sent[1:])


@pytest.mark.anyio
async def test_policy_rejection_is_silent() -> None:
    transport = FakeTransport()
    runtime = ScriptRuntime([Emit("nope")])
    settings = BridgeSettings(policy=PolicyEvaluator(dm_policy="disabled"))

    await _run(transport, runtime, _dm("hi"), settings=settings)

    assert runtime.calls == []
    assert runtime.logged == []
    assert transport.sent == []


@pytest.mark.anyio
async def test_agent_failure_sends_generic_apology() -> None:
    transport = FakeTransport()
    runtime = ScriptRuntime([Raise(AgentUnavailable("connection refused"))])

    await _run(transport, runtime, _dm("hi"))

    assert transport.texts == [GENERIC_APOLOGY]
    assert transport.sent[0].options.reply_to.message_id == 1


@pytest.mark.anyio
async def test_unexpected_runtime_error_sends_generic_apology() -> None:
    transport = FakeTransport()
    runtime = ScriptRuntime([Raise(ValueError("bad frame"))])

    bridge = await _run(transport, runtime, _dm("hi"), _dm("again", message_id=2))

    assert transport.texts == [GENERIC_APOLOGY, GENERIC_APOLOGY]
    assert [sent.options.reply_to.message_id for sent in transport.sent] == [1, 2]
    assert bridge.registry.get("telegram-dm:11") is None


@pytest.mark.anyio
async def test_oversized_attachment_is_rejected() -> None:
    transport = FakeTransport()
    runtime = ScriptRuntime([Emit("nope")])
    resolver = FakeResolver(error=AttachmentTooLarge(6 * MB, 5 * MB))
    ref = AttachmentRef(kind="photo", file_id="f1", file_name="photo.jpg", file_size=6 * MB)

    await _run(transport, runtime, _dm(None, attachments=(ref,)), resolver=resolver)

    assert runtime.calls == []
    assert transport.texts == [
        "Sorry, that photo exceeds the configured size limit (6.0 MB, limit is 5 MB)."
    ]


@pytest.mark.anyio
async def test_attachment_over_telegram_limit_names_it() -> None:
    transport = FakeTransport()
    runtime = ScriptRuntime([Emit("nope")])
    resolver = FakeResolver(error=AttachmentTooLarge(25 * MB, 20 * MB))
    ref = AttachmentRef(kind="document", file_id="f1", file_name="big.zip")

    await _run(transport, runtime, _dm("see file", attachments=(ref,)), resolver=resolver)

    assert runtime.calls == []
    assert "Telegram limits bot downloads to 20 MB" in transport.texts[0]


@pytest.mark.anyio
async def test_failed_download_stops_processing() -> None:
    transport = FakeTransport()
    runtime = ScriptRuntime([Emit("nope")])
    resolver = FakeResolver(error=AttachmentDownloadFailed("http 500"))
    ref = AttachmentRef(kind="voice", file_id="f1", file_name="voice.ogg")

    await _run(transport, runtime, _dm(None, attachments=(ref,)), resolver=resolver)

    assert runtime.calls == []
    assert transport.texts == ["Sorry, I couldn't download that attachment."]


@pytest.mark.anyio
async def test_resolved_attachments_reach_the_agent() -> None:
    transport = FakeTransport()
    runtime = ScriptRuntime([Emit("Nice picture.")])
    resolver = FakeResolver(directory="/data")
    ref = AttachmentRef(kind="photo", file_id="f1", file_name="photo.jpg", file_size=10)

    await _run(transport, runtime, _dm("look", attachments=(ref,)), resolver=resolver)

    assert resolver.calls == [(ref, 11, OPEN.media_max_bytes)]
    assert runtime.calls[0].text == "[Alice]: look\n\n[Attachment: /data/1-11-photo.jpg]"
    assert runtime.calls[0].options.images == ("/data/1-11-photo.jpg",)


@pytest.mark.anyio
async def test_attachment_only_message_is_logged_as_media() -> None:
    transport = FakeTransport()
    runtime = ScriptRuntime([Emit("Got it.")])
    resolver = FakeResolver(directory="/data")
    ref = AttachmentRef(kind="document", file_id="f1", file_name="notes.pdf", file_size=10)

    await _run(transport, runtime, _dm(None, attachments=(ref,)), resolver=resolver)

    assert runtime.logged == [("telegram-dm:11", "[media]")]
    assert runtime.calls[0].text == "[Alice]: [Attachment: /data/1-11-notes.pdf]"
    assert runtime.calls[0].options.images == ()


@pytest.mark.anyio
async def test_identity_emoji_is_used_for_acknowledgement() -> None:
    transport = FakeTransport()
    runtime = ScriptRuntime([Emit("ok")])

    await _run(
        transport, runtime, _dm("hi"), identity=AgentIdentity(emoji="\N{FIRE}")
    )

    assert [emoji for _, emoji in transport.reactions] == ["\N{FIRE}"]


@pytest.mark.anyio
async def test_non_standard_reaction_is_skipped() -> None:
    transport = FakeTransport()
    runtime = ScriptRuntime([Emit("ok")])
    settings = BridgeSettings(
        policy=PolicyEvaluator(dm_policy="open"), ack_reaction="not-an-emoji"
    )

    await _run(transport, runtime, _dm("hi"), settings=settings)

    assert transport.reactions == []
    assert transport.texts == ["ok"]


@pytest.mark.anyio
async def test_help_command_replies_with_keyboard() -> None:
    transport = FakeTransport()
    runtime = ScriptRuntime([Emit("unused")])

    await _run(transport, runtime, _dm("/help"))

    assert runtime.calls == []
    assert transport.texts[0].startswith("parley Telegram commands")
    assert transport.sent[0].options.controls == main_keyboard()

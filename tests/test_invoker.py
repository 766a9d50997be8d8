import anyio
import pytest

from fakes import FakeTransport, wait_until
from parley.errors import AgentError, AgentUnavailable
from parley.invoker import AgentInvoker, InvokeOutcome, InvokeResult, format_prompt
from parley.registry import StreamRegistry
from parley.routing import ChannelDescriptor
from parley.runtimes.mock import Emit, Raise, Return, ScriptRuntime, Sleep, Wait
from parley.streaming import StreamSession
from parley.transport import EditOutcome, MessageRef

CHANNEL = ChannelDescriptor(type="telegram", id="dm:11", name="Alice")
SOURCE = MessageRef(channel_id=11, message_id=5)


def _factory(transport: FakeTransport, *, limit: int, flush_interval_s: float):
    def build(key, seq, channel_id, reply_to) -> StreamSession:
        return StreamSession(
            transport=transport,
            channel_id=channel_id,
            key=key,
            seq=seq,
            reply_to=reply_to,
            limit=limit,
            flush_interval_s=flush_interval_s,
            settle_poll_s=0.001,
        )

    return build


async def _invoke(
    runtime: ScriptRuntime,
    transport: FakeTransport,
    *,
    limit: int = 4096,
    flush_interval_s: float = 60.0,
    timeout_s: float | None = None,
    release: anyio.Event | None = None,
    text: str = "hi",
) -> InvokeResult:
    result: list[InvokeResult] = []
    errors: list[Exception] = []
    async with anyio.create_task_group() as tg:
        registry = StreamRegistry(
            task_group=tg,
            factory=_factory(transport, limit=limit, flush_interval_s=flush_interval_s),
        )
        invoker = AgentInvoker(
            runtime=runtime,
            transport=transport,
            registry=registry,
            limit=limit,
            timeout_s=timeout_s,
        )

        async def run() -> None:
            try:
                result.append(
                    await invoker.invoke(
                        "telegram-dm:11",
                        text,
                        sender_label="Alice",
                        channel=CHANNEL,
                        chat_id=11,
                        reply_to=SOURCE,
                    )
                )
            except Exception as exc:
                errors.append(exc)

        tg.start_soon(run)
        if release is not None:
            await wait_until(lambda: transport.sent)
            release.set()
    assert len(registry) == 0
    if errors:
        raise errors[0]
    return result[0]


def test_format_prompt() -> None:
    assert format_prompt("Alice", "hi") == "[Alice]: hi"
    assert format_prompt("Alice", "") == "[Alice]: [media]"


@pytest.mark.anyio
async def test_streamed_reply_is_edited_in_place() -> None:
    release = anyio.Event()
    runtime = ScriptRuntime([Emit("Hi"), Wait(release), Emit(" there")])
    transport = FakeTransport()

    result = await _invoke(runtime, transport, flush_interval_s=0.01, release=release)

    assert result.outcome is InvokeOutcome.STREAMED
    assert result.response == "Hi there"
    assert transport.texts == ["Hi"]
    assert transport.edits[-1][1] == "Hi there"
    assert runtime.calls[0].text == "[Alice]: hi"
    assert runtime.calls[0].options.sender == "Alice"
    assert runtime.calls[0].options.channel == CHANNEL


@pytest.mark.anyio
async def test_fast_reply_falls_back_to_single_send() -> None:
    runtime = ScriptRuntime([Emit("Hi "), Emit("there.")])
    transport = FakeTransport()

    result = await _invoke(runtime, transport)

    assert result.outcome is InvokeOutcome.FALLBACK
    assert transport.texts == ["Hi there."]
    assert transport.sent[0].options.reply_to == SOURCE
    assert transport.edits == []


@pytest.mark.anyio
async def test_failed_edit_falls_back_to_full_send() -> None:
    release = anyio.Event()
    runtime = ScriptRuntime([Emit("Hi"), Wait(release), Emit(" there")])
    transport = FakeTransport(edit_outcomes=[EditOutcome.FAILED])

    result = await _invoke(runtime, transport, flush_interval_s=0.01, release=release)

    assert result.outcome is InvokeOutcome.FALLBACK
    assert transport.texts == ["Hi", "Hi there"]


@pytest.mark.anyio
async def test_overflow_tail_is_sent_separately() -> None:
    release = anyio.Event()
    head = "a" * 10
    tail = "b" * 20
    runtime = ScriptRuntime([Emit(head), Wait(release), Emit(tail)])
    transport = FakeTransport()

    result = await _invoke(
        runtime, transport, limit=20, flush_interval_s=0.01, release=release
    )

    assert result.outcome is InvokeOutcome.OVERFLOW
    assert transport.texts[0] == head
    assert transport.edits[-1][1] == (head + tail)[:16] + " ..."
    assert "".join(transport.texts[1:]) == (head + tail)[16:]
    assert all(len(text) <= 20 for text in transport.texts)


@pytest.mark.anyio
async def test_returned_answer_wins_over_fragments() -> None:
    runtime = ScriptRuntime([Emit("draft"), Return("final answer")])
    transport = FakeTransport()

    result = await _invoke(runtime, transport)

    assert result.response == "final answer"
    assert transport.texts == ["final answer"]


@pytest.mark.anyio
async def test_failure_before_output_is_raised() -> None:
    runtime = ScriptRuntime([Raise(AgentError("model exploded"))])
    transport = FakeTransport()

    with pytest.raises(AgentError):
        await _invoke(runtime, transport)
    assert transport.sent == []


@pytest.mark.anyio
async def test_failure_after_output_is_partial() -> None:
    release = anyio.Event()
    runtime = ScriptRuntime(
        [Emit("Hi"), Wait(release), Emit(" th"), Raise(AgentError("lost"))]
    )
    transport = FakeTransport()

    result = await _invoke(runtime, transport, flush_interval_s=0.01, release=release)

    assert result.outcome is InvokeOutcome.PARTIAL
    assert result.response == "Hi th"
    assert transport.texts == ["Hi"]


@pytest.mark.anyio
async def test_timeout_surfaces_as_unavailable() -> None:
    runtime = ScriptRuntime([Sleep(5)])
    transport = FakeTransport()

    with pytest.raises(AgentUnavailable):
        await _invoke(runtime, transport, timeout_s=0.05)


@pytest.mark.anyio
async def test_newer_invocation_supersedes_older() -> None:
    first_release = anyio.Event()
    transport = FakeTransport()
    results: dict[str, InvokeResult] = {}

    async with anyio.create_task_group() as tg:
        registry = StreamRegistry(
            task_group=tg,
            factory=_factory(transport, limit=4096, flush_interval_s=0.01),
        )

        def invoker_for(runtime: ScriptRuntime) -> AgentInvoker:
            return AgentInvoker(runtime=runtime, transport=transport, registry=registry)

        slow = invoker_for(ScriptRuntime([Emit("old"), Wait(first_release)]))
        fast = invoker_for(ScriptRuntime([Emit("new")]))

        async def run(name: str, invoker: AgentInvoker) -> None:
            results[name] = await invoker.invoke(
                "telegram-dm:11",
                "hi",
                sender_label="Alice",
                channel=CHANNEL,
                chat_id=11,
            )

        tg.start_soon(run, "slow", slow)
        await wait_until(lambda: transport.sent)
        await run("fast", fast)
        first_release.set()

    assert results["slow"].outcome is InvokeOutcome.SUPERSEDED
    assert results["fast"].outcome in (InvokeOutcome.STREAMED, InvokeOutcome.FALLBACK)
    assert transport.texts == ["old", "new"]
    assert len(registry) == 0

import anyio
import pytest

from fakes import FakeTransport, wait_until
from parley.streaming import StreamSession, truncate_for_display
from parley.transport import EditOutcome, MessageRef


def _session(transport: FakeTransport, **kwargs) -> StreamSession:
    kwargs.setdefault("limit", 4096)
    kwargs.setdefault("flush_interval_s", 60.0)
    kwargs.setdefault("settle_poll_s", 0.001)
    return StreamSession(transport=transport, channel_id=11, key="k", seq=1, **kwargs)


def test_truncate_for_display() -> None:
    assert truncate_for_display("short", 10) == "short"
    assert truncate_for_display("x" * 11, 10) == "xxxxxx ..."
    assert len(truncate_for_display("x" * 50, 10)) == 10


@pytest.mark.anyio
async def test_first_flush_sends_then_edits() -> None:
    transport = FakeTransport()
    reply_to = MessageRef(channel_id=11, message_id=5)
    session = _session(transport, reply_to=reply_to)

    session.append("Hi")
    await session.flush()
    session.append(" there")
    await session.flush()

    assert transport.texts == ["Hi"]
    assert transport.sent[0].options is not None
    assert transport.sent[0].options.reply_to == reply_to
    assert [text for _, text in transport.edits] == ["Hi there"]
    assert session.has_message
    assert session.displayed_text == "Hi there"

    assert await session.finalize() == "Hi there"
    # display already matches, no redundant edit
    assert len(transport.edits) == 1
    assert not session.needs_fallback


@pytest.mark.anyio
async def test_flush_without_fragments_is_noop() -> None:
    transport = FakeTransport()
    session = _session(transport)
    await session.flush()
    assert transport.sent == []


@pytest.mark.anyio
async def test_display_is_truncated_but_full_text_kept() -> None:
    transport = FakeTransport()
    session = _session(transport, limit=20)

    session.append("a" * 30)
    await session.flush()

    assert transport.texts == ["a" * 16 + " ..."]
    assert await session.finalize() == "a" * 30


@pytest.mark.anyio
async def test_failed_send_is_sticky() -> None:
    transport = FakeTransport(fail_sends={0})
    session = _session(transport)

    session.append("one ")
    await session.flush()
    session.append("two")
    await session.flush()

    assert session.needs_fallback
    assert not session.has_message
    assert len(transport.sent) == 1
    assert await session.finalize() == "one two"
    assert len(transport.sent) == 1
    assert transport.edits == []


@pytest.mark.anyio
async def test_failed_edit_is_sticky() -> None:
    transport = FakeTransport(edit_outcomes=[EditOutcome.FAILED])
    session = _session(transport)

    session.append("one ")
    await session.flush()
    session.append("two ")
    await session.flush()
    session.append("three")
    await session.flush()

    assert session.needs_fallback
    assert len(transport.edits) == 1
    assert await session.finalize() == "one two three"
    assert len(transport.edits) == 1


@pytest.mark.anyio
async def test_unchanged_edit_is_not_a_failure() -> None:
    transport = FakeTransport(edit_outcomes=[EditOutcome.UNCHANGED])
    session = _session(transport)

    session.append("one ")
    await session.flush()
    session.append("two")
    await session.flush()

    assert not session.needs_fallback


@pytest.mark.anyio
async def test_transport_exception_sets_failure() -> None:
    transport = FakeTransport(send_error=RuntimeError("boom"))
    session = _session(transport)

    session.append("hello")
    await session.flush()

    assert session.needs_fallback
    assert await session.finalize() == "hello"


@pytest.mark.anyio
async def test_finalize_drains_pending_fragments_and_edits_once() -> None:
    transport = FakeTransport()
    session = _session(transport)

    session.append("Hi")
    await session.flush()
    session.append(" there")
    session.append("!")

    assert await session.finalize() == "Hi there!"
    assert [text for _, text in transport.edits] == ["Hi there!"]

    session.append("late")
    assert session.full_text == "Hi there!"
    assert await session.finalize() == "Hi there!"


@pytest.mark.anyio
async def test_finalize_without_message_sends_nothing() -> None:
    transport = FakeTransport()
    session = _session(transport)
    session.append("never flushed")

    assert await session.finalize() == "never flushed"
    assert transport.sent == []
    assert not session.has_message


@pytest.mark.anyio
async def test_cancelled_session_skips_final_edit() -> None:
    transport = FakeTransport()
    session = _session(transport)

    session.append("Hi")
    await session.flush()
    session.cancel()
    session.append(" ignored")

    assert await session.finalize() == "Hi"
    assert transport.edits == []
    assert session.cancelled


@pytest.mark.anyio
async def test_finalize_waits_for_inflight_flush() -> None:
    gate = anyio.Event()
    transport = FakeTransport(send_gate=gate)
    session = _session(transport)
    result: list[str] = []

    async with anyio.create_task_group() as tg:
        session.append("Hi")
        tg.start_soon(session.flush)
        await anyio.sleep(0.01)
        session.append(" there")

        async def finish() -> None:
            result.append(await session.finalize())

        tg.start_soon(finish)
        await anyio.sleep(0.01)
        gate.set()

    assert result == ["Hi there"]
    assert transport.texts == ["Hi"]
    assert [text for _, text in transport.edits] == ["Hi there"]


@pytest.mark.anyio
async def test_periodic_flush_task() -> None:
    transport = FakeTransport()
    session = _session(transport, flush_interval_s=0.01)

    async with anyio.create_task_group() as tg:
        session.start(tg)
        session.append("Hi")
        await wait_until(lambda: transport.sent)
        session.append(" there")
        await wait_until(lambda: transport.edits)
        assert await session.finalize() == "Hi there"

    assert transport.texts == ["Hi"]
    assert transport.edits[-1][1] == "Hi there"


@pytest.mark.anyio
async def test_full_text_is_exact_concatenation() -> None:
    transport = FakeTransport()
    session = _session(transport, limit=16)
    fragments = ["a", "bc ", "", "def. ", "ghijklmnop", "q" * 30, " end"]

    for idx, fragment in enumerate(fragments):
        session.append(fragment)
        if idx % 2:
            await session.flush()

    assert await session.finalize() == "".join(fragments)

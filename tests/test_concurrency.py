import asyncio
import contextlib

import pytest

from conftest import send_call
from mailgate.errors import NoMatchingSuspension, SessionSuspended
from mailgate.models import Approve, AssistantOutput, Reply, Suspended
from mailgate.services.session_store import InMemorySessionStore


class NonLockingSessionStore(InMemorySessionStore):
    """Same storage, no mutual exclusion: shows why the session lock is needed."""

    def lock(self, session_id: str):
        return contextlib.nullcontext()


async def _suspend(engine_factory, store):
    engine, context = engine_factory(
        [send_call(), AssistantOutput.reply("Sent."), AssistantOutput.reply("Sent.")],
        store=store,
    )
    assert isinstance(await engine.submit("s1", "send a refund email to a@b.com"), Suspended)
    return engine, context


@pytest.mark.asyncio
async def test_concurrent_approvals_execute_once_with_locking_store(engine_factory) -> None:
    engine, context = await _suspend(engine_factory, InMemorySessionStore())

    results = await asyncio.gather(
        engine.resume("s1", Approve("call_send_1")),
        engine.resume("s1", Approve("call_send_1")),
        return_exceptions=True,
    )

    assert len(context.outbox.sent) == 1
    assert sum(isinstance(r, Reply) for r in results) == 1
    assert sum(isinstance(r, NoMatchingSuspension) for r in results) == 1


@pytest.mark.asyncio
async def test_concurrent_approvals_double_send_without_locking(engine_factory) -> None:
    engine, context = await _suspend(engine_factory, NonLockingSessionStore())

    results = await asyncio.gather(
        engine.resume("s1", Approve("call_send_1")),
        engine.resume("s1", Approve("call_send_1")),
        return_exceptions=True,
    )

    # both turns read the same Suspended state and both reached the executor
    assert all(isinstance(r, Reply) for r in results)
    assert len(context.outbox.sent) == 2


@pytest.mark.asyncio
async def test_concurrent_submits_are_serialized(engine_factory) -> None:
    engine, context = engine_factory([send_call(), AssistantOutput.reply("unused")])

    results = await asyncio.gather(
        engine.submit("s1", "send a refund email to a@b.com"),
        engine.submit("s1", "send it again"),
        return_exceptions=True,
    )

    assert isinstance(results[0], Suspended)
    assert isinstance(results[1], SessionSuspended)
    session = await engine.state("s1")
    assert [m.content for m in session.messages if m.role == "user"] == ["send a refund email to a@b.com"]
    assert context.outbox.sent == []


@pytest.mark.asyncio
async def test_different_sessions_run_in_parallel(engine_factory) -> None:
    """Session locks are per key: a turn blocked in the model does not block other sessions."""
    engine, context = engine_factory([])
    b_started = asyncio.Event()

    class GatedModel:
        async def invoke(self, messages, tools):
            text = messages[0].content
            if text == "from a":
                await asyncio.wait_for(b_started.wait(), timeout=2)
            else:
                b_started.set()
            return AssistantOutput.reply(f"reply to {text}")

    engine._model = GatedModel()

    results = await asyncio.gather(engine.submit("a", "from a"), engine.submit("b", "from b"))
    assert results == [Reply("reply to from a"), Reply("reply to from b")]

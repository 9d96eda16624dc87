import sys
from pathlib import Path


_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

import asyncio  # noqa: E402
from typing import Any, Dict, Iterable, List, Sequence  # noqa: E402

import pytest  # noqa: E402

from mailgate.agent.context import AgentContext  # noqa: E402
from mailgate.agent.engine import TurnEngine  # noqa: E402
from mailgate.agent.model import ChatModel  # noqa: E402
from mailgate.agent.policy import PolicyFn, PolicyGate  # noqa: E402
from mailgate.agent.registry import ToolRegistry  # noqa: E402
from mailgate.agent.tools import register_email_tools  # noqa: E402
from mailgate.models import AssistantOutput, Message  # noqa: E402
from mailgate.services.outbox import Outbox  # noqa: E402
from mailgate.services.retrieval import Document, InMemoryRetriever  # noqa: E402
from mailgate.services.session_store import InMemorySessionStore, SessionStore  # noqa: E402
from mailgate.settings import Settings  # noqa: E402


class ScriptedModel(ChatModel):
    """Returns scripted outputs in order; exceptions in the script are raised."""

    def __init__(self, outputs: Iterable[Any]) -> None:
        self._outputs = iter(outputs)
        self.calls: List[List[Message]] = []

    async def invoke(self, messages: Sequence[Message], tools: List[Dict[str, Any]]) -> AssistantOutput:
        self.calls.append(list(messages))
        out = next(self._outputs, None)
        if out is None:
            raise AssertionError("ScriptedModel ran out of outputs")
        if isinstance(out, BaseException):
            raise out
        return out


class SlowModel(ChatModel):
    """Sleeps before answering, for exercising turn timeouts."""

    def __init__(self, delay: float, text: str = "late") -> None:
        self.delay = delay
        self.text = text

    async def invoke(self, messages: Sequence[Message], tools: List[Dict[str, Any]]) -> AssistantOutput:
        await asyncio.sleep(self.delay)
        return AssistantOutput.reply(self.text)


class RecordingExecutor:
    """Sync executor that records the keyword arguments of each call."""

    def __init__(self, result: Any = "ok", error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    def __call__(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.result


def make_settings(**overrides: Any) -> Settings:
    return Settings(_env_file=None, openai_api_key="test-key", **overrides)


def make_context(
    outputs: Iterable[Any],
    *,
    store: SessionStore | None = None,
    policy: PolicyFn | None = None,
    **settings_overrides: Any,
) -> AgentContext:
    settings = make_settings(**settings_overrides)
    retriever = InMemoryRetriever(
        [
            Document(
                "FROM: a@b.com\nSUBJECT: Refund for order 1042\nBODY: I was charged twice.",
                {"id": "email-0", "from": "a@b.com"},
            ),
            Document(
                "FROM: sarah@example.com\nSUBJECT: Planning meeting\nBODY: Thursday at 10am?",
                {"id": "email-1", "from": "sarah@example.com"},
            ),
        ]
    )
    outbox = Outbox()
    registry = register_email_tools(ToolRegistry(), retriever=retriever, outbox=outbox, settings=settings)
    return AgentContext(
        settings=settings,
        registry=registry,
        gate=PolicyGate(registry, policy),
        store=store if store is not None else InMemorySessionStore(),
        model=ScriptedModel(outputs),
        outbox=outbox,
        retriever=retriever,
    )


REFUND_ARGS = {
    "recipient": "a@b.com",
    "subject": "Refund Request",
    "body": "Dear customer, we have processed your refund.",
}


def send_call(arguments: Dict[str, Any] | None = None, call_id: str = "call_send_1") -> AssistantOutput:
    return AssistantOutput.call("send_email", dict(arguments or REFUND_ARGS), call_id)


@pytest.fixture
def context_factory():
    return make_context


@pytest.fixture
def engine_factory():
    def factory(outputs: Iterable[Any], **kwargs: Any) -> tuple[TurnEngine, AgentContext]:
        context = make_context(outputs, **kwargs)
        return TurnEngine(context), context

    return factory

import logging
from dataclasses import dataclass

from ..services.outbox import Outbox
from ..services.retrieval import Retriever, index_emails
from ..services.session_store import SessionStore, build_session_store
from ..settings import Settings, get_settings
from .model import ChatModel, OpenAIChatModel
from .policy import PolicyFn, PolicyGate
from .registry import ToolRegistry
from .tools import register_email_tools

logger = logging.getLogger(__name__)


@dataclass
class AgentContext:
    """Everything a TurnEngine needs, built once per process and passed explicitly."""

    settings: Settings
    registry: ToolRegistry
    gate: PolicyGate
    store: SessionStore
    model: ChatModel
    outbox: Outbox | None = None
    retriever: Retriever | None = None


async def build_context(
    settings: Settings | None = None,
    *,
    store: SessionStore | None = None,
    model: ChatModel | None = None,
    retriever: Retriever | None = None,
    outbox: Outbox | None = None,
    policy: PolicyFn | None = None,
) -> AgentContext:
    """Assemble the email assistant: tools, gate, store and model.

    Any collaborator passed in is used as-is; the rest are built from settings.
    """
    settings = settings or get_settings()
    if retriever is None:
        retriever = index_emails(settings.emails_path)
    if outbox is None:
        outbox = Outbox(settings.outbox_path)
    if store is None:
        store = await build_session_store()
    if model is None:
        model = OpenAIChatModel(settings)

    registry = register_email_tools(
        ToolRegistry(),
        retriever=retriever,
        outbox=outbox,
        settings=settings,
    )
    gate = PolicyGate(registry, policy)
    logger.info(
        "Agent context ready: tools=%s send_mode=%s store=%s",
        registry.names(),
        settings.send_mode,
        type(store).__name__,
    )
    return AgentContext(
        settings=settings,
        registry=registry,
        gate=gate,
        store=store,
        model=model,
        outbox=outbox,
        retriever=retriever,
    )

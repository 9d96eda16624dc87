import logging
from dataclasses import dataclass
from typing import Callable, FrozenSet, Iterable, Optional, Union

from ..models import ALL_DECISIONS, Session, ToolInvocationRequest
from .registry import ToolDef, ToolRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Proceed:
    """The call may execute immediately."""


@dataclass(frozen=True)
class Block:
    """The call must wait for a human decision."""

    allowed_decisions: FrozenSet[str]


Verdict = Union[Proceed, Block]
PolicyFn = Callable[[ToolInvocationRequest, ToolDef, Optional[Session]], Verdict]


def default_decisions(tool: ToolDef) -> FrozenSet[str]:
    if tool.editable:
        return ALL_DECISIONS
    return ALL_DECISIONS - {"edit"}


def static_policy(
    request: ToolInvocationRequest, tool: ToolDef, session: Optional[Session]
) -> Verdict:
    """Gate purely on the tool's side-effect classification."""
    if not tool.side_effecting:
        return Proceed()
    return Block(default_decisions(tool))


def keyword_policy(field: str, keywords: Iterable[str]) -> PolicyFn:
    """Gate side-effecting calls only when ``arguments[field]`` mentions a keyword.

    Matching is case-insensitive. Calls to non side-effecting tools always proceed.
    """
    needles = [k.lower() for k in keywords if k]

    def policy(
        request: ToolInvocationRequest, tool: ToolDef, session: Optional[Session]
    ) -> Verdict:
        if not tool.side_effecting:
            return Proceed()
        value = str(request.arguments.get(field) or "").lower()
        if any(n in value for n in needles):
            return Block(default_decisions(tool))
        return Proceed()

    return policy


class PolicyGate:
    """Decides whether a tool invocation proceeds or suspends for review."""

    def __init__(self, registry: ToolRegistry, policy: PolicyFn | None = None) -> None:
        self._registry = registry
        self._policy = policy or static_policy

    def evaluate(
        self, request: ToolInvocationRequest, session: Session | None = None
    ) -> Verdict:
        tool = self._registry.get(request.name)
        verdict = self._policy(request, tool, session)
        if isinstance(verdict, Block):
            allowed = frozenset(verdict.allowed_decisions) & ALL_DECISIONS
            if not allowed:
                raise ValueError(f"Policy blocked {request.name} with no allowed decisions")
            verdict = Block(allowed)
        logger.debug("Gate verdict for %s (%s): %s", request.name, request.id, verdict)
        return verdict

"""Agent package for the mailgate email assistant.

Exposes the turn engine and its collaborators (tool registry, policy gate,
model client) while keeping the email tools and context wiring in separate
modules.
"""

from .context import AgentContext, build_context
from .engine import TurnEngine
from .model import ChatModel, OpenAIChatModel
from .policy import Block, PolicyGate, Proceed, keyword_policy, static_policy
from .registry import ToolDef, ToolRegistry

__all__ = [
    "AgentContext",
    "Block",
    "ChatModel",
    "OpenAIChatModel",
    "PolicyGate",
    "Proceed",
    "ToolDef",
    "ToolRegistry",
    "TurnEngine",
    "build_context",
    "keyword_policy",
    "static_policy",
]

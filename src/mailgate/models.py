from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, FrozenSet, List, Literal, Optional, Union

Role = Literal["user", "assistant", "tool"]
DecisionType = Literal["approve", "reject", "edit"]

ALL_DECISIONS: FrozenSet[str] = frozenset({"approve", "reject", "edit"})


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


@dataclass(frozen=True)
class ToolInvocationRequest:
    """A model's request to call a tool. The id doubles as the resume key."""

    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_call_id)

    def with_arguments(self, arguments: Dict[str, Any]) -> "ToolInvocationRequest":
        return ToolInvocationRequest(name=self.name, arguments=dict(arguments), id=self.id)


@dataclass
class Message:
    """One turn-unit of the conversation."""

    role: Role
    content: str = ""
    tool_call: Optional[ToolInvocationRequest] = None
    tool_call_id: Optional[str] = None
    tool_result: Any = None
    is_error: bool = False

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls(role="user", content=text)

    @classmethod
    def assistant(cls, text: str) -> "Message":
        return cls(role="assistant", content=text)

    @classmethod
    def call(cls, request: ToolInvocationRequest) -> "Message":
        return cls(role="assistant", content="", tool_call=request)

    @classmethod
    def result(cls, call_id: str, result: Any, is_error: bool = False) -> "Message":
        return cls(role="tool", tool_call_id=call_id, tool_result=result, is_error=is_error)


@dataclass
class Suspension:
    """A paused turn awaiting a human decision on ``request``."""

    request: ToolInvocationRequest
    allowed_decisions: FrozenSet[str]
    created_at: str = field(default_factory=utc_now_iso)

    @property
    def id(self) -> str:
        return self.request.id


@dataclass
class Session:
    """Per-session conversation state (messages and the pending suspension)."""

    session_id: str
    messages: List[Message] = field(default_factory=list)
    pending_suspension: Optional[Suspension] = None
    tool_calls_count: int = 0
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    @property
    def is_suspended(self) -> bool:
        return self.pending_suspension is not None


@dataclass(frozen=True)
class Approve:
    target_id: str
    type: ClassVar[str] = "approve"


@dataclass(frozen=True)
class Reject:
    target_id: str
    type: ClassVar[str] = "reject"


@dataclass(frozen=True)
class Edit:
    target_id: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    type: ClassVar[str] = "edit"


Decision = Union[Approve, Reject, Edit]


def decision_from_dict(data: Dict[str, Any]) -> Decision:
    """Build a Decision from ``{"type", "target_id", "arguments"?}``."""
    kind = str(data.get("type") or "").strip().lower()
    target_id = str(data.get("target_id") or "")
    if kind == "approve":
        return Approve(target_id)
    if kind == "reject":
        return Reject(target_id)
    if kind == "edit":
        arguments = data.get("arguments")
        if not isinstance(arguments, dict):
            raise ValueError("Edit decision requires an 'arguments' object")
        return Edit(target_id, dict(arguments))
    raise ValueError(f"Unknown decision type: {kind!r}")


@dataclass(frozen=True)
class AssistantOutput:
    """What the model returns: either final text or a single tool call."""

    text: Optional[str] = None
    tool_call: Optional[ToolInvocationRequest] = None

    @classmethod
    def reply(cls, text: str) -> "AssistantOutput":
        return cls(text=text)

    @classmethod
    def call(
        cls, name: str, arguments: Dict[str, Any], call_id: Optional[str] = None
    ) -> "AssistantOutput":
        request = ToolInvocationRequest(name=name, arguments=dict(arguments), id=call_id or new_call_id())
        return cls(tool_call=request)


@dataclass(frozen=True)
class Reply:
    text: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "reply", "text": self.text}


@dataclass(frozen=True)
class Suspended:
    suspension: Suspension

    @property
    def suspension_id(self) -> str:
        return self.suspension.id

    @property
    def request(self) -> ToolInvocationRequest:
        return self.suspension.request

    @property
    def allowed_decisions(self) -> FrozenSet[str]:
        return self.suspension.allowed_decisions

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "suspended",
            "suspension_id": self.suspension_id,
            "request": {"name": self.request.name, "arguments": self.request.arguments},
            "allowed_decisions": sorted(self.allowed_decisions),
        }


TurnResult = Union[Reply, Suspended]

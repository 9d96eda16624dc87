"""Error taxonomy surfaced by the mailgate core.

Schema and execution errors are normally recovered inside a turn and turned
into tool-result content. The rest are surfaced to the driver.
"""

from __future__ import annotations


class MailgateError(Exception):
    """Base class for all mailgate errors."""

    kind = "mailgate_error"


class SchemaError(MailgateError):
    """Tool arguments failed validation against the tool's schema."""

    kind = "schema_error"

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"{field}: {reason}" if field else reason)


class ExecutionError(MailgateError):
    """A tool executor failed."""

    kind = "execution_error"


class ToolNotFound(MailgateError):
    """No tool is registered under the requested name."""

    kind = "tool_not_found"

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown tool: {name}")


class ModelUnavailable(MailgateError):
    """The language-model call failed at the transport level."""

    kind = "model_unavailable"


class LoopLimitExceeded(MailgateError):
    """The model kept requesting tools past the per-turn bound."""

    kind = "loop_limit_exceeded"

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"Exceeded {limit} tool calls in a single turn")


class NoMatchingSuspension(MailgateError):
    """Resume was sent with no pending suspension or a mismatched id."""

    kind = "no_matching_suspension"


class SessionSuspended(MailgateError):
    """Submit was called while the session awaits a decision."""

    kind = "session_suspended"

    def __init__(self, suspension_id: str) -> None:
        self.suspension_id = suspension_id
        super().__init__(
            f"Session is awaiting a decision for suspension {suspension_id}"
        )


class DecisionNotAllowed(MailgateError):
    """The decision type is not permitted for the pending suspension."""

    kind = "decision_not_allowed"


class StoreUnavailable(MailgateError):
    """The conversation state store could not be read or written."""

    kind = "store_unavailable"


PROTOCOL_ERRORS = (NoMatchingSuspension, SessionSuspended, DecisionNotAllowed)

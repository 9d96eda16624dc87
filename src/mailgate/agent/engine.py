"""Turn engine: the submit/resume state machine.

A session is either Idle or Suspended on exactly one side-effecting tool
call. ``submit`` starts a turn from Idle; ``resume`` consumes the human
decision for the pending suspension and continues the model loop. Each call
holds the session lock for its whole duration and writes the session back
only at consistent points, so a failed or cancelled turn leaves the stored
session as it was.
"""

import asyncio
import inspect
import json
import logging
from typing import Any, Dict

from ..errors import (
    DecisionNotAllowed,
    ExecutionError,
    LoopLimitExceeded,
    ModelUnavailable,
    NoMatchingSuspension,
    SchemaError,
    SessionSuspended,
    ToolNotFound,
)
from ..models import (
    AssistantOutput,
    Decision,
    Edit,
    Message,
    Reject,
    Reply,
    Session,
    Suspended,
    Suspension,
    ToolInvocationRequest,
    TurnResult,
)
from .context import AgentContext
from .policy import Block

logger = logging.getLogger(__name__)


class TurnEngine:
    """Drives model/tool turns for any number of sessions."""

    def __init__(self, context: AgentContext) -> None:
        self._registry = context.registry
        self._gate = context.gate
        self._store = context.store
        self._model = context.model
        self._max_tool_calls = context.settings.max_tool_calls_per_turn
        self._rejection_message = context.settings.rejection_message

    async def state(self, session_id: str) -> Session:
        """Return a snapshot of the session as currently stored."""
        return await self._store.load(session_id)

    async def submit(self, session_id: str, text: str) -> TurnResult:
        """Start a turn with a fresh user message.

        Raises:
            SessionSuspended: The session awaits a decision; call resume instead.
            ModelUnavailable: The model call failed; nothing was persisted.
            LoopLimitExceeded: Too many tool calls; nothing was persisted.
        """
        async with self._store.lock(session_id):
            session = await self._store.load(session_id)
            if session.pending_suspension is not None:
                raise SessionSuspended(session.pending_suspension.id)

            logger.info("Turn start session=%s (submit)", session_id)
            session.messages.append(Message.user(text))
            result = await self._run_loop(session)
            await self._store.save(session)
            logger.info("Turn end session=%s -> %s", session_id, type(result).__name__)
            return result

    async def resume(self, session_id: str, decision: Decision) -> TurnResult:
        """Apply a human decision to the pending suspension and continue the turn.

        The decision is committed (suspension cleared, tool result recorded)
        as soon as it has been applied, so an approved call never runs twice
        even if the model fails afterwards.

        Raises:
            NoMatchingSuspension: Nothing is pending or the target id differs.
            DecisionNotAllowed: The decision type is not allowed for this call.
            SchemaError: Edited arguments are invalid; the suspension remains.
            ModelUnavailable: The model failed after the decision was committed.
            LoopLimitExceeded: Too many tool calls after the decision was committed.
        """
        async with self._store.lock(session_id):
            session = await self._store.load(session_id)
            suspension = session.pending_suspension
            if suspension is None:
                raise NoMatchingSuspension(f"Session {session_id} has no pending suspension")
            if decision.target_id != suspension.id:
                raise NoMatchingSuspension(
                    f"Decision targets {decision.target_id!r} but pending suspension is {suspension.id!r}"
                )
            if decision.type not in suspension.allowed_decisions:
                raise DecisionNotAllowed(
                    f"{decision.type} is not allowed for {suspension.request.name}; "
                    f"allowed: {sorted(suspension.allowed_decisions)}"
                )

            logger.info(
                "Turn start session=%s (resume %s on %s)",
                session_id,
                decision.type,
                suspension.id,
            )
            session.messages.append(await self._apply_decision(session, suspension, decision))
            session.pending_suspension = None
            await self._store.save(session)

            result = await self._run_loop(session)
            await self._store.save(session)
            logger.info("Turn end session=%s -> %s", session_id, type(result).__name__)
            return result

    async def _apply_decision(
        self, session: Session, suspension: Suspension, decision: Decision
    ) -> Message:
        request = suspension.request
        if isinstance(decision, Reject):
            logger.info("Rejected %s (%s)", request.name, request.id)
            return Message.result(request.id, self._rejection_message)
        if isinstance(decision, Edit):
            arguments = self._registry.validate(request.name, decision.arguments)
            message = await self._execute(session, request.with_arguments(arguments))
            message.content = f"User edited the arguments before running: {json.dumps(arguments)}"
            return message
        return await self._execute(session, request)

    async def _invoke_model(self, session: Session) -> AssistantOutput:
        try:
            return await self._model.invoke(list(session.messages), self._registry.catalog())
        except ModelUnavailable:
            raise
        except (ConnectionError, TimeoutError, OSError) as e:
            logger.warning("Model call failed for session %s: %s", session.session_id, e)
            raise ModelUnavailable(str(e)) from e
        except Exception as e:
            logger.exception("Model raised unexpectedly for session %s: %s", session.session_id, e)
            raise ModelUnavailable(f"{type(e).__name__}: {e}") from e

    async def _run_loop(self, session: Session) -> TurnResult:
        executed = 0
        while True:
            output = await self._invoke_model(session)
            if output.tool_call is None:
                text = output.text or ""
                session.messages.append(Message.assistant(text))
                return Reply(text)

            if executed >= self._max_tool_calls:
                logger.warning(
                    "Session %s exceeded %d tool calls in one turn",
                    session.session_id,
                    self._max_tool_calls,
                )
                raise LoopLimitExceeded(self._max_tool_calls)
            executed += 1

            request = output.tool_call
            try:
                arguments = self._registry.validate(request.name, request.arguments)
            except (ToolNotFound, SchemaError) as e:
                logger.info("Rejected tool call %s (%s): %s", request.name, request.id, e)
                session.messages.append(Message.call(request))
                session.messages.append(
                    Message.result(request.id, {"error": str(e), "kind": e.kind}, is_error=True)
                )
                continue

            request = request.with_arguments(arguments)
            verdict = self._gate.evaluate(request, session)
            session.messages.append(Message.call(request))
            if isinstance(verdict, Block):
                suspension = Suspension(request=request, allowed_decisions=verdict.allowed_decisions)
                session.pending_suspension = suspension
                logger.info(
                    "Suspended session=%s on %s (%s)",
                    session.session_id,
                    request.name,
                    request.id,
                )
                return Suspended(suspension)

            session.messages.append(await self._execute(session, request))

    async def _execute(self, session: Session, request: ToolInvocationRequest) -> Message:
        tool = self._registry.get(request.name)
        logger.info("Executing tool: %s (%s)", request.name, request.id)
        session.tool_calls_count += 1
        try:
            result = await self._call_executor(tool.executor, request.arguments)
        except ExecutionError as e:
            logger.warning("Tool %s failed: %s", request.name, e)
            return Message.result(request.id, {"error": str(e), "kind": e.kind}, is_error=True)
        except Exception as e:
            logger.exception("Tool %s raised unexpectedly: %s", request.name, e)
            return Message.result(
                request.id, {"error": str(e), "kind": ExecutionError.kind}, is_error=True
            )
        logger.debug("Tool %s completed", request.name)
        return Message.result(request.id, result)

    @staticmethod
    async def _call_executor(executor: Any, arguments: Dict[str, Any]) -> Any:
        if inspect.iscoroutinefunction(executor):
            return await executor(**arguments)
        result = await asyncio.to_thread(executor, **arguments)
        if inspect.isawaitable(result):
            result = await result
        return result

import abc
import asyncio
import json
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncContextManager, AsyncIterator, Dict

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import LockError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..errors import StoreUnavailable
from ..models import Message, Session, Suspension, ToolInvocationRequest, utc_now_iso
from ..settings import get_settings
from .redis import RedisCrudService, get_redis_crud_service

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "session:"
LOCK_KEY_PREFIX = "session-lock:"


def _request_to_dict(request: ToolInvocationRequest) -> Dict[str, Any]:
    return {"id": request.id, "name": request.name, "arguments": request.arguments}


def _dict_to_request(data: Dict[str, Any]) -> ToolInvocationRequest:
    return ToolInvocationRequest(
        name=data["name"],
        arguments=dict(data.get("arguments") or {}),
        id=data["id"],
    )


def message_to_dict(message: Message) -> Dict[str, Any]:
    data: Dict[str, Any] = {"role": message.role, "content": message.content}
    if message.tool_call is not None:
        data["tool_call"] = _request_to_dict(message.tool_call)
    if message.role == "tool":
        data["tool_call_id"] = message.tool_call_id
        data["tool_result"] = message.tool_result
        data["is_error"] = message.is_error
    return data


def _dict_to_message(data: Dict[str, Any]) -> Message:
    tool_call = data.get("tool_call")
    return Message(
        role=data["role"],
        content=data.get("content") or "",
        tool_call=_dict_to_request(tool_call) if tool_call else None,
        tool_call_id=data.get("tool_call_id"),
        tool_result=data.get("tool_result"),
        is_error=bool(data.get("is_error", False)),
    )


def suspension_to_dict(suspension: Suspension) -> Dict[str, Any]:
    return {
        "id": suspension.id,
        "request": _request_to_dict(suspension.request),
        "allowed_decisions": sorted(suspension.allowed_decisions),
        "created_at": suspension.created_at,
    }


def session_to_dict(session: Session) -> Dict[str, Any]:
    """Serialize a Session to a JSON-serializable dict."""
    pending = session.pending_suspension
    return {
        "session_id": session.session_id,
        "messages": [message_to_dict(m) for m in session.messages],
        "pending_suspension": suspension_to_dict(pending) if pending else None,
        "tool_calls_count": session.tool_calls_count,
        "created_at": session.created_at,
        "updated_at": session.updated_at,
    }


def dict_to_session(data: Dict[str, Any]) -> Session:
    """Build a Session from a dict produced by session_to_dict."""
    pending = data.get("pending_suspension")
    suspension = None
    if pending:
        suspension = Suspension(
            request=_dict_to_request(pending["request"]),
            allowed_decisions=frozenset(pending.get("allowed_decisions") or []),
            created_at=pending.get("created_at") or utc_now_iso(),
        )
    return Session(
        session_id=data.get("session_id", ""),
        messages=[_dict_to_message(m) for m in data.get("messages", [])],
        pending_suspension=suspension,
        tool_calls_count=int(data.get("tool_calls_count", 0)),
        created_at=data.get("created_at") or utc_now_iso(),
        updated_at=data.get("updated_at") or utc_now_iso(),
    )


def _dumps(session: Session) -> str:
    try:
        return json.dumps(session_to_dict(session), default=str)
    except (TypeError, ValueError) as e:
        logger.warning("Session serialization failed for %s: %s", session.session_id, e)
        raise StoreUnavailable(f"Cannot serialize session {session.session_id}: {e}") from e


def _loads(session_id: str, raw: str) -> Session:
    try:
        return dict_to_session(json.loads(raw))
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        logger.warning("Invalid session data for %s: %s", session_id, e)
        raise StoreUnavailable(f"Corrupt session data for {session_id}: {e}") from e


class SessionStore(abc.ABC):
    """Durable, keyed-by-session record of conversation state.

    ``load`` always returns an independent copy; nothing a caller does to it
    reaches the store until ``save``.
    """

    @abc.abstractmethod
    async def load(self, session_id: str) -> Session:
        """Return the session, creating an empty one for unknown ids."""

    @abc.abstractmethod
    async def save(self, session: Session) -> None:
        """Upsert the full session."""

    @abc.abstractmethod
    def lock(self, session_id: str) -> AsyncContextManager[Any]:
        """Mutual exclusion for one session, held for a whole turn."""

    async def close(self) -> None:
        """Release backend resources."""


class InMemorySessionStore(SessionStore):
    """Process-local store holding serialized snapshots and one lock per key."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def load(self, session_id: str) -> Session:
        raw = self._data.get(session_id)
        if raw is None:
            return Session(session_id=session_id)
        return _loads(session_id, raw)

    async def save(self, session: Session) -> None:
        session.updated_at = utc_now_iso()
        self._data[session.session_id] = _dumps(session)

    def lock(self, session_id: str) -> AsyncContextManager[Any]:
        return self._locks[session_id]


class RedisSessionStore(SessionStore):
    """Sessions stored as JSON documents in Redis with TTL, locked via Redis locks."""

    def __init__(
        self,
        redis_crud: RedisCrudService,
        ttl_seconds: int,
        lock_timeout_seconds: float,
    ) -> None:
        self._redis = redis_crud
        self._ttl = ttl_seconds
        self._lock_timeout = lock_timeout_seconds

    def _key(self, session_id: str) -> str:
        return f"{SESSION_KEY_PREFIX}{session_id}"

    async def load(self, session_id: str) -> Session:
        raw = await self._redis.get(self._key(session_id))
        if raw is None:
            return Session(session_id=session_id)
        return _loads(session_id, raw)

    async def save(self, session: Session) -> None:
        session.updated_at = utc_now_iso()
        await self._redis.set(self._key(session.session_id), _dumps(session), ttl_seconds=self._ttl)

    @asynccontextmanager
    async def _locked(self, session_id: str) -> AsyncIterator[None]:
        lock = self._redis.lock(
            f"{LOCK_KEY_PREFIX}{session_id}",
            timeout=self._lock_timeout,
            blocking_timeout=self._lock_timeout,
        )
        try:
            acquired = await lock.acquire()
        except (RedisConnectionError, RedisTimeoutError, LockError) as e:
            logger.warning("Could not lock session %s: %s", session_id, e)
            raise StoreUnavailable(f"Could not lock session {session_id}: {e}") from e
        if not acquired:
            raise StoreUnavailable(f"Timed out waiting for session lock {session_id}")
        renewer = asyncio.create_task(self._renew(lock, session_id))
        try:
            yield
        finally:
            renewer.cancel()
            try:
                await lock.release()
            except (RedisConnectionError, RedisTimeoutError, LockError) as e:
                logger.warning("Releasing session lock %s failed: %s", session_id, e)

    async def _renew(self, lock: Any, session_id: str) -> None:
        """Reset the lock TTL every third of its timeout while the turn runs."""
        interval = self._lock_timeout / 3
        while True:
            await asyncio.sleep(interval)
            try:
                await lock.reacquire()
            except (RedisConnectionError, RedisTimeoutError, LockError) as e:
                logger.warning("Renewing session lock %s failed: %s", session_id, e)
                return
            logger.debug("Renewed session lock %s", session_id)

    def lock(self, session_id: str) -> AsyncContextManager[Any]:
        return self._locked(session_id)

    async def close(self) -> None:
        await self._redis.close()


async def build_session_store() -> SessionStore:
    """Return a Redis-backed store if redis_url is configured, else an in-memory one."""
    redis_crud = get_redis_crud_service()
    if redis_crud is None:
        logger.info("No redis_url configured; using in-memory session store")
        return InMemorySessionStore()
    await redis_crud.connect()
    settings = get_settings()
    return RedisSessionStore(
        redis_crud=redis_crud,
        ttl_seconds=settings.session_ttl_seconds,
        lock_timeout_seconds=settings.session_lock_timeout_seconds,
    )

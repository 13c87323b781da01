import json
import logging
from typing import Dict

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..exceptions import InvalidStateError, StoreUnavailableError
from ..models import ConversationState, state_from_dict, state_to_dict
from ..settings import get_settings
from .redis import RedisCrudService

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "session:"


class SessionStore:
    """Holds one ConversationState per session id.

    Backed by Redis (with TTL) when a client is given, otherwise by a
    process-local dict. Loaded and saved states are copies, so callers can
    only change the stored state through save().
    """

    def __init__(
        self,
        redis_crud: RedisCrudService | None = None,
        ttl_seconds: int | None = None,
    ) -> None:
        self._redis = redis_crud
        self._ttl = ttl_seconds
        self._local: Dict[str, ConversationState] = {}

    def _key(self, session_id: str) -> str:
        return f"{SESSION_KEY_PREFIX}{session_id}"

    async def load(self, session_id: str) -> ConversationState | None:
        """Return the stored state for session_id, or None if there is none.

        None strictly means "never stored". Raises StoreUnavailableError if
        Redis cannot be read and InvalidStateError if the stored record cannot
        be decoded, so an unreadable session is never mistaken for a new one.
        """
        if self._redis is None:
            state = self._local.get(session_id)
            return state.copy() if state is not None else None
        try:
            raw = await self._redis.get(self._key(session_id), strict=True)
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise StoreUnavailableError(f"Cannot read session {session_id}: {e}") from e
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise InvalidStateError(f"Session {session_id} is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise InvalidStateError(
                f"Session {session_id} holds {type(data).__name__}, not an object"
            )
        return state_from_dict(data)

    async def load_or_create(self, session_id: str) -> ConversationState:
        state = await self.load(session_id)
        if state is None:
            logger.info("New session %s", session_id)
            state = ConversationState(session_id=session_id)
        return state

    async def save(self, state: ConversationState) -> bool:
        """Persist state. Returns True on success."""
        if self._redis is None:
            self._local[state.session_id] = state.copy()
            return True
        ok = await self._redis.set_json(
            self._key(state.session_id), state_to_dict(state), ttl_seconds=self._ttl
        )
        if not ok:
            logger.warning("Failed to persist session %s", state.session_id)
        return ok

    async def delete(self, session_id: str) -> bool:
        """Remove state for session_id. Returns True on success."""
        if self._redis is None:
            self._local.pop(session_id, None)
            return True
        return await self._redis.delete(self._key(session_id))


def get_session_store(redis_crud: RedisCrudService | None = None) -> SessionStore:
    """Build the SessionStore; in-memory unless a connected Redis client is given."""
    settings = get_settings()
    return SessionStore(redis_crud=redis_crud, ttl_seconds=settings.session_ttl_seconds)

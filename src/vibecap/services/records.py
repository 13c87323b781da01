import logging
import time
from typing import Any, Dict

from ..models import ConversationState
from ..settings import get_settings
from .redis import RedisCrudService

logger = logging.getLogger(__name__)

RECORD_KEY_PREFIX = "application:"
USER_KEY_PREFIX = "user:"

# Fields that keep their first stored value.
WRITE_ONCE_FIELDS = ("app_id", "scores")


def build_record(state: ConversationState) -> Dict[str, Any]:
    """Application record for a closed (or closing) session."""
    return {
        "app_id": state.app_id,
        "user_id": state.session_id,
        "startup_name": state.subject_facts.startup_name,
        "startup_pitch": state.subject_facts.pitch_summary,
        "startup_links": list(state.subject_facts.links),
        "responses": list(state.responses),
        "scores": state.scores.as_dict() if state.scores else None,
        "status": state.stage.value,
        "created_at": state.created_at,
        "updated_at": time.time(),
    }


class ApplicationRecordStore:
    """Create-or-update application records keyed by app_id.

    Last write wins on every field except app_id and scores.
    """

    def __init__(
        self,
        redis_crud: RedisCrudService | None = None,
        ttl_seconds: int | None = None,
    ) -> None:
        self._redis = redis_crud
        self._ttl = ttl_seconds
        self._local: Dict[str, Dict[str, Any]] = {}
        self._local_users: Dict[str, str] = {}

    def _key(self, app_id: str) -> str:
        return f"{RECORD_KEY_PREFIX}{app_id}"

    async def get(self, app_id: str) -> Dict[str, Any] | None:
        if self._redis is None:
            record = self._local.get(app_id)
            return dict(record) if record is not None else None
        return await self._redis.get_json(self._key(app_id))

    async def upsert(self, state: ConversationState) -> bool:
        """Write the record for state.app_id. Returns True on success."""
        if state.app_id is None:
            logger.warning("Session %s has no app_id; record not saved", state.session_id)
            return False

        record = build_record(state)
        existing = await self.get(state.app_id)
        if existing is not None:
            for name in WRITE_ONCE_FIELDS:
                if existing.get(name) is not None:
                    record[name] = existing[name]
            record["created_at"] = existing.get("created_at", record["created_at"])

        if self._redis is None:
            self._local[state.app_id] = record
            self._local_users[state.session_id] = state.app_id
            return True
        ok = await self._redis.set_json(self._key(state.app_id), record, ttl_seconds=self._ttl)
        if not ok:
            logger.warning("Failed to save application record %s", state.app_id)
            return False
        logger.info("Application record %s saved", state.app_id)
        if not await self._redis.set(
            f"{USER_KEY_PREFIX}{state.session_id}", state.app_id, ttl_seconds=self._ttl
        ):
            logger.warning(
                "Failed to index application %s for user %s", state.app_id, state.session_id
            )
        return True

    async def latest_app_id(self, user_id: str) -> str | None:
        """App id of the user's most recent application, if any is on file."""
        if self._redis is None:
            return self._local_users.get(user_id)
        return await self._redis.get(f"{USER_KEY_PREFIX}{user_id}")


def get_record_store(redis_crud: RedisCrudService | None = None) -> ApplicationRecordStore:
    """Build the ApplicationRecordStore; in-memory unless a connected Redis client is given."""
    settings = get_settings()
    return ApplicationRecordStore(redis_crud=redis_crud, ttl_seconds=settings.record_ttl_seconds)

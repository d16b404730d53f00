"""Redis-based wizard session storage."""

import logging
from datetime import datetime, timezone
from typing import Optional

from dentalbook.config import settings
from dentalbook.core.scheduling.draft import WizardSession
from dentalbook.infra.redis import get_redis, redis_key


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


logger = logging.getLogger(__name__)

# Session key namespace
SESSION_NAMESPACE = "wizard"


class WizardSessionManager:
    """
    Redis-based storage for booking wizard sessions.

    Key pattern: dentalbook:v1:wizard:{actor_id}:{session_id}

    Sessions are only reachable by their owner and expire after
    wizard_session_ttl. Falls back to process memory when Redis is down.
    """

    def __init__(self):
        """Initialize session manager."""
        self._ttl = settings.wizard_session_ttl
        self._in_memory_fallback: dict[str, tuple[WizardSession, float]] = {}

    def _key(self, actor_id: str, session_id: str) -> str:
        """Generate Redis key."""
        return redis_key(SESSION_NAMESPACE, actor_id, session_id)

    def _store_local(self, session: WizardSession) -> None:
        key = self._key(session.actor_id, session.session_id)
        expires = _utcnow().timestamp() + self._ttl
        self._in_memory_fallback[key] = (session, expires)

    def _get_local(self, actor_id: str, session_id: str) -> Optional[WizardSession]:
        key = self._key(actor_id, session_id)
        entry = self._in_memory_fallback.get(key)
        if entry is None:
            return None
        session, expires = entry
        if expires <= _utcnow().timestamp():
            del self._in_memory_fallback[key]
            return None
        return WizardSession.from_json(session.to_json())

    async def create(self, actor_id: str) -> WizardSession:
        """
        Create a new wizard session.

        Args:
            actor_id: Owner of the session

        Returns:
            Created WizardSession
        """
        session = WizardSession(actor_id=actor_id)

        redis = await get_redis()

        if redis:
            key = self._key(actor_id, session.session_id)
            await redis.setex(key, self._ttl, session.to_json())
            logger.debug(f"Wizard session created: {session.session_id}")
        else:
            self._store_local(session)
            logger.warning(
                f"Redis unavailable, using in-memory fallback for session {session.session_id}"
            )

        return session

    async def get(self, actor_id: str, session_id: str) -> Optional[WizardSession]:
        """
        Get a session owned by actor_id.

        Returns:
            WizardSession or None if not found/expired/not owned
        """
        redis = await get_redis()

        if redis:
            data = await redis.get(self._key(actor_id, session_id))
            if data:
                return WizardSession.from_json(data)
            return None

        return self._get_local(actor_id, session_id)

    async def save(self, session: WizardSession) -> bool:
        """
        Save session and refresh its TTL.

        Returns:
            True if saved successfully
        """
        session.updated_at = _utcnow()

        redis = await get_redis()

        if redis:
            key = self._key(session.actor_id, session.session_id)
            await redis.setex(key, self._ttl, session.to_json())
            logger.debug(f"Wizard session saved: {session.session_id} at {session.step.value}")
            return True

        self._store_local(session)
        return True

    async def delete(self, actor_id: str, session_id: str) -> bool:
        """
        Delete a session.

        Returns:
            True if deleted
        """
        redis = await get_redis()

        if redis:
            deleted = await redis.delete(self._key(actor_id, session_id))
            if deleted:
                logger.debug(f"Wizard session deleted: {session_id}")
            return bool(deleted)

        return self._in_memory_fallback.pop(self._key(actor_id, session_id), None) is not None


# Singleton
_manager: Optional[WizardSessionManager] = None


async def get_wizard_session_manager() -> WizardSessionManager:
    """Get singleton WizardSessionManager."""
    global _manager
    if _manager is None:
        _manager = WizardSessionManager()
    return _manager

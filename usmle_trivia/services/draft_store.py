"""
Draft Store

Keeps the latest SessionSnapshot of each unfinished quiz, keyed by
session id, so it survives a process restart or a failed completion.

Drafts are opaque: a draft that no longer parses is dropped, never
repaired. Once a completion is saved the backend row is authoritative
and the draft is deleted.

Implementations:
- RedisDraftStore: `quiz:draft:<session_id>` keys with a TTL
- InMemoryDraftStore: a dict (DRAFT_STORE=memory and tests)
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from usmle_trivia.core.config import settings
from usmle_trivia.schemas.session import SessionSnapshot

logger = logging.getLogger(__name__)

KEY_PREFIX = "quiz:draft:"


def _parse(session_id: str, raw) -> Optional[SessionSnapshot]:
    try:
        return SessionSnapshot.model_validate_json(raw)
    except ValidationError as e:
        logger.warning(f"Discarding unreadable draft for session {session_id}: {e.error_count()} error(s)")
        return None


class DraftStore(ABC):
    """Storage for session snapshots."""

    @abstractmethod
    async def save(self, snapshot: SessionSnapshot) -> None:
        """Store a snapshot; snapshots without a session id are ignored."""
        pass

    @abstractmethod
    async def load(self, session_id: str) -> Optional[SessionSnapshot]:
        pass

    @abstractmethod
    async def delete(self, session_id: str) -> None:
        pass

    @abstractmethod
    async def list_session_ids(self) -> List[str]:
        """Ids of every stored draft."""
        pass


class InMemoryDraftStore(DraftStore):
    def __init__(self):
        self._drafts: Dict[str, str] = {}

    async def save(self, snapshot: SessionSnapshot) -> None:
        if snapshot.session is None:
            return
        self._drafts[snapshot.session.id] = snapshot.model_dump_json()

    async def load(self, session_id: str) -> Optional[SessionSnapshot]:
        raw = self._drafts.get(session_id)
        if raw is None:
            return None
        snapshot = _parse(session_id, raw)
        if snapshot is None:
            self._drafts.pop(session_id, None)
        return snapshot

    async def delete(self, session_id: str) -> None:
        self._drafts.pop(session_id, None)

    async def list_session_ids(self) -> List[str]:
        return list(self._drafts)


class RedisDraftStore(DraftStore):
    """
    Drafts as JSON strings in Redis.

    Each save refreshes the TTL, so only drafts untouched for
    DRAFT_TTL_SECONDS expire. Redis failures are logged, not raised:
    a quiz keeps running without its draft.
    """

    def __init__(self, redis: Redis, ttl_seconds: Optional[int] = None):
        self.redis = redis
        self.ttl_seconds = ttl_seconds or settings.DRAFT_TTL_SECONDS

    @staticmethod
    def key(session_id: str) -> str:
        return f"{KEY_PREFIX}{session_id}"

    async def save(self, snapshot: SessionSnapshot) -> None:
        if snapshot.session is None:
            return
        try:
            await self.redis.set(
                self.key(snapshot.session.id),
                snapshot.model_dump_json(),
                ex=self.ttl_seconds,
            )
        except RedisError as e:
            logger.warning(f"Draft for session {snapshot.session.id} not saved: {e}")

    async def load(self, session_id: str) -> Optional[SessionSnapshot]:
        try:
            raw = await self.redis.get(self.key(session_id))
        except RedisError as e:
            logger.warning(f"Draft for session {session_id} unavailable: {e}")
            return None
        if raw is None:
            return None
        snapshot = _parse(session_id, raw)
        if snapshot is None:
            await self.delete(session_id)
        return snapshot

    async def delete(self, session_id: str) -> None:
        try:
            await self.redis.delete(self.key(session_id))
        except RedisError as e:
            logger.warning(f"Draft for session {session_id} not deleted: {e}")

    async def list_session_ids(self) -> List[str]:
        ids = []
        try:
            async for key in self.redis.scan_iter(match=f"{KEY_PREFIX}*"):
                if isinstance(key, bytes):
                    key = key.decode("utf-8")
                ids.append(key[len(KEY_PREFIX):])
        except RedisError as e:
            logger.warning(f"Drafts not listed: {e}")
            return []
        return ids


# Module-level store (singleton)
_draft_store: Optional[DraftStore] = None


async def get_draft_store() -> DraftStore:
    """Return the configured draft store (DRAFT_STORE setting)."""
    global _draft_store

    if _draft_store is None:
        if settings.DRAFT_STORE == "redis":
            from usmle_trivia.db.redis import get_redis
            _draft_store = RedisDraftStore(await get_redis())
        else:
            _draft_store = InMemoryDraftStore()

    return _draft_store


def set_draft_store(store: Optional[DraftStore]) -> None:
    global _draft_store
    _draft_store = store

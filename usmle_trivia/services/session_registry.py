"""
Session Registry

Maps session ids to live QuizSessionManagers for this process.
A manager that is not in memory (process restarted, another worker
created it) is rebuilt from its draft on first access. Completed
sessions are released; reads of them go to the backend row.

No cross-process locking: two processes restoring the same draft each
get their own manager. Answer writes are idempotent upserts and a
second completion is a no-op on the backend, so this is safe.
"""

import asyncio
import logging
from typing import Dict, Optional, Set

from usmle_trivia.backend.base import ApplicationError, AuthUser, NotFoundError, QuizBackend
from usmle_trivia.core.retry import OperationFailedError, RetryPolicy
from usmle_trivia.schemas.session import QuizSession, SessionState
from usmle_trivia.services.draft_store import DraftStore
from usmle_trivia.services.quiz_session import QuizSessionError, QuizSessionManager

logger = logging.getLogger(__name__)


class SessionNotFoundError(QuizSessionError):
    pass


class SessionRegistry:
    """In-process registry of quiz session managers."""

    def __init__(
        self,
        backend: QuizBackend,
        draft_store: Optional[DraftStore] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.backend = backend
        self.draft_store = draft_store
        self.retry = retry_policy or RetryPolicy()
        self._managers: Dict[str, QuizSessionManager] = {}
        self._restore_lock = asyncio.Lock()
        self._finishing: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._managers)

    def new_manager(self, user: Optional[AuthUser]) -> QuizSessionManager:
        """A fresh manager bound to the user's credentials (or a guest)."""
        return QuizSessionManager(
            self._backend_for(user),
            retry_policy=self.retry,
            user_id=user.id if user else None,
            draft_store=self.draft_store,
        )

    def _backend_for(self, user: Optional[AuthUser]) -> QuizBackend:
        return self.backend.as_user(user.access_token if user else None)

    def register(self, manager: QuizSessionManager) -> None:
        if manager.session_id is None:
            raise ValueError("only started sessions can be registered")
        self._managers[manager.session_id] = manager

    async def get(self, session_id: str, user: Optional[AuthUser]) -> QuizSessionManager:
        """
        Live manager for a session, restoring it from its draft if needed.

        Raises:
            SessionNotFoundError: Unknown session or owned by someone else
        """
        manager = self._managers.get(session_id)
        if manager is None:
            manager = await self._restore(session_id, user)

        owner = manager.user_id
        if owner is not None and (user is None or user.id != owner):
            raise SessionNotFoundError(f"session {session_id} not found")
        return manager

    async def _restore(self, session_id: str, user: Optional[AuthUser]) -> QuizSessionManager:
        async with self._restore_lock:
            manager = self._managers.get(session_id)
            if manager is not None:
                return manager

            snapshot = None
            if self.draft_store is not None:
                snapshot = await self.draft_store.load(session_id)
            if snapshot is None or snapshot.session is None:
                raise SessionNotFoundError(f"session {session_id} not found")

            if snapshot.user_id is not None and (user is None or user.id != snapshot.user_id):
                raise SessionNotFoundError(f"session {session_id} not found")

            manager = QuizSessionManager.restore(
                snapshot,
                self._backend_for(user),
                retry_policy=self.retry,
                draft_store=self.draft_store,
            )
            self._managers[session_id] = manager
            return manager

    async def discard(self, session_id: str) -> Optional[QuizSessionManager]:
        """
        Cancel a session's pending retries and forget it.

        The draft of an abandoned quiz is dropped; a draft holding an
        unsaved completion is kept for the recovery task.
        """
        manager = self._managers.pop(session_id, None)
        if manager is None:
            return None
        manager.cancel()
        if self.draft_store is not None and manager.state == SessionState.IN_PROGRESS:
            await self.draft_store.delete(session_id)
        return manager

    async def find_completed(
        self, session_id: str, user: Optional[AuthUser]
    ) -> Optional[QuizSession]:
        """
        Backend row of a finished session that is no longer held here.

        Raises:
            RetryError: The backend could not be read
        """
        try:
            session = await self.retry.execute(
                lambda: self._backend_for(user).get_session(session_id),
                operation_name="get_session",
            )
        except OperationFailedError as e:
            # Malformed ids and rows hidden by row-level security
            if isinstance(e.last_error, (ApplicationError, NotFoundError)):
                return None
            raise
        if session is None or not session.is_completed:
            return None
        if session.user_id is not None and (user is None or user.id != session.user_id):
            return None
        return session

    def release(self, manager: QuizSessionManager) -> bool:
        """
        Forget a completed session.

        Its pending stats write keeps running and is still awaited on
        shutdown. Sessions that failed to save stay registered so a later
        read can retry the completion.
        """
        if manager.state != SessionState.COMPLETED:
            return False
        if self._managers.get(manager.session_id) is manager:
            del self._managers[manager.session_id]
        if manager.pending_writes:
            task = asyncio.create_task(manager.flush())
            self._finishing.add(task)
            task.add_done_callback(self._finishing.discard)
        return True

    async def shutdown(self) -> None:
        """Wait for every manager's background writes."""
        managers = list(self._managers.values())
        for manager in managers:
            await manager.flush()
        if self._finishing:
            await asyncio.gather(*list(self._finishing), return_exceptions=True)
        logger.info(f"Session registry flushed {len(managers)} session(s)")
        self._managers.clear()

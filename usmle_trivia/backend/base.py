"""
Backend Adapter Abstract Base Class

Every read and write against the hosted backend goes through a
`QuizBackend`. Services receive one as a constructor argument, so tests
and local development can swap in the in-memory implementation without
touching business logic.

Implementations:
- SupabaseBackend: PostgREST tables/RPCs and GoTrue auth over httpx
- InMemoryBackend: dictionaries, for development and tests
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from usmle_trivia.schemas.question import Question, QuestionFilter, Tag, TagType
from usmle_trivia.schemas.session import (
    AnswerRecord,
    QuizSession,
    SessionDraft,
    SessionSummary,
)
from usmle_trivia.schemas.stats import UserQuestionHistory, UserStats


@dataclass
class AuthUser:
    """
    The user behind a bearer token.

    Attributes:
        id: Auth user id (also the `profiles.id`)
        email: Email address, if the provider returned one
        access_token: Token to forward so row-level security applies
        metadata: Raw `user_metadata` from the auth service
    """
    id: str
    email: Optional[str] = None
    access_token: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


# ============================================================
# Errors
# ============================================================

class BackendError(Exception):
    """
    Base exception for backend operations.

    Attributes:
        operation: Adapter method that failed (e.g. "create_session")
        status_code: HTTP status, when the failure came from a response
        code: Backend error code (PostgREST / Postgres), if any
    """

    def __init__(
        self,
        message: str,
        *,
        operation: Optional[str] = None,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.status_code = status_code
        self.code = code

    def __str__(self) -> str:
        if self.operation:
            return f"{self.operation}: {self.message}"
        return self.message


class BackendNetworkError(BackendError):
    """Transient connectivity failure (DNS, refused, reset, 502/503)."""
    pass


class BackendTimeoutError(BackendError):
    """The request or the gateway timed out."""
    pass


class RateLimitError(BackendError):
    """HTTP 429 from the backend."""
    pass


class AuthError(BackendError):
    """Missing, expired or rejected credentials."""
    pass


class NotFoundError(BackendError):
    """The requested row does not exist."""
    pass


class ApplicationError(BackendError):
    """Unexpected response shape or a constraint violation."""
    pass


class AlreadyCompletedError(BackendError):
    """The session already has `completed_at` set. Not a real failure."""
    pass


# ============================================================
# Adapter Contract
# ============================================================

class QuizBackend(ABC):
    """
    Contract for the hosted backend.

    Implementations must be safe to share between concurrent quiz
    sessions: they hold a network handle, never per-session state.
    """

    def as_user(self, access_token: Optional[str]) -> "QuizBackend":
        """
        Return a handle whose requests run as the given user.

        Default implementation returns self (no per-user credentials).
        """
        return self

    # -----------------------------
    # Auth
    # -----------------------------
    @abstractmethod
    async def authenticate(self, access_token: str) -> AuthUser:
        """
        Resolve a bearer token to a user.

        Raises:
            AuthError: If the token is invalid or expired
        """
        pass

    # -----------------------------
    # Questions
    # -----------------------------
    @abstractmethod
    async def fetch_questions(self, question_filter: QuestionFilter) -> List[Question]:
        """
        Fetch active questions matching the filter.

        Returns at most `question_filter.limit` questions. Order is
        unspecified; callers shuffle.
        """
        pass

    @abstractmethod
    async def count_questions(self, question_filter: QuestionFilter) -> int:
        """Count active questions matching the filter (limit is ignored)."""
        pass

    @abstractmethod
    async def list_tags(self, tag_type: Optional[TagType] = None) -> List[Tag]:
        """List active tags, optionally of one type."""
        pass

    @abstractmethod
    async def fetch_question_history(self, user_id: str) -> List[UserQuestionHistory]:
        """All seen-question rows for a user."""
        pass

    @abstractmethod
    async def record_question_seen(
        self, user_id: str, question_id: str, is_correct: bool
    ) -> None:
        """Upsert the user's history row for one question."""
        pass

    # -----------------------------
    # Sessions
    # -----------------------------
    @abstractmethod
    async def create_session(self, draft: SessionDraft) -> QuizSession:
        """
        Insert a new quiz session.

        Raises:
            ApplicationError: On constraint violation
        """
        pass

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[QuizSession]:
        """Read one session, None if it does not exist."""
        pass

    @abstractmethod
    async def record_answer(self, session_id: str, answer: AnswerRecord) -> None:
        """
        Persist one answer.

        Must be idempotent: the same (session_id, question_id) overwrites
        instead of creating a second row.
        """
        pass

    @abstractmethod
    async def complete_session(
        self, session_id: str, summary: SessionSummary
    ) -> QuizSession:
        """
        Mark a session completed.

        Raises:
            AlreadyCompletedError: If `completed_at` is already set
            NotFoundError: If the session does not exist
        """
        pass

    # -----------------------------
    # Stats / Profiles
    # -----------------------------
    @abstractmethod
    async def get_user_stats(self, user_id: str) -> Optional[UserStats]:
        """Aggregate stats for a user, None if they have none yet."""
        pass

    @abstractmethod
    async def upsert_user_stats(self, stats: UserStats) -> None:
        """Insert or replace the user's stats row."""
        pass

    @abstractmethod
    async def update_profile_progress(self, user_id: str, stats: UserStats) -> None:
        """Mirror points and streaks onto the user's profile."""
        pass

    # -----------------------------
    # Chat
    # -----------------------------
    @abstractmethod
    async def find_or_create_one_to_one_chat(
        self, user_id: str, other_user_id: str
    ) -> str:
        """Return the id of the chat room shared by two users."""
        pass

    # -----------------------------
    # Lifecycle
    # -----------------------------
    async def ping(self) -> bool:
        """Health check. Default implementation assumes healthy."""
        return True

    async def close(self) -> None:
        """Release network resources. Default implementation does nothing."""
        return None

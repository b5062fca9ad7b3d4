"""
Supabase Backend

Production implementation of QuizBackend. Delegates to the table
repositories, all sharing one SupabaseClient (one httpx pool).

Setup:
------
    BACKEND=supabase
    SUPABASE_URL=https://<project-ref>.supabase.co
    SUPABASE_ANON_KEY=<anon key>
"""

import logging
from typing import List, Optional

from usmle_trivia.backend.base import ApplicationError, AuthUser, QuizBackend
from usmle_trivia.db.supabase import SupabaseClient
from usmle_trivia.repositories.quiz_repo import (
    QuestionRepository,
    QuizResponseRepository,
    QuizSessionRepository,
    TagRepository,
)
from usmle_trivia.repositories.user_repo import (
    ProfileRepository,
    QuestionHistoryRepository,
    UserStatsRepository,
)
from usmle_trivia.schemas.question import Question, QuestionFilter, Tag, TagType
from usmle_trivia.schemas.session import (
    AnswerRecord,
    QuizSession,
    SessionDraft,
    SessionSummary,
)
from usmle_trivia.schemas.stats import UserQuestionHistory, UserStats

logger = logging.getLogger(__name__)


class SupabaseBackend(QuizBackend):
    """
    QuizBackend over the Supabase REST API.

    Attributes:
        client: The SupabaseClient every repository uses
    """

    def __init__(self, client: SupabaseClient):
        self.client = client
        self.questions = QuestionRepository(client)
        self.tags = TagRepository(client)
        self.sessions = QuizSessionRepository(client)
        self.responses = QuizResponseRepository(client)
        self.history = QuestionHistoryRepository(client)
        self.stats = UserStatsRepository(client)
        self.profiles = ProfileRepository(client)

    def as_user(self, access_token: Optional[str]) -> "SupabaseBackend":
        if not access_token:
            return self
        return SupabaseBackend(self.client.with_token(access_token))

    # -----------------------------
    # Auth
    # -----------------------------
    async def authenticate(self, access_token: str) -> AuthUser:
        user = await self.client.get_user(access_token)
        return AuthUser(
            id=str(user["id"]),
            email=user.get("email"),
            access_token=access_token,
            metadata=user.get("user_metadata") or {},
        )

    # -----------------------------
    # Questions
    # -----------------------------
    async def fetch_questions(self, question_filter: QuestionFilter) -> List[Question]:
        return await self.questions.fetch(question_filter)

    async def count_questions(self, question_filter: QuestionFilter) -> int:
        return await self.questions.count_matching(question_filter)

    async def list_tags(self, tag_type: Optional[TagType] = None) -> List[Tag]:
        return await self.tags.list_active(tag_type)

    async def fetch_question_history(self, user_id: str) -> List[UserQuestionHistory]:
        return await self.history.get_by_user(user_id)

    async def record_question_seen(
        self, user_id: str, question_id: str, is_correct: bool
    ) -> None:
        await self.history.record_interaction(user_id, question_id, is_correct)

    # -----------------------------
    # Sessions
    # -----------------------------
    async def create_session(self, draft: SessionDraft) -> QuizSession:
        session = await self.sessions.create_session(draft)
        logger.info(
            f"Quiz session created: {session.id} "
            f"({session.session_type.value}, {session.total_questions} questions)"
        )
        return session

    async def get_session(self, session_id: str) -> Optional[QuizSession]:
        return await self.sessions.get_session(session_id)

    async def record_answer(self, session_id: str, answer: AnswerRecord) -> None:
        await self.responses.upsert_answer(session_id, answer)

    async def complete_session(
        self, session_id: str, summary: SessionSummary
    ) -> QuizSession:
        session = await self.sessions.complete(session_id, summary)
        logger.info(
            f"Quiz session completed: {session_id} "
            f"({summary.correct_answers}/{summary.total_questions}, score {summary.score})"
        )
        return session

    # -----------------------------
    # Stats / Profiles
    # -----------------------------
    async def get_user_stats(self, user_id: str) -> Optional[UserStats]:
        return await self.stats.get_for_user(user_id)

    async def upsert_user_stats(self, stats: UserStats) -> None:
        await self.stats.upsert_stats(stats)

    async def update_profile_progress(self, user_id: str, stats: UserStats) -> None:
        await self.profiles.update_progress(user_id, stats)

    # -----------------------------
    # Chat
    # -----------------------------
    async def find_or_create_one_to_one_chat(
        self, user_id: str, other_user_id: str
    ) -> str:
        chat_id = await self.client.rpc(
            "find_or_create_one_to_one_chat",
            {"user1": user_id, "user2": other_user_id},
            operation="find_or_create_one_to_one_chat",
        )
        if not chat_id:
            raise ApplicationError(
                "RPC returned no chat id", operation="find_or_create_one_to_one_chat"
            )
        return str(chat_id)

    # -----------------------------
    # Lifecycle
    # -----------------------------
    async def ping(self) -> bool:
        return await self.client.health()

    async def close(self) -> None:
        await self.client.aclose()

"""
In-Memory Backend

Dictionary-backed QuizBackend for local development (BACKEND=memory)
and tests. Follows the same contract as SupabaseBackend, including the
idempotent answer upsert and the AlreadyCompletedError on a second
completion.
"""

import uuid
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from usmle_trivia.backend.base import (
    AlreadyCompletedError,
    AuthError,
    AuthUser,
    NotFoundError,
    QuizBackend,
)
from usmle_trivia.schemas.question import Question, QuestionFilter, Tag, TagType
from usmle_trivia.schemas.session import (
    AnswerRecord,
    QuizSession,
    SessionDraft,
    SessionSummary,
)
from usmle_trivia.schemas.stats import UserQuestionHistory, UserStats


class InMemoryBackend(QuizBackend):
    """
    QuizBackend held entirely in process memory.

    Nothing is shared between instances. `calls` counts adapter calls
    by operation name so tests can assert on traffic.
    """

    def __init__(
        self,
        questions: Optional[Iterable[Question]] = None,
        tags: Optional[Iterable[Tag]] = None,
    ):
        self.questions: Dict[str, Question] = {}
        self.tags: Dict[str, Tag] = {}
        self.sessions: Dict[str, QuizSession] = {}
        self.answers: Dict[Tuple[str, str], AnswerRecord] = {}
        self.history: Dict[Tuple[str, str], UserQuestionHistory] = {}
        self.stats: Dict[str, UserStats] = {}
        self.profiles: Dict[str, Dict[str, object]] = {}
        self.tokens: Dict[str, AuthUser] = {}
        self.chats: Dict[frozenset, str] = {}
        self.calls: Dict[str, int] = {}

        for question in questions or []:
            self.add_question(question)
        for tag in tags or []:
            self.tags[tag.id] = tag

    # -----------------------------
    # Seeding helpers
    # -----------------------------
    def add_question(self, question: Question) -> None:
        self.questions[question.id] = question

    def add_user(self, user_id: str, token: str, email: Optional[str] = None) -> AuthUser:
        user = AuthUser(id=user_id, email=email, access_token=token)
        self.tokens[token] = user
        return user

    def mark_seen(
        self,
        user_id: str,
        question_id: str,
        last_seen_at: datetime,
        times_seen: int = 1,
        times_correct: int = 0,
    ) -> None:
        self.history[(user_id, question_id)] = UserQuestionHistory(
            user_id=user_id,
            question_id=question_id,
            times_seen=times_seen,
            times_correct=times_correct,
            last_seen_at=last_seen_at,
        )

    def answers_for(self, session_id: str) -> List[AnswerRecord]:
        records = [a for (sid, _), a in self.answers.items() if sid == session_id]
        return sorted(records, key=lambda a: a.response_order)

    def _track(self, operation: str) -> None:
        self.calls[operation] = self.calls.get(operation, 0) + 1

    # -----------------------------
    # Auth
    # -----------------------------
    async def authenticate(self, access_token: str) -> AuthUser:
        self._track("authenticate")
        user = self.tokens.get(access_token)
        if user is None:
            raise AuthError("invalid or expired token", operation="authenticate", status_code=401)
        return user

    # -----------------------------
    # Questions
    # -----------------------------
    def _matching(self, question_filter: QuestionFilter) -> List[Question]:
        tag_ids = set(question_filter.all_tag_ids())
        excluded = set(question_filter.exclude_ids)
        included = (
            set(question_filter.include_ids)
            if question_filter.include_ids is not None
            else None
        )

        matches = []
        for question in self.questions.values():
            if not question.is_active:
                continue
            if tag_ids and not tag_ids.intersection(question.tag_ids):
                continue
            if question_filter.difficulty and question.difficulty != question_filter.difficulty:
                continue
            if question.id in excluded:
                continue
            if included is not None and question.id not in included:
                continue
            matches.append(question)
        return matches

    async def fetch_questions(self, question_filter: QuestionFilter) -> List[Question]:
        self._track("fetch_questions")
        matches = self._matching(question_filter)
        if question_filter.limit is not None:
            matches = matches[: question_filter.limit]
        return [q.model_copy(deep=True) for q in matches]

    async def count_questions(self, question_filter: QuestionFilter) -> int:
        self._track("count_questions")
        return len(self._matching(question_filter))

    async def list_tags(self, tag_type: Optional[TagType] = None) -> List[Tag]:
        self._track("list_tags")
        return [
            tag for tag in self.tags.values()
            if tag.is_active and (tag_type is None or tag.type == tag_type)
        ]

    async def fetch_question_history(self, user_id: str) -> List[UserQuestionHistory]:
        self._track("fetch_question_history")
        return [h for (uid, _), h in self.history.items() if uid == user_id]

    async def record_question_seen(
        self, user_id: str, question_id: str, is_correct: bool
    ) -> None:
        self._track("record_question_seen")
        current = self.history.get((user_id, question_id))
        self.history[(user_id, question_id)] = UserQuestionHistory(
            user_id=user_id,
            question_id=question_id,
            times_seen=(current.times_seen if current else 0) + 1,
            times_correct=(current.times_correct if current else 0) + int(is_correct),
            last_seen_at=datetime.now(timezone.utc),
            last_answered_correctly=is_correct,
        )

    # -----------------------------
    # Sessions
    # -----------------------------
    async def create_session(self, draft: SessionDraft) -> QuizSession:
        self._track("create_session")
        session = QuizSession(id=str(uuid.uuid4()), **draft.model_dump())
        self.sessions[session.id] = session
        return session.model_copy(deep=True)

    async def get_session(self, session_id: str) -> Optional[QuizSession]:
        self._track("get_session")
        session = self.sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def record_answer(self, session_id: str, answer: AnswerRecord) -> None:
        self._track("record_answer")
        if session_id not in self.sessions:
            raise NotFoundError(f"session {session_id} not found", operation="record_answer")
        self.answers[(session_id, answer.question_id)] = answer

    async def complete_session(
        self, session_id: str, summary: SessionSummary
    ) -> QuizSession:
        self._track("complete_session")
        session = self.sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"session {session_id} not found", operation="complete_session")
        if session.is_completed:
            raise AlreadyCompletedError(
                f"session {session_id} already completed", operation="complete_session"
            )
        completed = session.model_copy(
            update={
                "correct_answers": summary.correct_answers,
                "score": summary.score,
                "total_time_seconds": summary.total_time_seconds,
                "completed_at": summary.completed_at,
            }
        )
        self.sessions[session_id] = completed
        return completed.model_copy(deep=True)

    # -----------------------------
    # Stats / Profiles
    # -----------------------------
    async def get_user_stats(self, user_id: str) -> Optional[UserStats]:
        self._track("get_user_stats")
        stats = self.stats.get(user_id)
        return stats.model_copy() if stats else None

    async def upsert_user_stats(self, stats: UserStats) -> None:
        self._track("upsert_user_stats")
        self.stats[stats.user_id] = stats.model_copy()

    async def update_profile_progress(self, user_id: str, stats: UserStats) -> None:
        self._track("update_profile_progress")
        profile = self.profiles.setdefault(user_id, {"id": user_id})
        profile.update(
            total_points=stats.total_points_earned,
            current_streak=stats.current_streak,
            best_streak=stats.longest_streak,
            last_active_date=stats.last_quiz_date,
        )

    # -----------------------------
    # Chat
    # -----------------------------
    async def find_or_create_one_to_one_chat(
        self, user_id: str, other_user_id: str
    ) -> str:
        self._track("find_or_create_one_to_one_chat")
        key = frozenset((user_id, other_user_id))
        if key not in self.chats:
            self.chats[key] = str(uuid.uuid4())
        return self.chats[key]

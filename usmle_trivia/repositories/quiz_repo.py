"""
Quiz Repository

Data access layer for the `questions`, `tags`, `quiz_sessions` and
`quiz_responses` tables.
"""

from typing import Any, Dict, List, Optional, Tuple

from usmle_trivia.backend.base import AlreadyCompletedError, ApplicationError, NotFoundError
from usmle_trivia.db.supabase import SupabaseClient, eq, in_, not_in
from usmle_trivia.repositories.base import BaseRepository
from usmle_trivia.schemas.question import (
    Question,
    QuestionFilter,
    QuestionOption,
    Tag,
    TagType,
)
from usmle_trivia.schemas.session import (
    AnswerRecord,
    QuizSession,
    SessionDraft,
    SessionSummary,
)


def _options_from_row(raw: Any) -> List[QuestionOption]:
    # Older rows store options as a plain list of strings.
    options = []
    for index, option in enumerate(raw or []):
        if isinstance(option, dict):
            options.append(
                QuestionOption(id=str(option.get("id", index)), text=str(option.get("text", "")))
            )
        else:
            options.append(QuestionOption(id=str(index), text=str(option)))
    return options


class QuestionRepository(BaseRepository):
    """Repository for the questions table."""
    table = "questions"

    def __init__(self, client: SupabaseClient):
        super().__init__(client)

    def _query(self, question_filter: QuestionFilter) -> Tuple[str, Optional[Dict[str, Any]]]:
        """
        Translate a QuestionFilter into (columns, filters).

        Returns filters=None when the filter can match nothing, so the
        caller can skip the round trip.
        """
        columns = "*,question_tags(tag_id)"
        filters: Dict[str, Any] = {"is_active": "eq.true"}

        tag_ids = question_filter.all_tag_ids()
        if tag_ids:
            columns = "*,question_tags!inner(tag_id)"
            filters["question_tags.tag_id"] = in_(tag_ids)

        if question_filter.difficulty:
            filters["difficulty"] = eq(question_filter.difficulty.value)

        excluded = set(question_filter.exclude_ids)
        if question_filter.include_ids is not None:
            allowed = [qid for qid in question_filter.include_ids if qid not in excluded]
            if not allowed:
                return columns, None
            filters["id"] = in_(allowed)
        elif excluded:
            filters["id"] = not_in(sorted(excluded))

        return columns, filters

    def _to_question(self, row: Dict[str, Any]) -> Question:
        row = dict(row)
        tags = row.pop("question_tags", None) or []
        row["tag_ids"] = [str(t["tag_id"]) for t in tags if t.get("tag_id")]
        row["options"] = _options_from_row(row.get("options"))
        return self.parse(Question, row, "fetch_questions")

    async def fetch(self, question_filter: QuestionFilter) -> List[Question]:
        columns, filters = self._query(question_filter)
        if filters is None:
            return []
        rows = await self.client.select(
            self.table,
            columns=columns,
            filters=filters,
            limit=question_filter.limit,
            operation="fetch_questions",
        )
        return [self._to_question(row) for row in rows]

    async def count_matching(self, question_filter: QuestionFilter) -> int:
        columns, filters = self._query(question_filter)
        if filters is None:
            return 0
        columns = "id,question_tags!inner(tag_id)" if "!inner" in columns else "id"
        return await self.client.count(
            self.table, columns=columns, filters=filters, operation="count_questions"
        )


class TagRepository(BaseRepository):
    """Repository for the tags table."""
    table = "tags"
    columns = "id,name,slug,type,is_active"

    def __init__(self, client: SupabaseClient):
        super().__init__(client)

    async def list_active(self, tag_type: Optional[TagType] = None) -> List[Tag]:
        filters: Dict[str, Any] = {"is_active": "eq.true"}
        if tag_type:
            filters["type"] = eq(tag_type.value)
        rows = await self.get_all(filters=filters, limit=None, order_by="order_index.asc")
        return [self.parse(Tag, row, "list_tags") for row in rows]


class QuizSessionRepository(BaseRepository):
    """Repository for the quiz_sessions table."""
    table = "quiz_sessions"

    def __init__(self, client: SupabaseClient):
        super().__init__(client)

    def _to_session(self, row: Dict[str, Any], operation: str) -> QuizSession:
        row = dict(row)
        row["question_ids"] = [str(q) for q in (row.get("question_ids") or [])]
        row["settings"] = row.get("settings") or {}
        row["correct_answers"] = row.get("correct_answers") or 0
        row["score"] = row.get("score") or 0
        return self.parse(QuizSession, row, operation)

    async def create_session(self, draft: SessionDraft) -> QuizSession:
        rows = await self.client.insert(
            self.table,
            [draft.model_dump(mode="json")],
            operation="create_session",
        )
        if not rows:
            raise ApplicationError("insert returned no session row", operation="create_session")
        return self._to_session(rows[0], "create_session")

    async def get_session(self, session_id: str) -> Optional[QuizSession]:
        row = await self.get_by_id(session_id)
        return self._to_session(row, "get_session") if row else None

    async def complete(self, session_id: str, summary: SessionSummary) -> QuizSession:
        """
        Set completion fields, guarded by `completed_at is null`.

        When the guarded update matches nothing, a follow-up read tells
        "already completed" apart from "missing" (or hidden by RLS).
        """
        values = {
            "correct_answers": summary.correct_answers,
            "score": summary.score,
            "total_time_seconds": summary.total_time_seconds,
            "completed_at": summary.completed_at.isoformat(),
        }
        rows = await self.client.update(
            self.table,
            values,
            filters={"id": eq(session_id), "completed_at": "is.null"},
            operation="complete_session",
        )
        if rows:
            return self._to_session(rows[0], "complete_session")

        existing = await self.get_session(session_id)
        if existing is None:
            raise NotFoundError(f"session {session_id} not found", operation="complete_session")
        if existing.is_completed:
            raise AlreadyCompletedError(
                f"session {session_id} already completed", operation="complete_session"
            )
        raise ApplicationError(
            f"session {session_id} could not be updated", operation="complete_session"
        )


class QuizResponseRepository(BaseRepository):
    """Repository for the quiz_responses table."""
    table = "quiz_responses"

    def __init__(self, client: SupabaseClient):
        super().__init__(client)

    async def upsert_answer(self, session_id: str, answer: AnswerRecord) -> None:
        row = {
            "session_id": session_id,
            "question_id": answer.question_id,
            "selected_option_id": answer.selected_option_id,
            "is_correct": answer.is_correct,
            "time_spent_seconds": round(answer.time_taken_ms / 1000),
            "response_order": answer.response_order,
            "answered_at": answer.answered_at.isoformat(),
        }
        await self.client.upsert(
            self.table,
            [row],
            on_conflict="session_id,question_id",
            operation="record_answer",
        )

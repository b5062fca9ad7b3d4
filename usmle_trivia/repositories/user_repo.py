"""
User Repository

Data access layer for per-user progress:
`user_question_history`, `user_stats` and `profiles`.
"""

from typing import Any, Dict, List, Optional

from usmle_trivia.db.supabase import SupabaseClient, eq
from usmle_trivia.repositories.base import BaseRepository
from usmle_trivia.schemas.stats import UserQuestionHistory, UserStats

# get_user_stats has returned differently named columns over time
_STATS_ALIASES = {
    "total_questions_attempted": "total_questions_answered",
    "accuracy_percentage": "overall_accuracy",
    "total_points": "total_points_earned",
    "best_streak": "longest_streak",
}


def normalize_stats_row(row: Dict[str, Any]) -> Dict[str, Any]:
    normalized = dict(row)
    for old, new in _STATS_ALIASES.items():
        if old in normalized and new not in normalized:
            normalized[new] = normalized.pop(old)
    if normalized.get("overall_accuracy") is not None:
        normalized["overall_accuracy"] = max(0, min(100, round(float(normalized["overall_accuracy"]))))
    return {k: v for k, v in normalized.items() if v is not None}


class QuestionHistoryRepository(BaseRepository):
    """Repository for the user_question_history table."""
    table = "user_question_history"
    columns = "user_id,question_id,times_seen,times_correct,last_seen_at,last_answered_correctly"

    def __init__(self, client: SupabaseClient):
        super().__init__(client)

    async def get_by_user(self, user_id: str) -> List[UserQuestionHistory]:
        rows = await self.get_all(
            filters={"user_id": eq(user_id)},
            limit=None,
            order_by="last_seen_at.asc.nullsfirst",
        )
        return [
            self.parse(UserQuestionHistory, row, "fetch_question_history")
            for row in rows
        ]

    async def record_interaction(
        self, user_id: str, question_id: str, is_correct: bool
    ) -> None:
        # The RPC bumps times_seen/times_correct atomically server-side
        await self.client.rpc(
            "record_question_interaction",
            {
                "p_user_id": user_id,
                "p_question_id": question_id,
                "p_answered_correctly": is_correct,
            },
            operation="record_question_seen",
        )


class UserStatsRepository(BaseRepository):
    """Repository for the user_stats table."""
    table = "user_stats"

    def __init__(self, client: SupabaseClient):
        super().__init__(client)

    async def get_for_user(self, user_id: str) -> Optional[UserStats]:
        data = await self.client.rpc(
            "get_user_stats", {"p_user_id": user_id}, operation="get_user_stats"
        )
        if isinstance(data, list):
            data = data[0] if data else None
        if not data:
            return None
        row = normalize_stats_row(data)
        row.setdefault("user_id", user_id)
        return self.parse(UserStats, row, "get_user_stats")

    async def upsert_stats(self, stats: UserStats) -> None:
        await self.client.upsert(
            self.table,
            [stats.model_dump(mode="json")],
            on_conflict="user_id",
            operation="upsert_user_stats",
        )


class ProfileRepository(BaseRepository):
    """Repository for the profiles table."""
    table = "profiles"

    def __init__(self, client: SupabaseClient):
        super().__init__(client)

    async def update_progress(self, user_id: str, stats: UserStats) -> None:
        values: Dict[str, Any] = {
            "total_points": stats.total_points_earned,
            "current_streak": stats.current_streak,
            "best_streak": stats.longest_streak,
        }
        if stats.last_quiz_date:
            values["last_active_date"] = stats.last_quiz_date.isoformat()
        await self.client.update(
            self.table,
            values,
            filters={"id": eq(user_id)},
            operation="update_profile_progress",
        )

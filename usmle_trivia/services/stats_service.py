"""
Stats Service

Folds a completed session into the user's aggregate stats and mirrors
points and streaks onto their profile.

Best effort: a failure here is logged and never changes the outcome of
the quiz that triggered it.
"""

import asyncio
import logging
from datetime import date
from typing import Optional

from usmle_trivia.backend.base import QuizBackend
from usmle_trivia.core.retry import RetryError, RetryPolicy
from usmle_trivia.schemas.session import SessionSummary
from usmle_trivia.schemas.stats import UserStats

logger = logging.getLogger(__name__)


def merge_session(
    previous: Optional[UserStats],
    user_id: str,
    summary: SessionSummary,
) -> UserStats:
    """
    Return stats with one more completed session counted.

    Streak counts consecutive days with at least one completed quiz:
    same day keeps it, the next day extends it, a gap resets it to 1.
    """
    stats = previous.model_copy() if previous else UserStats(user_id=user_id)
    quiz_date: date = summary.completed_at.date()

    stats.total_quizzes_completed += 1
    stats.total_questions_answered += summary.total_questions
    stats.total_correct_answers += summary.correct_answers
    stats.total_points_earned += summary.score
    stats.total_time_spent_seconds += summary.total_time_seconds
    stats.best_quiz_score = max(stats.best_quiz_score, summary.score)

    if stats.total_questions_answered:
        stats.overall_accuracy = round(
            stats.total_correct_answers / stats.total_questions_answered * 100
        )

    last = stats.last_quiz_date
    if last is None:
        stats.current_streak = 1
    else:
        days = (quiz_date - last).days
        if days <= 0:
            stats.current_streak = max(stats.current_streak, 1)
        elif days == 1:
            stats.current_streak += 1
        else:
            stats.current_streak = 1
    stats.longest_streak = max(stats.longest_streak, stats.current_streak)

    if last is None or quiz_date > last:
        stats.last_quiz_date = quiz_date

    return stats


class StatsService:
    """Reads and updates user_stats through the backend adapter."""

    def __init__(self, backend: QuizBackend, retry_policy: RetryPolicy):
        self.backend = backend
        self.retry = retry_policy

    async def get_stats(self, user_id: str) -> UserStats:
        """Current stats; an all-zero row for users who never finished a quiz."""
        stats = await self.retry.execute(
            lambda: self.backend.get_user_stats(user_id),
            operation_name="get_user_stats",
        )
        return stats or UserStats(user_id=user_id)

    async def record_completion(
        self,
        user_id: str,
        summary: SessionSummary,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Optional[UserStats]:
        """
        Merge a completed session into the user's stats.

        Returns the new stats, or None if they could not be saved.
        """
        try:
            previous = await self.retry.execute(
                lambda: self.backend.get_user_stats(user_id),
                operation_name="get_user_stats",
                cancel_event=cancel_event,
            )
            stats = merge_session(previous, user_id, summary)
            await self.retry.execute(
                lambda: self.backend.upsert_user_stats(stats),
                operation_name="upsert_user_stats",
                cancel_event=cancel_event,
            )
        except RetryError as e:
            logger.warning(f"Stats update skipped for {user_id}: {e}")
            return None

        try:
            await self.retry.execute(
                lambda: self.backend.update_profile_progress(user_id, stats),
                operation_name="update_profile_progress",
                cancel_event=cancel_event,
            )
        except RetryError as e:
            logger.warning(f"Profile progress not updated for {user_id}: {e}")

        logger.info(
            f"Stats updated for {user_id}: {stats.total_quizzes_completed} quizzes, "
            f"streak {stats.current_streak}"
        )
        return stats

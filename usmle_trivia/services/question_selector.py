"""
Unseen-Question Selector

Biases selection away from questions a user has already seen.
Best effort: if excluding seen questions leaves too few candidates, the
gap is backfilled with seen questions, oldest `last_seen_at` first.
"""

import asyncio
import logging
import random
from datetime import datetime, timezone
from typing import List, Optional

from usmle_trivia.backend.base import QuizBackend
from usmle_trivia.core.retry import OperationFailedError, RetryPolicy
from usmle_trivia.schemas.question import Question, QuestionFilter
from usmle_trivia.schemas.stats import UserQuestionHistory

logger = logging.getLogger(__name__)

# Over-fetch so the shuffle has something to work with
OVERFETCH_FACTOR = 2

_NEVER = datetime.min.replace(tzinfo=timezone.utc)


def _seen_order_key(row: UserQuestionHistory) -> datetime:
    return row.last_seen_at or _NEVER


class QuestionSelector:
    """
    Picks question ids for a new session.

    Every backend call goes through the retry policy; a failed history
    lookup degrades to a plain shuffled fetch instead of failing.
    """

    def __init__(
        self,
        backend: QuizBackend,
        retry_policy: RetryPolicy,
        rng: Optional[random.Random] = None,
    ):
        self.backend = backend
        self.retry = retry_policy
        self.rng = rng or random.Random()

    async def select_questions(
        self,
        user_id: Optional[str],
        question_filter: QuestionFilter,
        count: int,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[str]:
        questions = await self.select(user_id, question_filter, count, cancel_event)
        return [q.id for q in questions]

    async def select(
        self,
        user_id: Optional[str],
        question_filter: QuestionFilter,
        count: int,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[Question]:
        """
        Return up to `count` questions, unseen first.

        Fewer than `count` only when the backend has fewer matching
        active questions.

        Raises:
            OperationFailedError: Question fetch failed after retries
            OperationCancelledError: cancel_event was set
        """
        if count < 1:
            return []

        history: List[UserQuestionHistory] = []
        if user_id:
            try:
                history = await self.retry.execute(
                    lambda: self.backend.fetch_question_history(user_id),
                    operation_name="fetch_question_history",
                    cancel_event=cancel_event,
                )
            except OperationFailedError as e:
                logger.warning(
                    f"Question history unavailable for {user_id}, selecting without it: {e}"
                )

        seen = sorted(
            (row for row in history if row.times_seen > 0), key=_seen_order_key
        )
        seen_ids = [row.question_id for row in seen]

        unseen_filter = question_filter.model_copy(
            update={
                "exclude_ids": sorted(set(question_filter.exclude_ids) | set(seen_ids)),
                "limit": count * OVERFETCH_FACTOR,
            }
        )
        candidates = await self._fetch(unseen_filter, cancel_event)
        self.rng.shuffle(candidates)
        selected = candidates[:count]

        shortfall = count - len(selected)
        if shortfall > 0 and seen_ids:
            backfill = await self._backfill(
                question_filter, seen_ids, shortfall, cancel_event
            )
            logger.info(
                f"Backfilled {len(backfill)} seen question(s) for {user_id} "
                f"({len(selected)} unseen available)"
            )
            selected.extend(backfill)

        if len(selected) < count:
            logger.warning(
                f"Only {len(selected)} of {count} requested questions available"
            )
        return selected

    async def _backfill(
        self,
        question_filter: QuestionFilter,
        seen_ids: List[str],
        needed: int,
        cancel_event: Optional[asyncio.Event],
    ) -> List[Question]:
        backfill_filter = question_filter.model_copy(
            update={"include_ids": seen_ids, "limit": None}
        )
        by_id = {q.id: q for q in await self._fetch(backfill_filter, cancel_event)}
        # seen_ids is already oldest-first
        ordered = [by_id[qid] for qid in seen_ids if qid in by_id]
        return ordered[:needed]

    async def _fetch(
        self,
        question_filter: QuestionFilter,
        cancel_event: Optional[asyncio.Event],
    ) -> List[Question]:
        return await self.retry.execute(
            lambda: self.backend.fetch_questions(question_filter),
            operation_name="fetch_questions",
            cancel_event=cancel_event,
        )

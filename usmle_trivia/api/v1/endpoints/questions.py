"""
Question Endpoints

Lookups the custom quiz setup screen needs.

Endpoints:
----------
- GET /questions/count  - Active questions matching a category / difficulty
- GET /tags             - Active subject / system / topic tags
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from usmle_trivia.api.deps import backend_http_error, get_retry_policy, get_user_backend
from usmle_trivia.backend.base import QuizBackend
from usmle_trivia.core.retry import RetryError, RetryPolicy
from usmle_trivia.schemas.question import Difficulty, QuestionFilter, Tag, TagType
from usmle_trivia.schemas.quiz import QuestionCountResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Questions"])


@router.get(
    "/questions/count",
    response_model=QuestionCountResponse,
    summary="Count available questions",
)
async def count_questions(
    category_id: Optional[str] = Query(None, description="Tag id, or 'mixed'"),
    difficulty: Optional[Difficulty] = Query(None),
    backend: QuizBackend = Depends(get_user_backend),
    retry: RetryPolicy = Depends(get_retry_policy),
):
    if category_id is not None and not category_id.strip():
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="category must not be empty",
        )
    if category_id == "mixed":
        category_id = None

    question_filter = QuestionFilter(category_id=category_id, difficulty=difficulty)
    try:
        count = await retry.execute(
            lambda: backend.count_questions(question_filter),
            operation_name="count_questions",
        )
    except RetryError as e:
        raise backend_http_error(e)
    return QuestionCountResponse(count=count)


@router.get(
    "/tags",
    response_model=List[Tag],
    summary="List tags",
)
async def list_tags(
    type: Optional[TagType] = Query(None, description="subject, system or topic"),
    backend: QuizBackend = Depends(get_user_backend),
    retry: RetryPolicy = Depends(get_retry_policy),
):
    try:
        return await retry.execute(
            lambda: backend.list_tags(type),
            operation_name="list_tags",
        )
    except RetryError as e:
        raise backend_http_error(e)

"""
Stats Endpoints

- GET /users/me/stats - Aggregate quiz stats for the signed-in user
"""

from fastapi import APIRouter, Depends

from usmle_trivia.api.deps import (
    backend_http_error,
    get_current_user,
    get_retry_policy,
    get_user_backend,
)
from usmle_trivia.backend.base import AuthUser, QuizBackend
from usmle_trivia.core.retry import RetryError, RetryPolicy
from usmle_trivia.schemas.stats import UserStats
from usmle_trivia.services.stats_service import StatsService

router = APIRouter(tags=["Stats"])


@router.get(
    "/users/me/stats",
    response_model=UserStats,
    summary="Get my stats",
    description="All counters are zero until the first quiz is completed.",
)
async def get_my_stats(
    current_user: AuthUser = Depends(get_current_user),
    backend: QuizBackend = Depends(get_user_backend),
    retry: RetryPolicy = Depends(get_retry_policy),
):
    try:
        return await StatsService(backend, retry).get_stats(current_user.id)
    except RetryError as e:
        raise backend_http_error(e)

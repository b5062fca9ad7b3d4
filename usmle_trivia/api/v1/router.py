from fastapi import APIRouter
from usmle_trivia.api.v1.endpoints import quiz_sessions, questions, stats, chats

# ============================================================
# Main API v1 Router
# ============================================================

api_router = APIRouter()

# Quiz sessions at /quiz-sessions
api_router.include_router(
    quiz_sessions.router,
    prefix=""  # Routes define their own prefixes (/quiz-sessions, /quiz-sessions/{id}/answers)
)

# Custom quiz setup lookups
api_router.include_router(
    questions.router,
    prefix=""  # Routes define their own prefixes (/questions/count, /tags)
)

api_router.include_router(
    stats.router,
    prefix=""  # /users/me/stats
)

api_router.include_router(
    chats.router,
    prefix="/chats"
)

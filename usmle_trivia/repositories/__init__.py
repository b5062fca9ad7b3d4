from usmle_trivia.repositories.base import BaseRepository
from usmle_trivia.repositories.quiz_repo import (
    QuestionRepository,
    TagRepository,
    QuizSessionRepository,
    QuizResponseRepository,
)
from usmle_trivia.repositories.user_repo import (
    QuestionHistoryRepository,
    UserStatsRepository,
    ProfileRepository,
)

__all__ = [
    "BaseRepository",
    "QuestionRepository",
    "TagRepository",
    "QuizSessionRepository",
    "QuizResponseRepository",
    "QuestionHistoryRepository",
    "UserStatsRepository",
    "ProfileRepository",
]

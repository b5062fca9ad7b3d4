"""
User Statistics Schemas

Per-question history used to steer selection away from repeats, and
the aggregate counters shown on profile and leaderboard views.
"""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class UserQuestionHistory(BaseModel):
    """A row from `user_question_history`."""
    user_id: str
    question_id: str
    times_seen: int = Field(default=0, ge=0)
    times_correct: int = Field(default=0, ge=0)
    last_seen_at: Optional[datetime] = None
    last_answered_correctly: Optional[bool] = None

    @field_validator("user_id", "question_id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return str(v)


class UserStats(BaseModel):
    """A row from `user_stats` (one per user)."""
    user_id: str
    total_quizzes_completed: int = 0
    total_questions_answered: int = 0
    total_correct_answers: int = 0
    total_points_earned: int = 0
    total_time_spent_seconds: int = 0
    overall_accuracy: int = Field(default=0, ge=0, le=100)
    best_quiz_score: int = 0
    current_streak: int = 0
    longest_streak: int = 0
    last_quiz_date: Optional[date] = None

    @field_validator("user_id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return str(v)

    class Config:
        from_attributes = True

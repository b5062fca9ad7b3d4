"""
Quiz Session Schemas

Models for a quiz attempt: the configuration a user picks, the row
persisted in `quiz_sessions`, per-question answer records, the
completion summary and the draft snapshot kept while a quiz runs.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from usmle_trivia.schemas.question import Difficulty, Question


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# Enums
# ============================================================

class SessionType(str, Enum):
    QUICK = "quick"
    CUSTOM = "custom"
    TIMED = "timed"
    SELF_PACED = "self_paced"


class SessionState(str, Enum):
    CONFIGURING = "configuring"
    LOADING = "loading"
    IN_PROGRESS = "in_progress"
    COMPLETING = "completing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({SessionState.COMPLETED, SessionState.FAILED})


# ============================================================
# Configuration
# ============================================================

class QuizConfig(BaseModel):
    """
    What the user chose before starting.

    Bounds are enforced by the session manager, not here, so an
    out-of-range count surfaces as a ConfigurationError instead of a
    generic validation failure.
    """
    session_type: SessionType = SessionType.QUICK
    question_count: Optional[int] = Field(
        default=None,
        description="Required for custom/self-paced; fixed for quick and timed"
    )
    category_id: Optional[str] = Field(
        default=None,
        description="Tag id to draw questions from; omit for mixed"
    )
    difficulty: Optional[Difficulty] = None
    time_per_question: Optional[int] = Field(default=None, ge=5, le=600)
    auto_advance: bool = False
    show_explanations: bool = True

    def settings_payload(self) -> Dict[str, Any]:
        """Free-form settings stored on the session row."""
        return {
            "time_per_question": self.time_per_question,
            "auto_advance": self.auto_advance,
            "show_explanations": self.show_explanations,
            "category_id": self.category_id,
            "difficulty": self.difficulty.value if self.difficulty else None,
        }


# ============================================================
# Backend Rows
# ============================================================

class SessionDraft(BaseModel):
    """Insert payload for a new `quiz_sessions` row."""
    user_id: Optional[str] = None
    session_type: SessionType
    question_ids: List[str]
    total_questions: int = Field(ge=1)
    started_at: datetime = Field(default_factory=utcnow)
    settings: Dict[str, Any] = Field(default_factory=dict)


class QuizSession(BaseModel):
    """A persisted quiz session."""
    id: str
    user_id: Optional[str] = None
    session_type: SessionType
    question_ids: List[str] = Field(default_factory=list)
    total_questions: int
    correct_answers: int = 0
    score: int = 0
    total_time_seconds: Optional[int] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    settings: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return str(v)

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    class Config:
        from_attributes = True


class AnswerRecord(BaseModel):
    """
    One answer within a session. Created once, never mutated.

    `selected_option_id` is None when the question was skipped or the
    per-question timer ran out.
    """
    session_id: str
    question_id: str
    selected_option_id: Optional[str] = None
    is_correct: bool
    time_taken_ms: int = Field(default=0, ge=0)
    response_order: int = Field(ge=0)
    timed_out: bool = False
    answered_at: datetime = Field(default_factory=utcnow)


class SessionSummary(BaseModel):
    """What gets written to the session row on completion."""
    correct_answers: int = Field(ge=0)
    total_questions: int = Field(ge=0)
    score: int = Field(ge=0)
    total_time_seconds: int = Field(default=0, ge=0)
    completed_at: datetime = Field(default_factory=utcnow)


# ============================================================
# Draft Snapshot
# ============================================================

class SessionSnapshot(BaseModel):
    """
    Opaque, serializable copy of a manager's in-memory state.

    Not a source of truth once completion succeeds; the format is not
    guaranteed stable across versions.
    """
    version: int = 1
    state: SessionState
    failed_stage: Optional[SessionState] = None
    user_id: Optional[str] = None
    config: QuizConfig
    session: Optional[QuizSession] = None
    questions: List[Question] = Field(default_factory=list)
    answers: List[AnswerRecord] = Field(default_factory=list)
    summary: Optional[SessionSummary] = None
    saved_at: datetime = Field(default_factory=utcnow)

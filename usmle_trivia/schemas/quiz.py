"""
Quiz Schemas

Pydantic models for the quiz session API: requests, and the views the
client renders. Correct answers only appear after a question has been
answered.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from usmle_trivia.schemas.question import Difficulty, QuestionOption
from usmle_trivia.schemas.session import SessionState, SessionType


# ============================================================
# Request Schemas
# ============================================================

class StartSessionRequest(BaseModel):
    """Configuration for a new quiz."""
    session_type: SessionType = Field(
        default=SessionType.QUICK,
        description="quick (10), timed (20), custom / self_paced (1-40)"
    )
    question_count: Optional[int] = Field(
        None,
        description="Required for custom and self_paced quizzes"
    )
    category_id: Optional[str] = Field(
        None,
        description="Subject, system or topic tag id; omit or 'mixed' for all"
    )
    difficulty: Optional[Difficulty] = None
    time_per_question: Optional[int] = Field(None, ge=5, le=600)
    auto_advance: bool = False
    show_explanations: bool = True


class SubmitAnswerRequest(BaseModel):
    question_id: str
    selected_option_id: Optional[str] = Field(
        None,
        description="None records the question as unanswered"
    )
    elapsed_ms: int = Field(0, ge=0)


class SkipQuestionRequest(BaseModel):
    question_id: Optional[str] = Field(
        None,
        description="Defaults to the current question"
    )
    elapsed_ms: int = Field(0, ge=0)


class OneToOneChatRequest(BaseModel):
    other_user_id: str = Field(..., min_length=1)


# ============================================================
# Response Schemas
# ============================================================

class QuestionResponse(BaseModel):
    """A question as shown before it is answered."""
    id: str
    question_text: str
    options: List[QuestionOption]
    difficulty: Difficulty
    points: int


class AnswerFeedback(BaseModel):
    question_id: str
    selected_option_id: Optional[str] = None
    is_correct: bool
    correct_option_id: str
    explanation: Optional[str] = None
    timed_out: bool = False
    response_order: int


class QuizStateResponse(BaseModel):
    """Everything the client needs to render the current step."""
    session_id: Optional[str] = None
    session_type: SessionType
    state: SessionState
    current_index: int
    total_questions: int
    answered: int
    correct_answers: int
    score: Optional[int] = None
    results_saved: Optional[bool] = Field(
        None,
        description="False when the quiz finished but the results could not be saved"
    )
    current_question: Optional[QuestionResponse] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None


class SubmitAnswerResponse(BaseModel):
    feedback: AnswerFeedback
    quiz: QuizStateResponse


class QuestionCountResponse(BaseModel):
    count: int


class ChatRoomResponse(BaseModel):
    chat_id: str

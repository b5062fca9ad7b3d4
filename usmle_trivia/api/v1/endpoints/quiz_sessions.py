"""
Quiz Session Endpoints

HTTP API over QuizSessionManager.

Endpoints:
----------
- POST   /quiz-sessions                  - Start a quiz
- GET    /quiz-sessions/{session_id}     - Current state (restores from draft)
- POST   /quiz-sessions/{session_id}/answers - Answer the current question
- POST   /quiz-sessions/{session_id}/skip    - Skip / time out the current question
- DELETE /quiz-sessions/{session_id}     - Abandon the quiz

Guests may play without a token; their sessions are not linked to a
user and no history or stats are written.
"""

import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response, status
from redis.exceptions import RedisError

from usmle_trivia.api.deps import get_optional_user, get_registry
from usmle_trivia.backend.base import AuthUser
from usmle_trivia.core.config import settings
from usmle_trivia.db.redis import get_arq_pool
from usmle_trivia.schemas.quiz import (
    AnswerFeedback,
    QuestionResponse,
    QuizStateResponse,
    SkipQuestionRequest,
    StartSessionRequest,
    SubmitAnswerRequest,
    SubmitAnswerResponse,
)
from usmle_trivia.core.retry import RetryError
from usmle_trivia.schemas.session import (
    AnswerRecord,
    QuizConfig,
    QuizSession,
    SessionState,
    SessionType,
)
from usmle_trivia.services.quiz_session import (
    ConfigurationError,
    InvalidAnswerError,
    InvalidStateError,
    QuizSessionManager,
    SessionLoadError,
    UnknownQuestionError,
)
from usmle_trivia.services.session_registry import SessionNotFoundError, SessionRegistry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Quiz Sessions"])


# ============================================================
# VIEW HELPERS
# ============================================================

def quiz_state(manager: QuizSessionManager) -> QuizStateResponse:
    current = manager.current_question
    session = manager.session
    error = None
    if manager.state == SessionState.FAILED:
        if manager.failed_stage == SessionState.COMPLETING:
            error = "Your results may not be saved. We will keep trying in the background."
        else:
            error = "The quiz could not be loaded."

    return QuizStateResponse(
        session_id=manager.session_id,
        session_type=manager.config.session_type if manager.config else SessionType.QUICK,
        state=manager.state,
        current_index=manager.current_index,
        total_questions=len(manager.questions),
        answered=len(manager.answers),
        correct_answers=manager.correct_answers,
        score=manager.summary.score if manager.summary else None,
        results_saved=manager.results_saved,
        current_question=QuestionResponse(
            id=current.id,
            question_text=current.question_text,
            options=current.options,
            difficulty=current.difficulty,
            points=current.points,
        ) if current else None,
        error=error,
        started_at=session.started_at if session else None,
    )


def completed_state(session: QuizSession) -> QuizStateResponse:
    """State of a finished quiz read back from its backend row."""
    return QuizStateResponse(
        session_id=session.id,
        session_type=session.session_type,
        state=SessionState.COMPLETED,
        current_index=session.total_questions,
        total_questions=session.total_questions,
        answered=session.total_questions,
        correct_answers=session.correct_answers,
        score=session.score,
        results_saved=True,
        started_at=session.started_at,
    )


def answer_feedback(manager: QuizSessionManager, record: AnswerRecord) -> AnswerFeedback:
    question = manager.question(record.question_id)
    show_explanations = manager.config.show_explanations if manager.config else True
    return AnswerFeedback(
        question_id=record.question_id,
        selected_option_id=record.selected_option_id,
        is_correct=record.is_correct,
        correct_option_id=question.correct_option_id,
        explanation=question.explanation if show_explanations else None,
        timed_out=record.timed_out,
        response_order=record.response_order,
    )


async def _get_manager(
    session_id: str,
    user: Optional[AuthUser],
    registry: SessionRegistry,
) -> QuizSessionManager:
    try:
        return await registry.get(session_id, user)
    except SessionNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Quiz session not found",
        )


async def _finished_session_state(
    session_id: str,
    user: Optional[AuthUser],
    registry: SessionRegistry,
) -> QuizStateResponse:
    try:
        session = await registry.find_completed(session_id, user)
    except RetryError as e:
        logger.warning(f"Could not read session {session_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="The quiz could not be loaded. Please try again.",
            headers={"Retry-After": "5"},
        )
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Quiz session not found",
        )
    return completed_state(session)


def _answer_error(e: Exception) -> HTTPException:
    if isinstance(e, InvalidStateError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


async def _schedule_recovery(manager: QuizSessionManager) -> None:
    """
    Queue an early recovery run when a completion could not be saved.

    The worker cron picks the draft up anyway; this only shortens the wait.
    """
    if manager.results_saved is not False or settings.DRAFT_STORE != "redis":
        return
    try:
        pool = await get_arq_pool()
        await pool.enqueue_job(
            "recover_pending_completions_task",
            _defer_by=timedelta(seconds=settings.RECOVERY_DEFER_SECONDS),
        )
        logger.info(f"Recovery queued for session {manager.session_id}")
    except (RedisError, OSError) as e:
        logger.warning(f"Could not queue recovery for {manager.session_id}: {e}")


# ============================================================
# START
# ============================================================

@router.post(
    "/quiz-sessions",
    response_model=QuizStateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a quiz",
    description="""
    Selects questions (unseen first for signed-in users) and creates the
    session. Quick quizzes have 10 questions, timed quizzes 20, custom and
    self-paced quizzes 1 to 40.
    """,
)
async def start_session(
    request: StartSessionRequest,
    user: Optional[AuthUser] = Depends(get_optional_user),
    registry: SessionRegistry = Depends(get_registry),
):
    manager = registry.new_manager(user)
    try:
        await manager.start(QuizConfig(**request.model_dump()))
    except ConfigurationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        )
    except SessionLoadError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="The quiz could not be loaded. Please try again.",
            headers={"Retry-After": "5"} if e.retryable else None,
        )

    registry.register(manager)
    return quiz_state(manager)


# ============================================================
# GET STATE
# ============================================================

@router.get(
    "/quiz-sessions/{session_id}",
    response_model=QuizStateResponse,
    summary="Get quiz state",
    description="""
    Returns the current step. Saving the results of a finished quiz is
    retried here when it failed earlier. Finished quizzes are read back
    from the backend.
    """,
)
async def get_session_state(
    session_id: str,
    user: Optional[AuthUser] = Depends(get_optional_user),
    registry: SessionRegistry = Depends(get_registry),
):
    try:
        manager = await registry.get(session_id, user)
    except SessionNotFoundError:
        return await _finished_session_state(session_id, user, registry)

    if manager.state == SessionState.COMPLETING or manager.results_saved is False:
        await manager.finish_completion()
    registry.release(manager)
    return quiz_state(manager)


# ============================================================
# ANSWER / SKIP
# ============================================================

@router.post(
    "/quiz-sessions/{session_id}/answers",
    response_model=SubmitAnswerResponse,
    summary="Answer the current question",
)
async def submit_answer(
    session_id: str,
    request: SubmitAnswerRequest,
    user: Optional[AuthUser] = Depends(get_optional_user),
    registry: SessionRegistry = Depends(get_registry),
):
    manager = await _get_manager(session_id, user, registry)
    try:
        record = await manager.submit_answer(
            request.question_id,
            request.selected_option_id,
            request.elapsed_ms,
        )
    except (InvalidStateError, UnknownQuestionError, InvalidAnswerError) as e:
        raise _answer_error(e)

    await _schedule_recovery(manager)
    response = SubmitAnswerResponse(
        feedback=answer_feedback(manager, record),
        quiz=quiz_state(manager),
    )
    registry.release(manager)
    return response


@router.post(
    "/quiz-sessions/{session_id}/skip",
    response_model=SubmitAnswerResponse,
    summary="Skip the current question",
    description="Records the question as unanswered, as when the per-question timer runs out.",
)
async def skip_question(
    session_id: str,
    request: SkipQuestionRequest,
    user: Optional[AuthUser] = Depends(get_optional_user),
    registry: SessionRegistry = Depends(get_registry),
):
    manager = await _get_manager(session_id, user, registry)
    try:
        record = await manager.skip_question(request.question_id, request.elapsed_ms)
    except (InvalidStateError, UnknownQuestionError) as e:
        raise _answer_error(e)

    await _schedule_recovery(manager)
    response = SubmitAnswerResponse(
        feedback=answer_feedback(manager, record),
        quiz=quiz_state(manager),
    )
    registry.release(manager)
    return response


# ============================================================
# ABANDON
# ============================================================

@router.delete(
    "/quiz-sessions/{session_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Abandon a quiz",
    description="Stops pending retries. Answers already saved are kept.",
)
async def abandon_session(
    session_id: str,
    user: Optional[AuthUser] = Depends(get_optional_user),
    registry: SessionRegistry = Depends(get_registry),
):
    await _get_manager(session_id, user, registry)
    await registry.discard(session_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)

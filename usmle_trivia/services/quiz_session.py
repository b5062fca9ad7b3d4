"""
Quiz Session Manager

Drives one quiz attempt through its states:

    configuring -> loading -> in_progress -> completing -> completed
                      |                          |
                      +--------> failed <--------+

- start(): validates the config, selects questions and creates the
  session row. Both backend calls are awaited.
- submit_answer() / skip_question(): one answer per question, in order.
  Scoring happens locally; the backend write runs as a background task
  and the in-memory record stays authoritative if it fails.
- The last answer triggers completion: the summary is written (awaited),
  then user stats are updated in the background.

A manager is single use. Completed and failed are terminal, except that
a snapshot taken after a failed completion can be restored into a new
manager that retries it (finish_completion).
"""

import asyncio
import logging
from typing import Coroutine, Dict, List, Optional, Set

from usmle_trivia.backend.base import AlreadyCompletedError, QuizBackend
from usmle_trivia.core.config import settings
from usmle_trivia.core.retry import (
    ErrorClass,
    OperationCancelledError,
    OperationFailedError,
    RetryError,
    RetryPolicy,
)
from usmle_trivia.schemas.question import Question, QuestionFilter
from usmle_trivia.schemas.session import (
    TERMINAL_STATES,
    AnswerRecord,
    QuizConfig,
    QuizSession,
    SessionDraft,
    SessionSnapshot,
    SessionState,
    SessionSummary,
    SessionType,
)
from usmle_trivia.services.draft_store import DraftStore
from usmle_trivia.services.question_selector import QuestionSelector
from usmle_trivia.services.stats_service import StatsService

logger = logging.getLogger(__name__)

# Inclusive bounds for types where the user picks the count
QUESTION_COUNT_BOUNDS = {
    SessionType.CUSTOM: (1, 40),
    SessionType.SELF_PACED: (1, 40),
}

FIXED_QUESTION_COUNTS = {
    SessionType.QUICK: 10,
    SessionType.TIMED: 20,
}

MIXED_CATEGORY = "mixed"

RETRYABLE_CLASSES = frozenset(
    {ErrorClass.NETWORK, ErrorClass.TIMEOUT, ErrorClass.RATE_LIMIT}
)


# ============================================================
# Errors
# ============================================================

class QuizSessionError(Exception):
    pass


class ConfigurationError(QuizSessionError):
    """Invalid quiz setup. The manager stays in configuring."""
    pass


class SessionLoadError(QuizSessionError):
    """
    Loading failed after retries; the manager is now failed.

    Attributes:
        retryable: True when the cause was transient, so starting a new
            attempt later may work
    """

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class InvalidStateError(QuizSessionError):
    pass


class UnknownQuestionError(QuizSessionError):
    pass


class InvalidAnswerError(QuizSessionError):
    pass


# ============================================================
# Configuration
# ============================================================

def resolve_question_count(config: QuizConfig) -> int:
    """
    Number of questions to request for a config.

    Raises:
        ConfigurationError: Count missing or out of bounds for the type
    """
    session_type = config.session_type

    if session_type in FIXED_QUESTION_COUNTS:
        fixed = FIXED_QUESTION_COUNTS[session_type]
        if config.question_count is not None and config.question_count != fixed:
            raise ConfigurationError(
                f"{session_type.value} quizzes always have {fixed} questions"
            )
        return fixed

    low, high = QUESTION_COUNT_BOUNDS[session_type]
    if config.question_count is None:
        raise ConfigurationError(f"question_count is required for {session_type.value} quizzes")
    if not low <= config.question_count <= high:
        raise ConfigurationError(
            f"question_count must be between {low} and {high} for {session_type.value} quizzes"
        )
    return config.question_count


def build_question_filter(config: QuizConfig) -> QuestionFilter:
    """
    Raises:
        ConfigurationError: Category id is blank
    """
    category_id = config.category_id
    if category_id is not None:
        category_id = category_id.strip()
        if not category_id:
            raise ConfigurationError("category must not be empty")
        if category_id == MIXED_CATEGORY:
            category_id = None
    return QuestionFilter(category_id=category_id, difficulty=config.difficulty)


# ============================================================
# Manager
# ============================================================

class QuizSessionManager:
    """
    State machine for a single quiz attempt.

    Safe to drive from concurrent requests: answers are serialized by
    an asyncio lock, so a double submit is recorded once.
    """

    def __init__(
        self,
        backend: QuizBackend,
        selector: Optional[QuestionSelector] = None,
        retry_policy: Optional[RetryPolicy] = None,
        *,
        user_id: Optional[str] = None,
        draft_store: Optional[DraftStore] = None,
        stats_service: Optional[StatsService] = None,
        scoring_rules: Optional[Dict[str, str]] = None,
    ):
        self.backend = backend
        self.retry = retry_policy or RetryPolicy()
        self.selector = selector or QuestionSelector(backend, self.retry)
        self.stats_service = stats_service or StatsService(backend, self.retry)
        self.draft_store = draft_store
        self.scoring_rules = scoring_rules or settings.SCORING_RULES
        self.user_id = user_id

        self.state = SessionState.CONFIGURING
        self.failed_stage: Optional[SessionState] = None
        self.error: Optional[BaseException] = None
        self.config: Optional[QuizConfig] = None
        self.session: Optional[QuizSession] = None
        self.questions: List[Question] = []
        self.answers: List[AnswerRecord] = []
        self.summary: Optional[SessionSummary] = None

        self.cancel_event = asyncio.Event()
        self._lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()

    # -----------------------------
    # Read-only views
    # -----------------------------
    @property
    def session_id(self) -> Optional[str]:
        return self.session.id if self.session else None

    @property
    def current_index(self) -> int:
        return len(self.answers)

    @property
    def current_question(self) -> Optional[Question]:
        if self.state != SessionState.IN_PROGRESS:
            return None
        if self.current_index >= len(self.questions):
            return None
        return self.questions[self.current_index]

    @property
    def correct_answers(self) -> int:
        return sum(1 for answer in self.answers if answer.is_correct)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def results_saved(self) -> Optional[bool]:
        """None until completion has been attempted."""
        if self.state == SessionState.COMPLETED:
            return True
        if self.state == SessionState.FAILED and self.failed_stage == SessionState.COMPLETING:
            return False
        return None

    def question(self, question_id: str) -> Question:
        for question in self.questions:
            if question.id == question_id:
                return question
        raise UnknownQuestionError(f"question {question_id} is not part of this session")

    def answer_for(self, question_id: str) -> Optional[AnswerRecord]:
        for answer in self.answers:
            if answer.question_id == question_id:
                return answer
        return None

    # ============================================================
    # CONFIGURING -> LOADING -> IN_PROGRESS
    # ============================================================

    async def start(self, config: QuizConfig) -> QuizSession:
        """
        Select questions and create the session row.

        Raises:
            ConfigurationError: Bad config or no matching questions
                (state stays configuring)
            SessionLoadError: Backend failed after retries (state failed)
            InvalidStateError: Called twice on one manager
        """
        if self.state != SessionState.CONFIGURING:
            raise InvalidStateError(f"cannot start a session in state {self.state.value}")

        count = resolve_question_count(config)
        question_filter = build_question_filter(config)

        self.config = config
        self.state = SessionState.LOADING
        logger.info(
            f"Loading {config.session_type.value} quiz ({count} questions) "
            f"for {self.user_id or 'guest'}"
        )

        try:
            questions = await self.selector.select(
                self.user_id, question_filter, count, self.cancel_event
            )
        except RetryError as e:
            raise self._load_failed(e) from e

        if not questions:
            self.state = SessionState.CONFIGURING
            raise ConfigurationError("no active questions match the selected category and difficulty")

        draft = SessionDraft(
            user_id=self.user_id,
            session_type=config.session_type,
            question_ids=[q.id for q in questions],
            total_questions=len(questions),
            settings=config.settings_payload(),
        )
        try:
            session = await self.retry.execute(
                lambda: self.backend.create_session(draft),
                operation_name="create_session",
                cancel_event=self.cancel_event,
            )
        except RetryError as e:
            raise self._load_failed(e) from e

        self.session = session
        self.questions = questions
        self.state = SessionState.IN_PROGRESS
        await self._save_draft()
        return session

    def _load_failed(self, error: RetryError) -> SessionLoadError:
        self._fail(SessionState.LOADING, error)
        retryable = (
            isinstance(error, OperationFailedError)
            and error.error_class in RETRYABLE_CLASSES
        )
        logger.error(f"Quiz load failed: {error}")
        return SessionLoadError(f"could not load quiz: {error}", retryable=retryable)

    def _fail(self, stage: SessionState, error: BaseException) -> None:
        self.state = SessionState.FAILED
        self.failed_stage = stage
        self.error = error

    # ============================================================
    # IN_PROGRESS
    # ============================================================

    async def submit_answer(
        self,
        question_id: str,
        selected_option_id: Optional[str],
        elapsed_ms: int = 0,
        *,
        timed_out: bool = False,
    ) -> AnswerRecord:
        """
        Record the answer to the current question.

        A second submit for an answered question returns the first
        record unchanged.

        Raises:
            InvalidStateError: Not in progress, or answering out of order
            UnknownQuestionError: Question not in this session
            InvalidAnswerError: Option not offered for this question
        """
        async with self._lock:
            existing = self.answer_for(question_id)
            if existing is not None:
                logger.debug(f"Ignoring repeat answer for question {question_id}")
                return existing

            if self.state != SessionState.IN_PROGRESS:
                raise InvalidStateError(f"cannot answer in state {self.state.value}")

            question = self.question(question_id)
            expected = self.questions[self.current_index]
            if question.id != expected.id:
                raise InvalidStateError(
                    f"expected an answer for question {expected.id}, got {question_id}"
                )
            if selected_option_id is not None and selected_option_id not in question.option_ids():
                raise InvalidAnswerError(
                    f"option {selected_option_id} is not offered for question {question_id}"
                )

            record = AnswerRecord(
                session_id=self.session.id,
                question_id=question.id,
                selected_option_id=selected_option_id,
                is_correct=(
                    selected_option_id is not None
                    and selected_option_id == question.correct_option_id
                ),
                time_taken_ms=max(0, int(elapsed_ms)),
                response_order=self.current_index,
                timed_out=timed_out,
            )
            self.answers.append(record)
            self._spawn(self._persist_answer(record))

            if len(self.answers) == len(self.questions):
                await self._complete()
            else:
                await self._save_draft()

            return record

    async def skip_question(
        self, question_id: Optional[str] = None, elapsed_ms: int = 0
    ) -> AnswerRecord:
        """Record the current question as unanswered (timer ran out or skipped)."""
        if question_id is None:
            current = self.current_question
            if current is None:
                raise InvalidStateError(f"no question to skip in state {self.state.value}")
            question_id = current.id
        return await self.submit_answer(question_id, None, elapsed_ms, timed_out=True)

    async def _persist_answer(self, record: AnswerRecord) -> None:
        session_id = record.session_id
        try:
            await self.retry.execute(
                lambda: self.backend.record_answer(session_id, record),
                operation_name="record_answer",
                cancel_event=self.cancel_event,
            )
        except RetryError as e:
            logger.warning(
                f"Answer to question {record.question_id} in session {session_id} not saved: {e}"
            )
            return

        if not self.user_id:
            return
        user_id = self.user_id
        try:
            await self.retry.execute(
                lambda: self.backend.record_question_seen(
                    user_id, record.question_id, record.is_correct
                ),
                operation_name="record_question_seen",
                cancel_event=self.cancel_event,
            )
        except RetryError as e:
            logger.warning(f"Question history for {record.question_id} not updated: {e}")

    # ============================================================
    # COMPLETING
    # ============================================================

    def compute_score(self) -> int:
        """
        Score per the scoring rule for this session type.

        points:   sum of `points` over correctly answered questions
        accuracy: percentage of questions answered correctly
        """
        session_type = self.config.session_type if self.config else SessionType.QUICK
        rule = self.scoring_rules.get(session_type.value, "points")
        total = len(self.questions)

        if rule == "accuracy":
            return round(self.correct_answers / total * 100) if total else 0

        points = {q.id: q.points for q in self.questions}
        return sum(points.get(a.question_id, 0) for a in self.answers if a.is_correct)

    def build_summary(self) -> SessionSummary:
        return SessionSummary(
            correct_answers=self.correct_answers,
            total_questions=len(self.questions),
            score=self.compute_score(),
            total_time_seconds=round(sum(a.time_taken_ms for a in self.answers) / 1000),
        )

    async def _complete(self) -> None:
        self.state = SessionState.COMPLETING
        if self.summary is None:
            self.summary = self.build_summary()
        session_id = self.session.id
        summary = self.summary
        saved_here = True

        try:
            await self.retry.execute(
                lambda: self.backend.complete_session(session_id, summary),
                operation_name="complete_session",
                cancel_event=self.cancel_event,
            )
        except OperationFailedError as e:
            if not isinstance(e.last_error, AlreadyCompletedError):
                await self._completion_failed(e)
                return
            # Whoever completed it also applied the stats
            saved_here = False
            logger.info(f"Session {session_id} was already completed")
        except OperationCancelledError as e:
            await self._completion_failed(e)
            return

        self.state = SessionState.COMPLETED
        self.failed_stage = None
        self.error = None
        logger.info(
            f"Session {session_id} completed: {summary.correct_answers}/"
            f"{summary.total_questions} correct, score {summary.score}"
        )

        if self.user_id and saved_here:
            self._spawn(self.stats_service.record_completion(self.user_id, summary))
        await self._delete_draft()

    async def _completion_failed(self, error: RetryError) -> None:
        self._fail(SessionState.COMPLETING, error)
        logger.error(f"Results for session {self.session_id} may not be saved: {error}")
        await self._save_draft()

    async def finish_completion(self) -> SessionState:
        """
        Retry a completion restored from a draft, or one that failed earlier.

        A completion finished meanwhile by a concurrent call is returned as is.

        Raises:
            InvalidStateError: No completion is pending
        """
        async with self._lock:
            if self.state == SessionState.COMPLETED:
                return self.state
            if self.state != SessionState.COMPLETING and self.results_saved is not False:
                raise InvalidStateError(
                    f"nothing to complete in state {self.state.value}"
                )
            await self._complete()
            return self.state

    # ============================================================
    # Cancellation / Background work
    # ============================================================

    def cancel(self) -> None:
        """
        Abort pending retry waits. Writes already sent are not undone.
        """
        if not self.cancel_event.is_set():
            logger.info(f"Session {self.session_id or '(unstarted)'} cancelled")
        self.cancel_event.set()

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background write for session {self.session_id} crashed: {error!r}")

    @property
    def pending_writes(self) -> int:
        return len(self._tasks)

    async def flush(self) -> None:
        """Wait for every background write started so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ============================================================
    # Drafts
    # ============================================================

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            state=self.state,
            failed_stage=self.failed_stage,
            user_id=self.user_id,
            config=self.config or QuizConfig(),
            session=self.session,
            questions=self.questions,
            answers=self.answers,
            summary=self.summary,
        )

    @classmethod
    def restore(
        cls,
        snapshot: SessionSnapshot,
        backend: QuizBackend,
        selector: Optional[QuestionSelector] = None,
        retry_policy: Optional[RetryPolicy] = None,
        *,
        draft_store: Optional[DraftStore] = None,
        stats_service: Optional[StatsService] = None,
        scoring_rules: Optional[Dict[str, str]] = None,
    ) -> "QuizSessionManager":
        """
        Rebuild a manager from a snapshot.

        A failed completion comes back as completing so that
        finish_completion() can retry it. A load that never finished
        comes back as configuring.
        """
        manager = cls(
            backend,
            selector,
            retry_policy,
            user_id=snapshot.user_id,
            draft_store=draft_store,
            stats_service=stats_service,
            scoring_rules=scoring_rules,
        )
        manager.config = snapshot.config
        manager.session = snapshot.session
        manager.questions = list(snapshot.questions)
        manager.answers = sorted(snapshot.answers, key=lambda a: a.response_order)
        manager.summary = snapshot.summary

        state = snapshot.state
        if snapshot.session is None or state == SessionState.LOADING:
            state = SessionState.CONFIGURING
        elif state == SessionState.FAILED and snapshot.failed_stage == SessionState.COMPLETING:
            state = SessionState.COMPLETING
        elif state == SessionState.FAILED:
            manager.failed_stage = snapshot.failed_stage
        elif state == SessionState.IN_PROGRESS and len(manager.answers) >= len(manager.questions):
            state = SessionState.COMPLETING
        manager.state = state

        logger.info(
            f"Restored session {manager.session_id} in state {state.value} "
            f"({len(manager.answers)}/{len(manager.questions)} answered)"
        )
        return manager

    async def _save_draft(self) -> None:
        if self.draft_store is None or self.session is None:
            return
        await self.draft_store.save(self.snapshot())

    async def _delete_draft(self) -> None:
        if self.draft_store is None or self.session is None:
            return
        await self.draft_store.delete(self.session.id)

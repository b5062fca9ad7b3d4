import os

# Settings are read at import time
os.environ.setdefault("BACKEND", "memory")
os.environ.setdefault("DRAFT_STORE", "memory")
os.environ.setdefault("RETRY_JITTER_MS", "0")

from typing import Dict, List

import pytest

from usmle_trivia.backend.memory import InMemoryBackend
from usmle_trivia.core.retry import ErrorClass, RetryConfig, RetryPolicy
from usmle_trivia.schemas.question import Difficulty, Question, QuestionOption, Tag, TagType


CARDIOLOGY = "tag-cardio"
NEUROLOGY = "tag-neuro"

USER_ID = "user-1"
USER_TOKEN = "token-1"
OTHER_USER_ID = "user-2"
OTHER_USER_TOKEN = "token-2"


def make_question(index: int, tag_id: str = CARDIOLOGY, points: int = 1, **kwargs) -> Question:
    """Question q<index> with options a-d; the correct answer is always "b"."""
    return Question(
        id=f"q{index}",
        question_text=f"Question {index}?",
        options=[QuestionOption(id=o, text=f"Option {o}") for o in "abcd"],
        correct_option_id="b",
        explanation=f"Explanation {index}",
        difficulty=kwargs.pop("difficulty", Difficulty.MEDIUM),
        points=points,
        tag_ids=[tag_id],
        **kwargs,
    )


def seeded_backend(cardiology: int = 30, neurology: int = 30) -> InMemoryBackend:
    questions = [make_question(i, CARDIOLOGY) for i in range(cardiology)]
    questions += [make_question(1000 + i, NEUROLOGY) for i in range(neurology)]
    backend = InMemoryBackend(
        questions=questions,
        tags=[
            Tag(id=CARDIOLOGY, name="Cardiology", slug="cardiology", type=TagType.SUBJECT),
            Tag(id=NEUROLOGY, name="Neurology", slug="neurology", type=TagType.SUBJECT),
        ],
    )
    backend.add_user(USER_ID, USER_TOKEN, email="student@example.com")
    backend.add_user(OTHER_USER_ID, OTHER_USER_TOKEN, email="other@example.com")
    return backend


class FlakyBackend(InMemoryBackend):
    """
    InMemoryBackend that raises scripted errors.

    `failures[operation]` is a list of exceptions raised, in order, by
    the next calls to that operation before it starts succeeding.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.failures: Dict[str, List[BaseException]] = {}
        self.attempts: Dict[str, int] = {}

    def fail(self, operation: str, *errors: BaseException) -> None:
        self.failures.setdefault(operation, []).extend(errors)

    def _maybe_fail(self, operation: str) -> None:
        self.attempts[operation] = self.attempts.get(operation, 0) + 1
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)

    async def fetch_questions(self, question_filter):
        self._maybe_fail("fetch_questions")
        return await super().fetch_questions(question_filter)

    async def fetch_question_history(self, user_id):
        self._maybe_fail("fetch_question_history")
        return await super().fetch_question_history(user_id)

    async def create_session(self, draft):
        self._maybe_fail("create_session")
        return await super().create_session(draft)

    async def record_answer(self, session_id, answer):
        self._maybe_fail("record_answer")
        return await super().record_answer(session_id, answer)

    async def complete_session(self, session_id, summary):
        self._maybe_fail("complete_session")
        return await super().complete_session(session_id, summary)

    async def upsert_user_stats(self, stats):
        self._maybe_fail("upsert_user_stats")
        return await super().upsert_user_stats(stats)


def flaky_backend(cardiology: int = 30, neurology: int = 30) -> FlakyBackend:
    source = seeded_backend(cardiology, neurology)
    backend = FlakyBackend(questions=source.questions.values(), tags=source.tags.values())
    backend.tokens = source.tokens
    return backend


def fast_retry_policy() -> RetryPolicy:
    """Default retry budgets with every delay set to zero."""
    return RetryPolicy(
        configs={
            ErrorClass.NETWORK: RetryConfig(max_retries=2, base_delay_ms=0, max_delay_ms=0),
            ErrorClass.TIMEOUT: RetryConfig(max_retries=2, base_delay_ms=0, max_delay_ms=0),
            ErrorClass.RATE_LIMIT: RetryConfig(max_retries=3, base_delay_ms=0, max_delay_ms=0),
        },
        jitter_ms=0,
    )


@pytest.fixture
def backend():
    return seeded_backend()


@pytest.fixture
def flaky():
    return flaky_backend()


@pytest.fixture
def retry_policy():
    return fast_retry_policy()

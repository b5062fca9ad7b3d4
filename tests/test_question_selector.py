import asyncio
import random
from datetime import datetime, timedelta, timezone

import pytest

from usmle_trivia.backend.base import ApplicationError, BackendNetworkError
from usmle_trivia.core.retry import OperationFailedError
from usmle_trivia.schemas.question import Difficulty, QuestionFilter
from usmle_trivia.services.question_selector import QuestionSelector

from conftest import (
    CARDIOLOGY,
    NEUROLOGY,
    USER_ID,
    fast_retry_policy,
    flaky_backend,
    make_question,
    seeded_backend,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _selector(backend, seed=3):
    return QuestionSelector(backend, fast_retry_policy(), rng=random.Random(seed))


def test_unseen_questions_come_first_then_oldest_seen():
    # 10 matching questions; the user has seen 7 of them
    backend = seeded_backend(cardiology=10, neurology=5)
    seen_at = {
        "q3": NOW - timedelta(days=1),
        "q4": NOW - timedelta(days=30),
        "q5": NOW - timedelta(days=7),
        "q6": NOW - timedelta(days=2),
        "q7": NOW - timedelta(days=60),
        "q8": NOW - timedelta(days=3),
        "q9": NOW - timedelta(days=10),
    }
    for qid, when in seen_at.items():
        backend.mark_seen(USER_ID, qid, when)

    selected = asyncio.run(
        _selector(backend).select_questions(USER_ID, QuestionFilter(category_id=CARDIOLOGY), 10)
    )

    assert len(selected) == 10
    assert set(selected[:3]) == {"q0", "q1", "q2"}
    # Backfill: least recently seen first
    assert selected[3:] == ["q7", "q4", "q9", "q5", "q8", "q6", "q3"]


def test_partial_backfill_takes_the_oldest_seen():
    backend = seeded_backend(cardiology=10, neurology=0)
    for i in range(3, 10):
        backend.mark_seen(USER_ID, f"q{i}", NOW - timedelta(days=i))

    selected = asyncio.run(_selector(backend).select_questions(USER_ID, QuestionFilter(), 5))

    assert set(selected[:3]) == {"q0", "q1", "q2"}
    assert selected[3:] == ["q9", "q8"]


def test_no_duplicates_and_never_more_than_requested():
    backend = seeded_backend(cardiology=30, neurology=0)
    for i in range(25):
        backend.mark_seen(USER_ID, f"q{i}", NOW - timedelta(hours=i))

    selected = asyncio.run(
        _selector(backend).select_questions(USER_ID, QuestionFilter(category_id=CARDIOLOGY), 10)
    )

    assert len(selected) == 10
    assert len(set(selected)) == 10
    # 5 unseen available, then the oldest seen
    assert set(selected[:5]) == {f"q{i}" for i in range(25, 30)}
    assert selected[5:] == ["q24", "q23", "q22", "q21", "q20"]


def test_fewer_available_than_requested_returns_all():
    backend = seeded_backend(cardiology=7, neurology=0)
    backend.mark_seen(USER_ID, "q0", NOW)

    selected = asyncio.run(
        _selector(backend).select_questions(USER_ID, QuestionFilter(), 10)
    )

    assert sorted(selected) == sorted(f"q{i}" for i in range(7))
    assert selected[-1] == "q0"


def test_guest_selection_ignores_history():
    backend = seeded_backend(cardiology=5, neurology=5)
    backend.mark_seen(USER_ID, "q0", NOW)

    selected = asyncio.run(
        _selector(backend).select_questions(None, QuestionFilter(category_id=NEUROLOGY), 3)
    )

    assert len(selected) == 3
    assert all(qid.startswith("q100") for qid in selected)
    assert "fetch_question_history" not in backend.calls


def test_selection_respects_difficulty_and_inactive_questions():
    backend = seeded_backend(cardiology=0, neurology=0)
    backend.add_question(make_question(1, difficulty=Difficulty.HARD))
    backend.add_question(make_question(2, difficulty=Difficulty.EASY))
    backend.add_question(make_question(3, difficulty=Difficulty.HARD, is_active=False))

    selected = asyncio.run(
        _selector(backend).select_questions(
            USER_ID, QuestionFilter(difficulty=Difficulty.HARD), 5
        )
    )

    assert selected == ["q1"]


def test_shuffles_unseen_candidates():
    backend = seeded_backend(cardiology=20, neurology=0)
    orders = {
        tuple(
            asyncio.run(
                _selector(backend, seed=seed).select_questions(None, QuestionFilter(), 5)
            )
        )
        for seed in range(10)
    }
    assert len(orders) > 1


def test_history_failure_degrades_to_plain_selection():
    backend = flaky_backend(cardiology=10, neurology=0)
    backend.fail("fetch_question_history", ApplicationError("permission denied"))

    selected = asyncio.run(
        _selector(backend).select_questions(USER_ID, QuestionFilter(), 4)
    )

    assert len(selected) == 4


def test_question_fetch_failure_propagates_after_retries():
    backend = flaky_backend(cardiology=10, neurology=0)
    backend.fail("fetch_questions", *[BackendNetworkError("down")] * 3)

    with pytest.raises(OperationFailedError) as exc_info:
        asyncio.run(_selector(backend).select_questions(USER_ID, QuestionFilter(), 4))

    assert exc_info.value.attempts == 3
    assert backend.attempts["fetch_questions"] == 3


def test_transient_fetch_failure_is_retried():
    backend = flaky_backend(cardiology=10, neurology=0)
    backend.fail("fetch_questions", BackendNetworkError("reset"))

    selected = asyncio.run(_selector(backend).select_questions(USER_ID, QuestionFilter(), 4))

    assert len(selected) == 4
    assert backend.attempts["fetch_questions"] == 2

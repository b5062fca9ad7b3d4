import pytest
from fastapi.testclient import TestClient

from usmle_trivia.backend import set_backend
from usmle_trivia.backend.base import ApplicationError, BackendNetworkError
from usmle_trivia.main import app
from usmle_trivia.services.draft_store import InMemoryDraftStore, set_draft_store

from conftest import (
    CARDIOLOGY,
    OTHER_USER_ID,
    OTHER_USER_TOKEN,
    USER_ID,
    USER_TOKEN,
    fast_retry_policy,
    flaky_backend,
    seeded_backend,
)

API = "/api/v1"
AUTH = {"Authorization": f"Bearer {USER_TOKEN}"}
OTHER_AUTH = {"Authorization": f"Bearer {OTHER_USER_TOKEN}"}


def _client_for(backend):
    set_backend(backend)
    set_draft_store(InMemoryDraftStore())
    return TestClient(app)


@pytest.fixture
def backend():
    return seeded_backend()


@pytest.fixture
def client(backend):
    with _client_for(backend) as test_client:
        test_client.app.state.retry_policy = fast_retry_policy()
        test_client.app.state.registry.retry = test_client.app.state.retry_policy
        yield test_client
    set_backend(None)
    set_draft_store(None)


def _start(client, headers=None, **config):
    body = {"session_type": "quick", **config}
    return client.post(f"{API}/quiz-sessions", json=body, headers=headers or {})


def _answer_current(client, quiz, option="b", headers=None):
    return client.post(
        f"{API}/quiz-sessions/{quiz['session_id']}/answers",
        json={
            "question_id": quiz["current_question"]["id"],
            "selected_option_id": option,
            "elapsed_ms": 2000,
        },
        headers=headers or {},
    )


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "healthy", "backend": "connected", "redis": "disabled"}


def test_root(client):
    r = client.get("/")
    assert r.status_code == 200
    assert r.json()["status"] == "running"


# ---------------------------------------------------------------------------
# Quiz sessions
# ---------------------------------------------------------------------------

def test_guest_can_start_a_quick_quiz(client):
    r = _start(client)
    assert r.status_code == 201
    quiz = r.json()
    assert quiz["state"] == "in_progress"
    assert quiz["total_questions"] == 10
    assert quiz["current_index"] == 0
    assert quiz["results_saved"] is None
    question = quiz["current_question"]
    assert "correct_option_id" not in question
    assert "explanation" not in question
    assert [o["id"] for o in question["options"]] == ["a", "b", "c", "d"]


@pytest.mark.parametrize(
    "config",
    [
        {"session_type": "custom", "question_count": 41},
        {"session_type": "custom", "question_count": 0},
        {"session_type": "custom"},
        {"session_type": "timed", "question_count": 5},
        {"session_type": "quick", "category_id": "  "},
    ],
)
def test_invalid_configuration_is_422(client, config):
    r = client.post(f"{API}/quiz-sessions", json=config)
    assert r.status_code == 422


def test_category_without_questions_is_422(client):
    r = _start(client, category_id="tag-unknown")
    assert r.status_code == 422
    assert "no active questions" in r.json()["detail"]


def test_full_quiz_for_signed_in_user(client, backend):
    quiz = _start(client, headers=AUTH, category_id=CARDIOLOGY).json()
    session_id = quiz["session_id"]

    for i in range(10):
        r = _answer_current(client, quiz, option="b" if i % 2 == 0 else "c", headers=AUTH)
        assert r.status_code == 200
        body = r.json()
        feedback = body["feedback"]
        assert feedback["is_correct"] is (i % 2 == 0)
        assert feedback["correct_option_id"] == "b"
        assert feedback["explanation"].startswith("Explanation")
        assert feedback["response_order"] == i
        quiz = body["quiz"]

    assert quiz["state"] == "completed"
    assert quiz["results_saved"] is True
    assert quiz["correct_answers"] == 5
    assert quiz["score"] == 5
    assert quiz["current_question"] is None

    # Finished quizzes are not held in memory
    assert len(client.app.state.registry) == 0

    r = client.get(f"{API}/quiz-sessions/{session_id}", headers=AUTH)
    assert r.status_code == 200
    assert r.json()["state"] == "completed"
    assert r.json()["score"] == 5
    assert r.json()["results_saved"] is True
    assert backend.sessions[session_id].user_id == USER_ID
    assert backend.sessions[session_id].completed_at is not None


def test_registry_forgets_finished_quizzes(client):
    for _ in range(3):
        quiz = _start(client, headers=AUTH).json()
        for _ in range(10):
            quiz = _answer_current(client, quiz, headers=AUTH).json()["quiz"]
        assert quiz["state"] == "completed"
    in_progress = _start(client, headers=AUTH).json()

    registry = client.app.state.registry
    assert len(registry) == 1
    assert client.get(f"{API}/quiz-sessions/{in_progress['session_id']}", headers=AUTH).status_code == 200


def test_unsaved_results_are_retried_on_read():
    backend = flaky_backend()
    backend.fail("complete_session", *[BackendNetworkError("down")] * 3)
    with _client_for(backend) as client:
        client.app.state.registry.retry = fast_retry_policy()
        quiz = _start(client, headers=AUTH).json()
        for _ in range(10):
            quiz = _answer_current(client, quiz, headers=AUTH).json()["quiz"]
        assert quiz["state"] == "failed"
        assert quiz["results_saved"] is False
        assert len(client.app.state.registry) == 1

        r = client.get(f"{API}/quiz-sessions/{quiz['session_id']}", headers=AUTH)
        registry_size = len(client.app.state.registry)
    set_backend(None)
    set_draft_store(None)

    assert r.status_code == 200
    assert r.json()["state"] == "completed"
    assert r.json()["results_saved"] is True
    assert registry_size == 0
    assert backend.stats[USER_ID].total_quizzes_completed == 1


def test_explanations_can_be_hidden(client):
    quiz = _start(client, show_explanations=False).json()
    feedback = _answer_current(client, quiz).json()["feedback"]
    assert feedback["explanation"] is None


def test_repeat_answer_returns_first_result(client):
    quiz = _start(client).json()
    first = _answer_current(client, quiz, option="b").json()
    second = _answer_current(client, quiz, option="a").json()

    assert second["feedback"] == first["feedback"]
    assert second["quiz"]["answered"] == 1


def test_answer_errors(client):
    quiz = _start(client).json()
    session_id = quiz["session_id"]

    r = client.post(
        f"{API}/quiz-sessions/{session_id}/answers",
        json={"question_id": "not-a-question", "selected_option_id": "b"},
    )
    assert r.status_code == 422

    r = client.post(
        f"{API}/quiz-sessions/{session_id}/answers",
        json={"question_id": quiz["current_question"]["id"], "selected_option_id": "z"},
    )
    assert r.status_code == 422


def test_answer_out_of_order_is_409(client):
    quiz = _start(client).json()
    session_id = quiz["session_id"]
    manager = client.app.state.registry._managers[session_id]
    later = manager.questions[5].id

    r = client.post(
        f"{API}/quiz-sessions/{session_id}/answers",
        json={"question_id": later, "selected_option_id": "b"},
    )
    assert r.status_code == 409


def test_skip_current_question(client):
    quiz = _start(client).json()
    r = client.post(f"{API}/quiz-sessions/{quiz['session_id']}/skip", json={"elapsed_ms": 60000})

    assert r.status_code == 200
    feedback = r.json()["feedback"]
    assert feedback["timed_out"] is True
    assert feedback["selected_option_id"] is None
    assert feedback["is_correct"] is False
    assert r.json()["quiz"]["current_index"] == 1


def test_unknown_session_is_404(client):
    r = client.get(f"{API}/quiz-sessions/does-not-exist")
    assert r.status_code == 404
    assert r.json()["detail"] == "Quiz session not found"


def test_other_users_session_is_404(client):
    quiz = _start(client, headers=AUTH).json()

    assert client.get(f"{API}/quiz-sessions/{quiz['session_id']}", headers=OTHER_AUTH).status_code == 404
    assert client.get(f"{API}/quiz-sessions/{quiz['session_id']}").status_code == 404
    assert client.get(f"{API}/quiz-sessions/{quiz['session_id']}", headers=AUTH).status_code == 200


def test_invalid_token_is_401(client):
    r = _start(client, headers={"Authorization": "Bearer forged"})
    assert r.status_code == 401


def test_session_survives_registry_loss(client):
    quiz = _start(client, headers=AUTH).json()
    quiz = _answer_current(client, quiz, headers=AUTH).json()["quiz"]
    quiz = _answer_current(client, quiz, headers=AUTH).json()["quiz"]

    # A restarted process only has the draft
    client.app.state.registry._managers.clear()

    r = client.get(f"{API}/quiz-sessions/{quiz['session_id']}", headers=AUTH)
    assert r.status_code == 200
    restored = r.json()
    assert restored["state"] == "in_progress"
    assert restored["current_index"] == 2
    assert restored["current_question"]["id"] == quiz["current_question"]["id"]


def test_abandon_session(client):
    quiz = _start(client).json()
    session_id = quiz["session_id"]

    r = client.delete(f"{API}/quiz-sessions/{session_id}")
    assert r.status_code == 204
    assert client.get(f"{API}/quiz-sessions/{session_id}").status_code == 404


def test_load_failure_is_503():
    backend = flaky_backend()
    backend.fail("create_session", ApplicationError("violates check constraint"))
    with _client_for(backend) as client:
        r = _start(client)
    set_backend(None)
    set_draft_store(None)

    assert r.status_code == 503
    assert "Retry-After" not in r.headers


# ---------------------------------------------------------------------------
# Questions / tags
# ---------------------------------------------------------------------------

def test_question_count(client):
    assert client.get(f"{API}/questions/count", params={"category_id": CARDIOLOGY}).json() == {"count": 30}
    assert client.get(f"{API}/questions/count", params={"category_id": "mixed"}).json() == {"count": 60}
    assert client.get(f"{API}/questions/count").json() == {"count": 60}
    assert client.get(f"{API}/questions/count", params={"category_id": " "}).status_code == 422


def test_list_tags(client):
    r = client.get(f"{API}/tags", params={"type": "subject"})
    assert r.status_code == 200
    assert {t["slug"] for t in r.json()} == {"cardiology", "neurology"}
    assert client.get(f"{API}/tags", params={"type": "system"}).json() == []


# ---------------------------------------------------------------------------
# Stats / chats
# ---------------------------------------------------------------------------

def test_stats_require_sign_in(client):
    assert client.get(f"{API}/users/me/stats").status_code == 401


def test_stats_for_new_user_are_zero(client):
    r = client.get(f"{API}/users/me/stats", headers=AUTH)
    assert r.status_code == 200
    assert r.json()["user_id"] == USER_ID
    assert r.json()["total_quizzes_completed"] == 0


def test_one_to_one_chat(client):
    r = client.post(f"{API}/chats/one-to-one", json={"other_user_id": OTHER_USER_ID}, headers=AUTH)
    assert r.status_code == 200
    chat_id = r.json()["chat_id"]

    # Same room from the other side
    r = client.post(f"{API}/chats/one-to-one", json={"other_user_id": USER_ID}, headers=OTHER_AUTH)
    assert r.json()["chat_id"] == chat_id


def test_chat_with_yourself_is_400(client):
    r = client.post(f"{API}/chats/one-to-one", json={"other_user_id": USER_ID}, headers=AUTH)
    assert r.status_code == 400

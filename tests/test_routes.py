from __future__ import annotations

from typing import List, Optional

from fastapi.testclient import TestClient

from conftest import make_concept, make_settings
from session_engine.main import create_app
from session_engine.models import Concept, Prerequisite, PretestQuestion, SampleQuestion
from session_engine.store import InMemoryContentStore

CREATE = {"user_id": "u1", "project_id": "biology", "signals": {"local_hour": 15}}


class BrokenStore(InMemoryContentStore):
    async def load_concepts(self, project_id: str) -> List[Concept]:
        raise ConnectionError("database unreachable")


def _client(store: Optional[InMemoryContentStore] = None) -> TestClient:
    if store is None:
        store = InMemoryContentStore()
        store.add_concepts("biology", [make_concept("n1"), make_concept("n2")])
    return TestClient(create_app(settings=make_settings(), store=store))


def test_health_reports_placement_and_generation_modes() -> None:
    response = _client().get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "placement_mode": "advisor", "text_generation": "disabled"}


def test_create_answer_and_advance() -> None:
    client = _client()

    created = client.post("/api/sessions", json=CREATE)
    assert created.status_code == 201
    plan = created.json()
    session_id = plan["session_id"]
    assert plan["outcome"] == "ready"
    assert [item["kind"] for item in plan["items"]] == ["new", "new", "sandbox"]

    assert client.get(f"/api/sessions/{session_id}").json()["session_id"] == session_id

    graded = client.post(
        f"/api/sessions/{session_id}/answers",
        json={"item_id": "new-n1", "answer": "answer 0", "elapsed_ms": 9000},
    )
    assert graded.status_code == 200
    assert graded.json()["is_correct"] is True
    assert graded.json()["rating"] == 3

    advanced = client.post(f"/api/sessions/{session_id}/advance")
    assert advanced.status_code == 200
    assert advanced.json()["item_id"] == "new-n2"

    client.post(f"/api/sessions/{session_id}/advance")
    sandbox = client.post(
        f"/api/sessions/{session_id}/answers",
        json={
            "item_id": plan["items"][2]["item_id"],
            "answer": {"zone_contents": {"zone-n1": ["term-n1"]}},
            "elapsed_ms": 2000,
        },
    )
    assert sandbox.status_code == 200
    assert sandbox.json()["is_correct"] is True

    finished = client.post(f"/api/sessions/{session_id}/advance")
    assert finished.json() == {"complete": True, "answered_count": 2, "correct_count": 2}


def test_answer_for_the_wrong_item_is_a_conflict() -> None:
    client = _client()
    session_id = client.post("/api/sessions", json=CREATE).json()["session_id"]

    response = client.post(f"/api/sessions/{session_id}/answers", json={"item_id": "new-n2", "answer": "x"})

    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "no_active_item"


def test_unknown_session_is_not_found() -> None:
    client = _client()
    assert client.get("/api/sessions/missing").status_code == 404
    assert client.post("/api/sessions/missing/advance").status_code == 404


def test_duplicate_session_id_is_rejected() -> None:
    client = _client()
    payload = {**CREATE, "session_id": "fixed"}
    assert client.post("/api/sessions", json=payload).status_code == 201
    assert client.post("/api/sessions", json=payload).status_code == 409


def test_store_failure_is_retryable_and_leaves_no_session() -> None:
    app = create_app(settings=make_settings(), store=BrokenStore())
    client = TestClient(app)

    response = client.post("/api/sessions", json=CREATE)

    assert response.status_code == 503
    detail = response.json()["detail"]
    assert detail["code"] == "load_failed"
    assert detail["retryable"] is True
    assert len(app.state.session_registry) == 0


def test_rebuild_replaces_the_plan() -> None:
    client = _client()
    session_id = client.post("/api/sessions", json=CREATE).json()["session_id"]

    rebuilt = client.post(
        f"/api/sessions/{session_id}/build",
        json={"signals": {"local_hour": 15, "items_in_progress": 4}},
    )

    assert rebuilt.status_code == 200
    assert rebuilt.json()["capacity"]["can_learn_new"] is False
    assert rebuilt.json()["outcome"] == "nothing_to_learn"


def test_cancel_removes_the_session() -> None:
    client = _client()
    session_id = client.post("/api/sessions", json=CREATE).json()["session_id"]

    response = client.delete(f"/api/sessions/{session_id}")

    assert response.status_code == 200
    assert response.json() == {"session_id": session_id, "cancelled": True}
    assert client.get(f"/api/sessions/{session_id}").status_code == 404


def test_prerequisite_flow_over_http() -> None:
    store = InMemoryContentStore()
    store.add_concepts("biology", [make_concept("n1")])
    store.add_prerequisites(
        "biology",
        [Prerequisite(prerequisite_id="chemistry", name="Chemistry", description="Atoms bond into molecules.")],
        [
            PretestQuestion(
                question_id="pq-chemistry",
                prerequisite_id="chemistry",
                question=SampleQuestion(
                    question_id="pq-chemistry",
                    question_type="multiple_choice",
                    prompt="What holds a molecule together?",
                    correct_answer="bonds",
                ),
            )
        ],
    )
    client = _client(store)
    session_id = client.post("/api/sessions", json=CREATE).json()["session_id"]
    base = f"/api/sessions/{session_id}/prerequisites"

    checked = client.post(f"{base}/check").json()
    assert checked["phase"] == "offer"
    assert checked["prerequisite_ids"] == ["chemistry"]

    questions = client.get(f"{base}/questions").json()
    assert [question["question_id"] for question in questions] == ["pq-chemistry"]

    assert client.post(f"{base}/events", json={"event": "start_pretest"}).json()["phase"] == "pretest"

    graded = client.post(
        f"{base}/events",
        json={"event": "complete_pretest", "responses": {"pq-chemistry": "gravity"}},
    ).json()
    assert graded["phase"] == "gaps"
    assert graded["gap_analysis"]["gaps"] == ["chemistry"]
    assert graded["transitions"][0]["event"] == "PretestCompleted"

    missing_id = client.post(f"{base}/events", json={"event": "open_mini_lesson"})
    assert missing_id.status_code == 422

    opened = client.post(f"{base}/events", json={"event": "open_mini_lesson", "prerequisite_id": "chemistry"}).json()
    assert opened["phase"] == "mini_lesson"
    assert opened["mini_lesson"]["content"] == "Atoms bond into molecules."
    assert opened["mini_lesson"]["generated"] is False

    completed = client.post(
        f"{base}/events",
        json={"event": "complete_mini_lesson", "prerequisite_id": "chemistry"},
    ).json()
    assert completed["completed_lessons"] == ["chemistry"]

    proceeded = client.post(f"{base}/events", json={"event": "proceed"}).json()
    assert proceeded["phase"] == "learning"
    assert proceeded["did_skip_pretest"] is False

    rejected = client.post(f"{base}/events", json={"event": "start_pretest"})
    assert rejected.status_code == 409


def test_out_of_range_accuracy_is_unprocessable() -> None:
    client = _client()

    response = client.post("/api/sessions", json={**CREATE, "recent_accuracy": 1.5})

    assert response.status_code == 422


def test_engine_validation_errors_map_to_unprocessable() -> None:
    client = _client()
    session_id = client.post("/api/sessions", json={**CREATE, "recent_accuracy": 0.3}).json()["session_id"]

    response = client.post(
        f"/api/sessions/{session_id}/prerequisites/events",
        json={"event": "complete_mini_lesson"},
    )

    assert response.status_code == 422

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from scholaris.api import ScholarisRestAPI

from conftest import EXAM_START, EXAM_END


@pytest.fixture
def client(exam_service, release_service):
    return TestClient(ScholarisRestAPI(exam_service, release_service).app)


@pytest.fixture
def exam_id(client):
    response = client.post("/exams", json={
        "course_id": "cs101",
        "semester_id": "sem-1",
        "title": "Quiz",
        "start_at": EXAM_START.isoformat(),
        "end_at": EXAM_END.isoformat(),
    })
    assert response.status_code == 201
    return response.json()["id"]


def add_choice_question(client, exam_id):
    response = client.post(f"/exams/{exam_id}/questions", json={
        "question_type": "single_choice",
        "text": "2 + 2 = ?",
        "marks": 10,
        "options": [{"text": "4", "is_correct": True}, {"text": "5"}],
    })
    assert response.status_code == 201
    return response.json()


def test_health(client):
    assert client.get("/health").json()["status"] == "healthy"


def test_unknown_exam_is_404(client):
    response = client.get("/exams/missing")
    assert response.status_code == 404
    assert "missing" in response.json()["detail"]


def test_bad_question_shape_is_400(client, exam_id):
    response = client.post(f"/exams/{exam_id}/questions", json={
        "question_type": "single_choice", "text": "q", "marks": 5, "options": [{"text": "only"}],
    })
    assert response.status_code == 400


def test_attempt_flow(client, exam_id):
    question = add_choice_question(client, exam_id)
    correct = next(o["id"] for o in question["options"] if o["is_correct"])
    assert client.post(f"/exams/{exam_id}/publish").json()["status"] == "published"

    attempt = client.post(f"/exams/{exam_id}/attempts", json={"student_id": "s1"}).json()
    again = client.post(f"/exams/{exam_id}/attempts", json={"student_id": "s1"}).json()
    assert attempt["id"] == again["id"]
    assert attempt["state"] == "in_progress"

    saved = client.put(f"/attempts/{attempt['id']}/answers/{question['id']}", json={"option_id": correct})
    assert saved.status_code == 200
    assert saved.json()["value"] == {"option_id": correct}

    submitted = client.post(f"/attempts/{attempt['id']}/submit", json={})
    assert submitted.json()["total_score"] == 10

    conflict = client.put(f"/attempts/{attempt['id']}/answers/{question['id']}", json={"option_id": correct})
    assert conflict.status_code == 409

    assert client.get(f"/attempts/{attempt['id']}/result").status_code == 409
    client.post(f"/exams/{exam_id}/release-results")
    assert client.get(f"/attempts/{attempt['id']}/result").json()["total_score"] == 10


def test_out_of_window_reports_kind(client, exam_id, clock):
    client.post(f"/exams/{exam_id}/publish")
    clock.set(EXAM_END + timedelta(minutes=1))
    response = client.post(f"/exams/{exam_id}/attempts", json={"student_id": "s1"})
    assert response.status_code == 403
    assert response.json()["kind"] == "too_late"


def test_answer_with_two_variants_is_400(client, exam_id):
    question = add_choice_question(client, exam_id)
    client.post(f"/exams/{exam_id}/publish")
    attempt = client.post(f"/exams/{exam_id}/attempts", json={"student_id": "s1"}).json()
    response = client.put(f"/attempts/{attempt['id']}/answers/{question['id']}",
                          json={"option_id": "x", "text": "y"})
    assert response.status_code == 400


def test_release_and_transcript(client, ledger):
    ledger.add_semester("sem-1", "Spring 2026")
    ledger.add_course("cs101", "CS101", "Programming", "sem-1")
    ledger.enroll("s1", "cs101", "sem-1")
    ledger.record_submission("hw1", "s1", "cs101", 100)

    released = client.post("/semesters/sem-1/release")
    assert released.status_code == 200
    assert released.json()["released"] == 1
    assert client.get("/semesters/sem-1/release").json()["released"] is True

    transcript = client.get("/students/s1/transcript").json()
    assert transcript["semesters"][0]["semester_name"] == "Spring 2026"
    assert transcript["semesters"][0]["courses"][0]["assignments_score"] == 20
    assert transcript["cumulative_average"] == 20

    assert client.delete("/semesters/sem-1/release").json()["deleted"] == 1
    assert client.get("/students/s1/transcript").json()["semesters"] == []


def test_edit_exam_and_questions(client, exam_id):
    renamed = client.patch(f"/exams/{exam_id}", json={"title": "Final", "total_marks": 40})
    assert renamed.status_code == 200
    assert (renamed.json()["title"], renamed.json()["total_marks"]) == ("Final", 40)
    assert client.patch(f"/exams/{exam_id}", json={"end_at": EXAM_START.isoformat()}).status_code == 400

    question = add_choice_question(client, exam_id)
    updated = client.put(f"/questions/{question['id']}", json={
        "marks": 5, "options": [{"text": "four", "is_correct": True}, {"text": "five"}],
    })
    assert updated.status_code == 200
    assert [o["text"] for o in updated.json()["options"]] == ["four", "five"]
    assert client.put(f"/questions/{question['id']}", json={"marks": 41}).status_code == 400

    assert client.delete(f"/questions/{question['id']}").status_code == 204
    assert client.get(f"/exams/{exam_id}/questions").json() == []
    assert client.delete(f"/questions/{question['id']}").status_code == 404


def test_editing_attempted_exam_is_409(client, exam_id):
    question = add_choice_question(client, exam_id)
    client.post(f"/exams/{exam_id}/publish")
    client.post(f"/exams/{exam_id}/attempts", json={"student_id": "s1"})
    assert client.patch(f"/exams/{exam_id}", json={"title": "Renamed"}).status_code == 409
    assert client.delete(f"/questions/{question['id']}").status_code == 409


def test_list_exams_published_only(client, exam_id):
    assert len(client.get("/semesters/sem-1/exams").json()) == 1
    assert client.get("/semesters/sem-1/exams", params={"published_only": True}).json() == []
    client.post(f"/exams/{exam_id}/publish")
    [exam] = client.get("/semesters/sem-1/exams", params={"published_only": True}).json()
    assert exam["id"] == exam_id

from datetime import timedelta

import pytest

from models import db, utcnow, ExamAttempt


@pytest.fixture
def exam(make_exam, student_id):
    return make_exam(student_ids=[student_id])


def _start(client, exam_id):
    return client.post(f"/api/student/exam/{exam_id}")


def _rewind(app, attempt_id, minutes):
    with app.app_context():
        attempt = ExamAttempt.query.get(attempt_id)
        attempt.started_at = utcnow() - timedelta(minutes=minutes)
        db.session.commit()


def test_start_then_resume(student_client, exam):
    first = _start(student_client, exam["exam"])
    assert first.status_code == 201
    body = first.get_json()
    assert body["resumed"] is False
    assert 1790 <= body["remainingSeconds"] <= 1800

    again = _start(student_client, exam["exam"]).get_json()
    assert again["resumed"] is True
    assert again["attemptId"] == body["attemptId"]


def test_unassigned_student_is_refused(exam, make_student, login_as):
    make_student(email="other@school.test", name="Other")
    other = login_as("other@school.test", "student123")
    resp = _start(other, exam["exam"])
    assert resp.status_code == 403
    assert resp.get_json()["error"] == "Not assigned to this exam"


@pytest.mark.parametrize("window, error", [
    ((timedelta(hours=1), timedelta(hours=2)), "Exam has not started yet"),
    ((timedelta(hours=-2), timedelta(hours=-1)), "Exam has ended"),
])
def test_schedule_window_is_enforced(student_client, student_id, make_exam, window, error):
    ids = make_exam(student_ids=[student_id], schedule=window)
    resp = _start(student_client, ids["exam"])
    assert resp.status_code == 400
    assert resp.get_json()["error"] == error


def test_exam_payload_hides_answers(student_client, exam):
    assert student_client.get(f"/api/student/exam/{exam['exam']}").status_code == 400
    _start(student_client, exam["exam"])

    data = student_client.get(f"/api/student/exam/{exam['exam']}").get_json()
    assert data["status"] == "in_progress"
    assert len(data["questions"]) == 4
    assert all("correctAnswer" not in q for q in data["questions"])
    assert data["exam"]["totalMarks"] == 17
    assert data["responses"] == {}
    assert data["counts"]["not_visited"] == 4


def test_full_attempt_is_scored(app, student_client, admin_client, exam):
    attempt_id = _start(student_client, exam["exam"]).get_json()["attemptId"]
    url = f"/api/student/exam/{exam['exam']}/save"

    assert student_client.post(url, json={"questionId": exam["single"], "answer": "b"}).status_code == 200
    batch = student_client.put(url, json={"responses": [
        {"questionId": exam["multi"], "answer": ["c", "a"]},
        {"questionId": exam["blank"], "answer": "9", "markedForReview": True},
        {"questionId": exam["essay"], "answer": "Resistance to change in motion"},
    ], "currentQuestionId": exam["essay"]})
    assert batch.get_json()["saved"] == 3

    state = student_client.get(f"/api/student/exam/{exam['exam']}").get_json()
    assert state["currentQuestionId"] == exam["essay"]
    assert state["responses"][str(exam["single"])] == {"answer": ["b"], "markedForReview": False}
    assert state["counts"]["answered"] == 3
    assert state["counts"]["answered_and_marked"] == 1

    submitted = student_client.post(f"/api/student/exam/{exam['exam']}/submit", json={})
    assert submitted.status_code == 200
    body = submitted.get_json()
    assert body["totalScore"] == 12
    assert body["totalMarks"] == 17
    assert body["summary"]["correct"] == 3
    assert body["summary"]["sections"][0]["pending"] == 1

    again = _start(student_client, exam["exam"])
    assert again.status_code == 400
    assert again.get_json()["error"] == "Maximum attempts reached"
    assert again.get_json()["details"] == "Used 1 of 1 attempts"

    late_save = student_client.post(url, json={"questionId": exam["single"], "answer": "a"})
    assert late_save.get_json()["error"] == "Exam already submitted"

    result = student_client.get(f"/api/student/results/{exam['exam']}").get_json()["result"]
    by_id = {q["id"]: q for q in result["questions"]}
    assert by_id[exam["single"]]["correctAnswer"] == ["b"]
    assert by_id[exam["single"]]["isCorrect"] is True
    assert by_id[exam["essay"]]["marksAwarded"] is None

    grade_url = f"/api/admin/attempts/{attempt_id}/responses/{exam['essay']}/grade"
    assert admin_client.put(grade_url, json={"marks": 6}).status_code == 400
    graded = admin_client.put(grade_url, json={"marks": 3})
    assert graded.get_json()["totalScore"] == 15
    objective_url = f"/api/admin/attempts/{attempt_id}/responses/{exam['single']}/grade"
    assert admin_client.put(objective_url, json={"marks": 1}).status_code == 400


def test_wrong_answers_cost_negative_marks(student_client, exam):
    _start(student_client, exam["exam"])
    student_client.post(f"/api/student/exam/{exam['exam']}/save", json={"questionId": exam["single"], "answer": "a"})
    body = student_client.post(f"/api/student/exam/{exam['exam']}/submit", json={}).get_json()
    assert body["totalScore"] == -1
    assert body["summary"]["wrong"] == 1


def test_foreign_question_rejected(student_client, exam, make_exam):
    other = make_exam()
    _start(student_client, exam["exam"])
    resp = student_client.post(f"/api/student/exam/{exam['exam']}/save",
                               json={"questionId": other["single"], "answer": "b"})
    assert resp.status_code == 400


def test_expired_attempt_is_auto_submitted(app, student_client, exam):
    attempt_id = _start(student_client, exam["exam"]).get_json()["attemptId"]
    _rewind(app, attempt_id, 31)

    resp = student_client.get(f"/api/student/exam/{exam['exam']}")
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["status"] == "submitted"
    assert data["autoSubmitted"] is True
    with app.app_context():
        attempt = ExamAttempt.query.get(attempt_id)
        assert attempt.status == "submitted"
        assert attempt.auto_submit is True


def test_save_after_time_up_submits(app, student_client, exam):
    attempt_id = _start(student_client, exam["exam"]).get_json()["attemptId"]
    _rewind(app, attempt_id, 45)
    resp = student_client.post(f"/api/student/exam/{exam['exam']}/save",
                               json={"questionId": exam["single"], "answer": "b"})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Time is up, the exam has been submitted"


def test_retake_allowed_up_to_max_attempts(student_client, student_id, make_exam):
    ids = make_exam(student_ids=[student_id], max_attempts=2)
    for _ in range(2):
        assert _start(student_client, ids["exam"]).status_code == 201
        student_client.post(f"/api/student/exam/{ids['exam']}/submit", json={})
    assert _start(student_client, ids["exam"]).status_code == 400

    listing = student_client.get("/api/student/exams").get_json()["exams"]
    assert listing[0]["attemptsUsed"] == 2
    assert listing[0]["canStart"] is False


def test_single_device_session(student_client, exam, login_as):
    _start(student_client, exam["exam"])
    url = f"/api/student/exam/{exam['exam']}/session"
    token = student_client.post(url, json={}).get_json()["sessionToken"]
    assert student_client.post(url, json={"clientToken": token}).get_json()["sessionToken"] == token

    second = login_as("stu@school.test", "student123")
    refused = second.post(url, json={"clientToken": "phone"})
    assert refused.status_code == 409
    assert refused.get_json()["activeOnOtherDevice"] is True

    taken = second.post(url, json={"clientToken": "phone", "forceLogin": True}).get_json()["sessionToken"]
    assert taken != token
    assert student_client.post(url, json={"clientToken": token}).status_code == 409


def test_secure_mode_violations(app, student_client, student_id, make_exam):
    ids = make_exam(student_ids=[student_id], security_mode=True)
    attempt_id = _start(student_client, ids["exam"]).get_json()["attemptId"]
    url = f"/api/student/exam/{ids['exam']}/violation"

    assert student_client.post(url, json={"type": "paste"}).status_code == 400

    warned_resp = student_client.post(url, json={"type": "tab_switch", "awaySeconds": 2})
    assert warned_resp.status_code == 200
    warned = warned_resp.get_json()
    assert warned["violationCount"] == 1
    assert warned["autoSubmit"] is False
    assert warned["status"] == "in_progress"

    ended_resp = student_client.post(url, json={"type": "tab_switch", "awaySeconds": 15})
    assert ended_resp.status_code == 200
    ended = ended_resp.get_json()
    assert ended["autoSubmit"] is True
    assert ended["status"] == "submitted"
    with app.app_context():
        assert ExamAttempt.query.get(attempt_id).auto_submit is True


def test_blur_pauses_in_normal_mode(app, student_client, exam):
    attempt_id = _start(student_client, exam["exam"]).get_json()["attemptId"]
    blurred = student_client.post(f"/api/student/exam/{exam['exam']}/violation", json={"type": "window_blur"})
    assert blurred.status_code == 200
    resp = blurred.get_json()
    assert resp["status"] == "in_progress"
    assert resp["paused"] is True
    assert resp["violationCount"] == 0
    with app.app_context():
        assert ExamAttempt.query.get(attempt_id).paused_at is not None

    student_client.get(f"/api/student/exam/{exam['exam']}")
    with app.app_context():
        assert ExamAttempt.query.get(attempt_id).paused_at is None


def test_monitor_and_report(admin_client, student_client, exam, make_student):
    make_student(email="idle@school.test", name="Idle")
    _start(student_client, exam["exam"])
    monitor = admin_client.get(f"/api/admin/exams/{exam['exam']}/monitor").get_json()
    assert monitor["counts"]["inProgress"] == 1
    assert monitor["attempts"][0]["student"]["name"] == "Stu Dent"

    student_client.post(f"/api/student/exam/{exam['exam']}/save", json={"questionId": exam["single"], "answer": "b"})
    student_client.post(f"/api/student/exam/{exam['exam']}/submit", json={})
    report = admin_client.get(f"/api/admin/reports/exam/{exam['exam']}").get_json()["report"]
    assert report["totalAttempts"] == 1
    assert report["averageScore"] == 4
    assert report["passMark"] == pytest.approx(6.8)
    assert report["passCount"] == 0


def test_deleting_an_answered_question(app, admin_client, student_client, exam):
    _start(student_client, exam["exam"])
    student_client.post(f"/api/student/exam/{exam['exam']}/save",
                        json={"questionId": exam["single"], "answer": "b", "currentQuestionId": exam["single"]})

    url = f"/api/admin/exams/{exam['exam']}/sections/{exam['section']}/questions/{exam['single']}"
    assert admin_client.delete(url).status_code == 200
    assert admin_client.get(f"/api/admin/exams/{exam['exam']}").get_json()["data"]["totalMarks"] == 13

    resp = student_client.get(f"/api/student/exam/{exam['exam']}")
    assert resp.status_code == 200
    data = resp.get_json()
    assert len(data["questions"]) == 3
    assert data["responses"] == {}
    assert data["currentQuestionId"] is None

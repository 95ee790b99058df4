import pytest


def _create(client, **fields):
    body = {"name": "Asha Rani", "email": "asha@school.test", "rollNumber": "101", "password": "welcome123"}
    body.update(fields)
    return client.post("/api/admin/students", json=body)


def test_create_student_and_log_in(admin_client, login_as):
    resp = _create(admin_client, email="Asha@School.test")
    assert resp.status_code == 201
    data = resp.get_json()["data"]
    assert data["email"] == "asha@school.test"
    assert data["rollNumber"] == "101"
    assert data["firstLogin"] is True

    student = login_as("asha@school.test", "welcome123")
    assert student.get("/api/auth/me").status_code == 200


@pytest.mark.parametrize("fields, status, error", [
    ({"name": ""}, 400, "Name is required"),
    ({"email": "not-an-email"}, 400, "A valid email is required"),
    ({"password": "short"}, 400, "Password must be at least 8 characters"),
    ({"email": "admin@school.test"}, 409, "Email already registered"),
])
def test_create_validation(admin_client, fields, status, error):
    resp = _create(admin_client, **fields)
    assert resp.status_code == status
    assert resp.get_json()["error"] == error


def test_roll_numbers_and_emails_are_unique(admin_client):
    _create(admin_client)
    assert _create(admin_client, email="other@school.test").get_json()["error"] == "Roll number already exists"
    assert _create(admin_client, rollNumber="102").status_code == 409


def test_update_and_search(admin_client, login_as):
    sid = _create(admin_client).get_json()["data"]["id"]
    _create(admin_client, name="Bilal Khan", email="bilal@school.test", rollNumber="102")

    updated = admin_client.put(f"/api/admin/students/{sid}", json={"name": "Asha R.", "password": "newpass123"})
    assert updated.status_code == 200
    assert updated.get_json()["data"]["name"] == "Asha R."
    login_as("asha@school.test", "newpass123")

    clash = admin_client.put(f"/api/admin/students/{sid}", json={"rollNumber": "102"})
    assert clash.status_code == 409

    found = admin_client.get("/api/admin/students?search=bilal").get_json()
    assert found["pagination"]["total"] == 1
    assert found["students"][0]["rollNumber"] == "102"
    assert admin_client.put("/api/admin/students/999999", json={"name": "X"}).status_code == 404


def test_delete_student_with_history(admin_client, student_client, student_id, make_exam):
    ids = make_exam(student_ids=[student_id])
    student_client.post(f"/api/student/exam/{ids['exam']}")
    student_client.post(f"/api/student/exam/{ids['exam']}/save", json={"questionId": ids["single"], "answer": "b"})
    ticket = student_client.post("/api/tickets", json={"title": "Mouse broken", "description": "Left click dead",
                                                       "category": "hardware_issue", "priority": "low"})
    ticket_id = ticket.get_json()["data"]["id"]

    assert admin_client.delete(f"/api/admin/students/{student_id}").status_code == 200
    monitor = admin_client.get(f"/api/admin/exams/{ids['exam']}/monitor").get_json()
    assert monitor["attempts"] == []
    kept = admin_client.get(f"/api/tickets/{ticket_id}")
    assert kept.status_code == 200
    assert kept.get_json()["data"]["createdBy"] is None
    assert admin_client.get("/api/admin/students").get_json()["students"] == []


def test_bulk_delete(admin_client):
    a = _create(admin_client).get_json()["data"]["id"]
    b = _create(admin_client, email="b@school.test", rollNumber="102").get_json()["data"]["id"]
    assert admin_client.delete("/api/admin/students", json={"ids": []}).status_code == 400
    resp = admin_client.delete("/api/admin/students", json={"ids": [a, b]})
    assert resp.get_json()["deletedCount"] == 2
    assert admin_client.get("/api/admin/students").get_json()["pagination"]["total"] == 0

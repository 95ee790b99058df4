"""
Fixtures for the portal test suite.

The app module builds its Flask app at import time, so the environment is
pinned to an in-memory database before it is imported.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["CSRF_ENABLED"] = "0"
os.environ["AI_PACING"] = "0"
os.environ.setdefault("APP_SECRET", "test-secret-key")

import pytest

from app import app as flask_app
from models import (db, utcnow, User, Student, Exam, ExamAssignment, ExamSchedule, Section,
                    Question, QuestionOption)


@pytest.fixture
def app():
    """Fresh schema per test."""
    flask_app.config.update({
        "TESTING": True,
        "CSRF_ENABLED": False,
        "QUERY_LOG_ENABLED": True,
        "AI_PACING": False,
        "TAB_SWITCH_GRACE_SEC": 10,
        "MAX_VIOLATIONS": 3,
    })
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
    yield flask_app
    with flask_app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def login(client, email, password):
    resp = client.post("/api/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.get_json()
    return client


@pytest.fixture
def make_user(app):
    def _make(email="admin@school.test", role="admin", password="secret123", name="Test Admin"):
        with app.app_context():
            u = User(name=name, email=email, role=role, first_login=False)
            u.set_password(password)
            db.session.add(u)
            db.session.commit()
            return u.id
    return _make


@pytest.fixture
def make_student(app):
    def _make(email="stu@school.test", password="student123", name="Stu Dent", roll_number="1"):
        with app.app_context():
            s = Student(name=name, email=email, roll_number=roll_number, first_login=False)
            s.set_password(password)
            db.session.add(s)
            db.session.commit()
            return s.id
    return _make


@pytest.fixture
def login_as(app):
    def _login(email, password):
        return login(app.test_client(), email, password)
    return _login


@pytest.fixture
def admin_client(make_user, login_as):
    make_user()
    return login_as("admin@school.test", "secret123")


@pytest.fixture
def student_id(make_student):
    return make_student()


@pytest.fixture
def student_client(student_id, login_as):
    return login_as("stu@school.test", "student123")


@pytest.fixture
def make_exam(app):
    """Build a one-section exam.

    Questions: mcq_single (answer b), mcq_multiple (answers a,c), fill_blank
    (answer 9) at 4 marks each with 1 negative mark, and a 5 mark short_answer.
    """
    def _make(student_ids=(), duration=30, negative_marking=True, security_mode=False,
              max_attempts=1, schedule=None):
        with app.app_context():
            exam = Exam(title={"en": "Entrance Test", "pa": ""}, duration=duration,
                        negative_marking=negative_marking, security_mode=security_mode,
                        is_published=True)
            section = Section(name={"en": "Physics", "pa": "ਭੌਤਿਕ ਵਿਗਿਆਨ"}, order=1)
            exam.sections.append(section)

            single = Question(type="mcq_single", text={"en": "2 + 2 = ?", "pa": ""},
                              correct_answer=["b"], marks=4, negative_marks=1, order=1)
            multi = Question(type="mcq_multiple", text={"en": "Pick the even numbers", "pa": ""},
                             correct_answer=["a", "c"], marks=4, negative_marks=1, order=2)
            for q, texts in ((single, ("3", "4", "5", "6")), (multi, ("2", "3", "4", "5"))):
                for i, (key, text) in enumerate(zip("abcd", texts), start=1):
                    q.options.append(QuestionOption(key=key, text={"en": text, "pa": ""}, order=i))
            blank = Question(type="fill_blank", text={"en": "sqrt(81) = ____", "pa": ""},
                             correct_answer=["9"], marks=4, negative_marks=1, order=3)
            essay = Question(type="short_answer", text={"en": "Define inertia.", "pa": ""},
                             correct_answer=[], marks=5, negative_marks=0, order=4)
            for q in (single, multi, blank, essay):
                section.questions.append(q)
            exam.recompute_total_marks()

            sched = None
            if schedule is not None:
                start, end = schedule
                sched = ExamSchedule(start_time=utcnow() + start, end_time=utcnow() + end)
                exam.schedules.append(sched)
            for sid in student_ids:
                exam.assignments.append(ExamAssignment(student_id=sid, max_attempts=max_attempts,
                                                       schedule=sched))
            db.session.add(exam)
            db.session.commit()
            return {
                "exam": exam.id,
                "section": section.id,
                "single": single.id,
                "multi": multi.id,
                "blank": blank.id,
                "essay": essay.id,
            }
    return _make


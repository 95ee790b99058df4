# scripts/dev_seed.py
from datetime import timedelta

from app import create_app
from models import (db, utcnow, User, Student, SchoolClass, ClassEnrollment, Lab, LabItem,
                    Exam, ExamAssignment, ExamSchedule, Section, Question, QuestionOption)

def upsert_user(name, email, role, password):
    u = User.query.filter_by(email=email).one_or_none()
    if u is None:
        u = User(name=name, email=email, role=role, first_login=False)
        u.set_password(password)
        db.session.add(u)
        print(f"[seed] created {role} user: {email}")
    else:
        print(f"[seed] {role} user already exists: {email}")
    return u

def upsert_student(name, email, password, roll_number=None):
    s = Student.query.filter_by(email=email).one_or_none()
    if s is None:
        s = Student(name=name, email=email, roll_number=roll_number, first_login=False)
        s.set_password(password)
        db.session.add(s)
        print(f"[seed] created student: {email}")
    else:
        print(f"[seed] student already exists: {email}")
    return s

def seed_lab():
    lab = Lab.query.filter_by(name="Computer Lab 1").one_or_none()
    if lab is None:
        lab = Lab(name="Computer Lab 1", room_number="101", capacity=30)
        db.session.add(lab)
        for n in range(1, 11):
            lab.items.append(LabItem(item_number=f"PC-{n:02d}", item_type="pc"))
        print("[seed] created lab with 10 PCs")
    return lab

def seed_exam(admin, students):
    exam = Exam.query.first()
    if exam is not None:
        print("[seed] exam already exists")
        return exam
    exam = Exam(title={"en": "Demo Entrance Test", "pa": ""}, duration=30,
                negative_marking=True, is_published=True, created_by_id=admin.id)
    section = Section(name={"en": "Mathematics", "pa": ""}, order=1)
    exam.sections.append(section)
    q = Question(type="mcq_single", text={"en": "2 + 2 = ?", "pa": ""},
                 correct_answer=["b"], marks=4, negative_marks=1, order=1)
    for i, (key, text) in enumerate((("a", "3"), ("b", "4"), ("c", "5"), ("d", "22")), start=1):
        q.options.append(QuestionOption(key=key, text={"en": text, "pa": ""}, order=i))
    section.questions.append(q)
    section.questions.append(Question(type="fill_blank", text={"en": "The square root of 81 is ____", "pa": ""},
                                      correct_answer=["9"], marks=4, order=2))
    exam.recompute_total_marks()
    now = utcnow()
    schedule = ExamSchedule(start_time=now - timedelta(hours=1), end_time=now + timedelta(days=7))
    exam.schedules.append(schedule)
    for s in students:
        exam.assignments.append(ExamAssignment(student=s, max_attempts=2, schedule=schedule))
    db.session.add(exam)
    print("[seed] created demo exam")
    return exam

def main():
    app = create_app()
    with app.app_context():
        db.create_all()   # safe if tables already exist

        admin = upsert_user("Alice Admin", "admin@example.com", "admin", "admin123")
        upsert_user("Ian Instructor", "instructor@example.com", "instructor", "instructor123")
        upsert_user("Lara Assistant", "lab@example.com", "lab_assistant", "lab12345")
        students = [upsert_student("Stu Dent", "student@example.com", "student123", "1"),
                    upsert_student("Sam Pupil", "sam@example.com", "student123", "2")]
        klass = SchoolClass.query.filter_by(name="Class 11 A").one_or_none()
        if klass is None:
            klass = SchoolClass(name="Class 11 A", grade_level=11, section="A", academic_year="2025-26")
            db.session.add(klass)
            for roll, s in enumerate(students, start=1):
                klass.enrollments.append(ClassEnrollment(student=s, roll_number=roll))
        seed_lab()
        db.session.flush()
        seed_exam(admin, students)

        db.session.commit()
        print("[seed] done.")

if __name__ == "__main__":
    main()

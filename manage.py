"""Account seeding and database bootstrap.

    python manage.py init-db
    python manage.py seed-users staff.json
    python manage.py seed-students roster.json
    python manage.py reset-password someone@school.edu

Credentials for created or reset accounts are printed once so they can be
handed out; every seeded account must change its password on first login.
"""
import argparse
import json
import logging
import secrets
import string

from app import create_app
from models import db, User, Student, SchoolClass, ClassEnrollment, STAFF_ROLES

log = logging.getLogger("manage")

PASSWORD_ALPHABET = string.ascii_letters + string.digits


def rand_password(n=10):
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(n))


def _load(json_path):
    with open(json_path, "r", encoding="utf-8") as fh:
        items = json.load(fh)
    if not isinstance(items, list):
        raise ValueError(f"{json_path}: expected a JSON array")
    return items


def _upsert_account(model, item, **fields):
    email = item["email"].strip().lower()
    account = model.query.filter_by(email=email).first()
    created = account is None
    if created:
        account = model(email=email)
        db.session.add(account)
    account.name = item["name"].strip()
    account.first_login = True
    for key, value in fields.items():
        setattr(account, key, value)
    password = item.get("password") or rand_password()
    account.set_password(password)
    return account, password, "created" if created else "updated"


def _enroll(student, class_name):
    klass = SchoolClass.query.filter(db.func.lower(SchoolClass.name) == class_name.strip().lower()).first()
    if klass is None:
        raise ValueError(f"{student.email}: unknown class {class_name!r}")
    db.session.flush()
    existing = ClassEnrollment.query.filter_by(class_id=klass.id, student_id=student.id).first()
    if existing is None:
        roll = ClassEnrollment.query.filter_by(class_id=klass.id).count() + 1
        db.session.add(ClassEnrollment(class_id=klass.id, student_id=student.id, roll_number=roll))


def _report(rows):
    print("Seeded/updated:", len(rows))
    for row in rows:
        role = f" ({row['role']})" if row.get("role") else ""
        print(f"{row['email']}{role}: {row['password']} ({row['action']})")


def seed_students(app, json_path):
    """
    JSON: [{"name": "Stu Dent", "email": "s@school.edu", "rollNumber": "12",
            "className": "Class 11 A", "password": "..."}]
    ``className`` is optional and must name an existing class.
    """
    with app.app_context():
        rows = []
        for item in _load(json_path):
            student, password, action = _upsert_account(Student, item)
            roll = str(item.get("rollNumber") or "").strip()
            if roll:
                student.roll_number = roll
            if item.get("className"):
                _enroll(student, item["className"])
            rows.append({"email": student.email, "password": password, "action": action})
        db.session.commit()
        _report(rows)
        return rows


def seed_users(app, json_path):
    """
    JSON: [{"name": "Prof X", "email": "x@school.edu",
            "role": "instructor|lab_assistant|admin|superadmin", "password": "..."}]
    """
    with app.app_context():
        rows = []
        for item in _load(json_path):
            role = (item.get("role") or "instructor").strip().lower()
            if role not in STAFF_ROLES:
                raise ValueError(f"{item.get('email')}: unknown role {role!r}")
            user, password, action = _upsert_account(User, item, role=role)
            rows.append({"email": user.email, "password": password, "role": role, "action": action})
        db.session.commit()
        _report(rows)
        return rows


def reset_password(app, email, password=None):
    with app.app_context():
        email = email.strip().lower()
        account = User.query.filter_by(email=email).first() or Student.query.filter_by(email=email).first()
        if account is None:
            raise ValueError(f"{email}: no such account")
        password = password or rand_password()
        account.set_password(password)
        account.first_login = True
        db.session.commit()
        log.info("password reset for %s", email)
        return password


def init_db(app):
    with app.app_context():
        db.create_all()
        log.info("tables ready at %s", app.config["SQLALCHEMY_DATABASE_URI"])


def main(argv=None):
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    parser = argparse.ArgumentParser(description="Portal account and database tools")
    sub = parser.add_subparsers(dest="cmd", required=True)
    sub.add_parser("init-db")
    for name in ("seed-students", "seed-users"):
        sub.add_parser(name).add_argument("json_path")
    reset = sub.add_parser("reset-password")
    reset.add_argument("email")
    reset.add_argument("--password")
    args = parser.parse_args(argv)

    app = create_app()
    if args.cmd == "init-db":
        init_db(app)
    elif args.cmd == "seed-students":
        seed_students(app, args.json_path)
    elif args.cmd == "seed-users":
        seed_users(app, args.json_path)
    else:
        print(f"{args.email}: {reset_password(app, args.email, args.password)}")


if __name__ == "__main__":
    main()

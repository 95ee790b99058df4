import os, io, secrets, argparse, functools, time, hmac, hashlib, logging
from datetime import datetime, timedelta
from flask import (
    Flask, request, session, jsonify, abort, Response, send_file, g
)
from werkzeug.exceptions import HTTPException
from sqlalchemy import func, or_, case, cast, Text
from sqlalchemy.exc import IntegrityError
from dotenv import load_dotenv
import qrcode

load_dotenv()

from models import (db, utcnow, _as_naive_utc, User, Student, SchoolClass, ClassEnrollment,
                    StudentGroup, StudentGroupMembership, Lab, LabItem, Ticket, TicketComment,
                    Assignment, AssignmentTarget, Submission, Exam, ExamSchedule, ExamAssignment,
                    Section, Paragraph, Question, QuestionOption, ExamAttempt, QuestionResponse,
                    Tag, AdminNote, QueryLog, QUESTION_TYPES, TICKET_CATEGORIES,
                    TICKET_PRIORITIES, TICKET_STATUSES)
import importer
import extraction
import proctoring
import questionbank
import querylog
import scoring

# --------------------------------------------------------------------
# Utils
# --------------------------------------------------------------------

def parse_iso(value, field="date"):
    """Parse an ISO-8601 string from the client to naive UTC. Raises ValueError."""
    if value in (None, ""):
        return None
    try:
        dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        raise ValueError(f"Invalid {field}: {value}")
    return _as_naive_utc(dt)

def as_int(value, field, default=None, minimum=None, maximum=None):
    if value in (None, ""):
        if default is None:
            raise ValueError(f"{field} is required")
        return default
    try:
        num = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{field} must be a whole number")
    if minimum is not None and num < minimum:
        raise ValueError(f"{field} must be at least {minimum}")
    if maximum is not None and num > maximum:
        raise ValueError(f"{field} must be at most {maximum}")
    return num

def as_float(value, field, default=None, minimum=None):
    if value in (None, ""):
        if default is None:
            raise ValueError(f"{field} is required")
        return default
    try:
        num = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{field} must be a number")
    if minimum is not None and num < minimum:
        raise ValueError(f"{field} must be at least {minimum}")
    return num

def bilingual(value, field=None):
    """Coerce a plain string or {"en","pa"} dict into {"en","pa"}."""
    if isinstance(value, dict):
        out = {"en": str(value.get("en") or "").strip(), "pa": str(value.get("pa") or "").strip()}
    else:
        out = {"en": str(value or "").strip(), "pa": ""}
    if field and not (out["en"] or out["pa"]):
        raise ValueError(f"{field} is required")
    return out

def as_bool(value):
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)

def payload():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}

def ok(http_status=200, **data):
    body = {"success": True}
    body.update(data)
    return jsonify(body), http_status

# --------------------------------------------------------------------
# Config
# --------------------------------------------------------------------
APP_SECRET = os.environ.get("APP_SECRET") or secrets.token_hex(32)
DB_PATH = os.path.abspath(os.environ.get("PORTAL_DB", "portal.db"))
DB_URI  = os.environ.get("DATABASE_URL") or f"sqlite:///{DB_PATH}"
SHARE_HOST = os.environ.get("PORTAL_SHARE_HOST")  # optional override for QR links
CSRF_ENABLED = os.environ.get("CSRF_ENABLED", "1") == "1"
QUERY_LOG_ENABLED = os.environ.get("QUERY_LOG_ENABLED", "1") == "1"
TAB_SWITCH_GRACE_SEC = float(os.environ.get("TAB_SWITCH_GRACE_SEC", "10"))
MAX_VIOLATIONS = int(os.environ.get("MAX_VIOLATIONS", "3"))
AI_PACING = os.environ.get("AI_PACING", "1") == "1"

ADMIN_ROLES = ("admin", "superadmin")
TEACHING_ROLES = ("instructor", "lab_assistant", "admin")

def create_app(db_path=DB_URI, **overrides):
    app = Flask(__name__)
    app.config["SECRET_KEY"] = APP_SECRET
    app.config["SQLALCHEMY_DATABASE_URI"] = db_path
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(days=30)
    app.config["SESSION_COOKIE_NAME"] = "portal_session"
    app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
    app.config["CSRF_ENABLED"] = CSRF_ENABLED
    app.config["QUERY_LOG_ENABLED"] = QUERY_LOG_ENABLED
    app.config["TAB_SWITCH_GRACE_SEC"] = TAB_SWITCH_GRACE_SEC
    app.config["MAX_VIOLATIONS"] = MAX_VIOLATIONS
    app.config["AI_PACING"] = AI_PACING
    app.config.update(overrides)
    db.init_app(app)
    with app.app_context():
        db.create_all()
    return app

app = create_app()

# --------------------------------------------------------------------
# Errors
# --------------------------------------------------------------------
def _error(http_status, message, **extra):
    g.error_message = message
    body = {"success": False, "error": message}
    body.update(extra)
    return jsonify(body), http_status

@app.errorhandler(HTTPException)
def _http_error(exc):
    if exc.code and exc.code >= 500:
        app.logger.error("%s %s failed: %s", request.method, request.path, exc.description)
    return _error(exc.code or 500, exc.description or exc.name)

@app.errorhandler(ValueError)
def _validation_error(exc):
    db.session.rollback()
    return _error(400, str(exc))

@app.errorhandler(IntegrityError)
def _integrity_error(exc):
    db.session.rollback()
    app.logger.warning("integrity error on %s: %s", request.path, exc.orig)
    return _error(409, "Record conflicts with an existing one")

# --------------------------------------------------------------------
# Query log (every /api/ call)
# --------------------------------------------------------------------
@app.before_request
def _start_timer():
    g.started = time.perf_counter()

@app.after_request
def _log_query(resp):
    if not app.config.get("QUERY_LOG_ENABLED") or not request.path.startswith("/api/"):
        return resp
    if request.path.startswith("/api/admin/query-logs"):
        return resp
    duration = (time.perf_counter() - g.get("started", time.perf_counter())) * 1000
    success = resp.status_code < 400
    if not success:
        db.session.rollback()
    params = dict(request.args)
    body = request.get_json(silent=True) if request.is_json else None
    if isinstance(body, dict):
        params.update(body)
    querylog.record(
        route=request.path,
        method=request.method,
        params=params,
        query=request.query_string.decode("utf-8", "replace") or None,
        success=success,
        error=None if success else g.get("error_message") or f"HTTP {resp.status_code}",
        duration_ms=duration,
        user_id=session.get("user_id"),
    )
    return resp

# --------------------------------------------------------------------
# CSRF helpers (JSON header)
# --------------------------------------------------------------------
def _csrf_key():
    if "csrf_key" not in session:
        session["csrf_key"] = secrets.token_hex(16)
    return session["csrf_key"]

def csrf_token():
    secret = APP_SECRET.encode()
    key = _csrf_key().encode()
    return hmac.new(secret, key, hashlib.sha256).hexdigest()

@app.before_request
def _check_csrf():
    if not app.config.get("CSRF_ENABLED"):
        return
    if request.method not in ("POST", "PUT", "PATCH", "DELETE") or not request.path.startswith("/api/"):
        return
    token = request.headers.get("X-CSRF", "")
    if not hmac.compare_digest(token, csrf_token()):
        abort(400, "bad csrf")

# --------------------------------------------------------------------
# Auth/session helpers
# --------------------------------------------------------------------
def current_user():
    uid = session.get("user_id")
    return User.query.get(uid) if uid else None

def current_student():
    sid = session.get("student_id")
    return Student.query.get(sid) if sid else None

def logout_everyone():
    session.pop("user_id", None)
    session.pop("user_role", None)
    session.pop("student_id", None)
    session.pop("student_name", None)

def _role_allowed(user, roles):
    if not roles or user.role == "superadmin":
        return True
    if "admin" in roles and user.role == "admin":
        return True
    return user.role in roles

def require_user(*roles):
    def deco(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            u = current_user()
            if not u:
                abort(401, "Authentication required")
            if not _role_allowed(u, roles):
                abort(403, "Access denied")
            return fn(*args, **kwargs)
        return wrapper
    return deco

def require_student():
    def deco(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            if not current_student():
                abort(401, "Authentication required")
            return fn(*args, **kwargs)
        return wrapper
    return deco

def require_account():
    """Staff or student."""
    def deco(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            if not (current_user() or current_student()):
                abort(401, "Authentication required")
            return fn(*args, **kwargs)
        return wrapper
    return deco

def page_args(default_limit=20, max_limit=100):
    page = as_int(request.args.get("page"), "page", default=1, minimum=1)
    limit = as_int(request.args.get("limit"), "limit", default=default_limit, minimum=1, maximum=max_limit)
    return page, limit

def paginate(query, default_limit=20):
    page, limit = page_args(default_limit)
    total = query.order_by(None).count()
    items = query.offset((page - 1) * limit).limit(limit).all()
    return items, scoring.paginate_meta(total, page, limit)

# --------------------------------------------------------------------
# Login / Logout / Password
# --------------------------------------------------------------------
@app.route("/api/auth/csrf")
def auth_csrf():
    return ok(csrfToken=csrf_token())

@app.route("/api/auth/login", methods=["POST"])
def login():
    data = payload()
    email = (data.get("email") or "").strip().lower()
    pw = data.get("password") or ""
    if not email or not pw:
        abort(400, "Email and password are required")

    acct_user = User.query.filter(func.lower(User.email) == email).first()
    acct_student = None if acct_user else Student.query.filter(func.lower(Student.email) == email).first()

    if acct_user:
        if not acct_user.check_password(pw):
            abort(401, "Invalid credentials")
        logout_everyone()
        session["user_id"] = acct_user.id
        session["user_role"] = acct_user.role
        acct_user.last_login = utcnow()
        db.session.commit()
        app.logger.info("staff login %s (%s)", acct_user.email, acct_user.role)
        return ok(kind="user", user=acct_user.to_dict(), firstLogin=acct_user.first_login)
    if acct_student:
        if not acct_student.check_password(pw):
            abort(401, "Invalid credentials")
        logout_everyone()
        session["student_id"] = acct_student.id
        session["student_name"] = acct_student.name
        acct_student.last_login = utcnow()
        db.session.commit()
        app.logger.info("student login %s", acct_student.email)
        return ok(kind="student", student=acct_student.to_dict(), firstLogin=acct_student.first_login)
    abort(404, "Account not found")

@app.route("/api/auth/logout", methods=["POST"])
def logout():
    logout_everyone()
    return ok()

@app.route("/api/auth/me")
def auth_me():
    u = current_user()
    if u:
        return ok(kind="user", user=u.to_dict())
    s = current_student()
    if s:
        return ok(kind="student", student=s.to_dict())
    abort(401, "Authentication required")

@app.route("/api/auth/password", methods=["POST"])
@require_account()
def password_change():
    acc = current_user() or current_student()
    data = payload()
    current = data.get("currentPassword") or ""
    pw1 = data.get("newPassword") or ""
    if not acc.first_login and not acc.check_password(current):
        abort(400, "Current password is incorrect")
    if len(pw1) < 8:
        abort(400, "Use at least 8 characters")
    acc.set_password(pw1)
    acc.first_login = False
    db.session.commit()
    return ok(message="Password updated")

# --------------------------------------------------------------------
# Classes & groups
# --------------------------------------------------------------------
def _class_dict(klass):
    data = klass.to_dict()
    data["studentCount"] = sum(1 for e in klass.enrollments if e.status == "active")
    data["groupCount"] = len(klass.groups)
    return data

@app.route("/api/classes")
@require_user()
def classes_list():
    q = SchoolClass.query
    if request.args.get("gradeLevel"):
        q = q.filter_by(grade_level=as_int(request.args.get("gradeLevel"), "gradeLevel"))
    if request.args.get("academicYear"):
        q = q.filter_by(academic_year=request.args.get("academicYear"))
    classes = q.order_by(SchoolClass.grade_level.asc(), SchoolClass.section.asc()).all()
    return ok(classes=[_class_dict(c) for c in classes])

@app.route("/api/classes", methods=["POST"])
@require_user("admin")
def classes_create():
    data = payload()
    name = (data.get("name") or "").strip()
    if not name:
        abort(400, "Class name is required")
    teacher_id = data.get("classTeacherId")
    if teacher_id and not User.query.get(teacher_id):
        abort(400, "Class teacher not found")
    klass = SchoolClass(
        name=name,
        grade_level=as_int(data.get("gradeLevel"), "gradeLevel", minimum=1, maximum=12),
        section=(data.get("section") or "").strip() or None,
        stream=(data.get("stream") or "").strip() or None,
        academic_year=(data.get("academicYear") or "").strip() or None,
        class_teacher_id=teacher_id or None,
        max_students=as_int(data.get("maxStudents"), "maxStudents", default=60, minimum=1),
    )
    db.session.add(klass)
    db.session.commit()
    return ok(201, message=f"Class {klass.name} created", data=_class_dict(klass))

@app.route("/api/classes/<int:class_id>")
@require_user()
def classes_detail(class_id):
    klass = SchoolClass.query.get_or_404(class_id, description="Class not found")
    data = _class_dict(klass)
    data["groups"] = [grp.to_dict() for grp in klass.groups]
    return ok(data=data)

@app.route("/api/classes/<int:class_id>/students")
@require_user()
def classes_students(class_id):
    klass = SchoolClass.query.get_or_404(class_id, description="Class not found")
    rows = (ClassEnrollment.query
            .filter_by(class_id=klass.id, status="active")
            .order_by(ClassEnrollment.roll_number.asc())
            .all())
    students = []
    for e in rows:
        item = e.student.to_dict()
        item["classRollNumber"] = e.roll_number
        students.append(item)
    return ok(students=students, total=len(students))

@app.route("/api/classes/<int:class_id>/enroll", methods=["POST"])
@require_user("admin")
def classes_enroll(class_id):
    klass = SchoolClass.query.get_or_404(class_id, description="Class not found")
    data = payload()
    student_ids = data.get("studentIds")
    roll_numbers = data.get("rollNumbers") or []
    if not isinstance(student_ids, list) or not student_ids:
        abort(400, "Student IDs array is required")

    existing = {e.student_id: e for e in klass.enrollments}
    active = sum(1 for e in klass.enrollments if e.status == "active")
    newly_active = sum(1 for sid in set(student_ids)
                       if sid not in existing or existing[sid].status != "active")
    if active + newly_active > klass.max_students:
        abort(400, f"Class capacity exceeded ({klass.max_students} students max)")

    enrolled = []
    for index, sid in enumerate(student_ids):
        student = Student.query.get(sid)
        if not student:
            abort(400, f"Student {sid} not found")
        roll = roll_numbers[index] if index < len(roll_numbers) and roll_numbers[index] else None
        enrollment = existing.get(sid)
        if enrollment:
            enrollment.status = "active"
            if roll:
                enrollment.roll_number = int(roll)
        else:
            enrollment = ClassEnrollment(class_id=klass.id, student_id=sid,
                                         roll_number=int(roll) if roll else index + 1, status="active")
            db.session.add(enrollment)
            existing[sid] = enrollment
        enrolled.append(enrollment)
    db.session.commit()
    return ok(201, message=f"Enrolled {len(enrolled)} students",
              enrollments=[{"studentId": e.student_id, "rollNumber": e.roll_number} for e in enrolled])

@app.route("/api/classes/<int:class_id>/groups")
@require_user()
def groups_list(class_id):
    klass = SchoolClass.query.get_or_404(class_id, description="Class not found")
    groups = StudentGroup.query.filter_by(class_id=klass.id).order_by(StudentGroup.name.asc()).all()
    return ok(groups=[grp.to_dict() for grp in groups])

@app.route("/api/classes/<int:class_id>/groups", methods=["POST"])
@require_user(*TEACHING_ROLES)
def groups_create(class_id):
    klass = SchoolClass.query.get_or_404(class_id, description="Class not found")
    data = payload()
    name = (data.get("name") or "").strip()
    student_ids = data.get("studentIds") or []
    if not name:
        abort(400, "Group name is required")
    if not isinstance(student_ids, list) or not student_ids:
        abort(400, "A group needs at least one student")
    if StudentGroup.query.filter(StudentGroup.class_id == klass.id,
                                 func.lower(StudentGroup.name) == name.lower()).first():
        abort(409, "A group with this name already exists in this class")

    enrolled = {e.student_id for e in klass.enrollments if e.status == "active"}
    missing = [sid for sid in student_ids if sid not in enrolled]
    if missing:
        abort(400, f"Students not enrolled in this class: {', '.join(str(m) for m in missing)}")
    leader_id = data.get("leaderId") or student_ids[0]
    if leader_id not in student_ids:
        abort(400, "Leader must be a member of the group")

    grp = StudentGroup(class_id=klass.id, name=name,
                       description=(data.get("description") or "").strip() or None,
                       created_by_id=current_user().id)
    db.session.add(grp)
    db.session.flush()
    for sid in dict.fromkeys(student_ids):
        db.session.add(StudentGroupMembership(group_id=grp.id, student_id=sid,
                                              role="leader" if sid == leader_id else "member"))
    db.session.commit()
    return ok(201, message=f"Group {grp.name} created", data=grp.to_dict())

@app.route("/api/groups/<int:group_id>", methods=["DELETE"])
@require_user(*TEACHING_ROLES)
def groups_delete(group_id):
    grp = StudentGroup.query.get_or_404(group_id, description="Group not found")
    db.session.delete(grp)
    db.session.commit()
    return ok(message="Group deleted")

@app.route("/api/groups/<int:group_id>/assign-item", methods=["PUT"])
@require_user(*TEACHING_ROLES)
def groups_assign_item(group_id):
    grp = StudentGroup.query.get_or_404(group_id, description="Group not found")
    item_id = payload().get("itemId")
    if item_id:
        item = LabItem.query.get(item_id)
        if not item:
            abort(404, "Lab item not found")
        grp.assigned_item_id = item.id
        message = f"Assigned {item.item_number} to {grp.name}"
    else:
        grp.assigned_item_id = None
        message = f"Unassigned equipment from {grp.name}"
    db.session.commit()
    return ok(message=message, data=grp.to_dict())

# --------------------------------------------------------------------
# Labs & equipment
# --------------------------------------------------------------------
ITEM_STATUSES = ("active", "maintenance", "retired")

@app.route("/api/labs")
@require_user()
def labs_list():
    labs = Lab.query.order_by(Lab.name.asc()).all()
    return ok(labs=[lab.to_dict() for lab in labs])

@app.route("/api/labs", methods=["POST"])
@require_user("admin")
def labs_create():
    data = payload()
    name = (data.get("name") or "").strip()
    if not name:
        abort(400, "Lab name is required")
    if Lab.query.filter(func.lower(Lab.name) == name.lower()).first():
        abort(409, "A lab with this name already exists")
    capacity = data.get("capacity")
    lab = Lab(name=name, room_number=(data.get("roomNumber") or "").strip() or None,
              capacity=as_int(capacity, "capacity", minimum=0) if capacity not in (None, "") else None)
    db.session.add(lab)
    db.session.commit()
    return ok(201, data=lab.to_dict())

@app.route("/api/labs/<int:lab_id>")
@require_user()
def labs_detail(lab_id):
    lab = Lab.query.get_or_404(lab_id, description="Lab not found")
    return ok(data=lab.to_dict(with_items=True))

@app.route("/api/labs/<int:lab_id>", methods=["PUT"])
@require_user("admin")
def labs_update(lab_id):
    lab = Lab.query.get_or_404(lab_id, description="Lab not found")
    data = payload()
    if "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            abort(400, "Lab name is required")
        lab.name = name
    if "roomNumber" in data:
        lab.room_number = (data.get("roomNumber") or "").strip() or None
    if "capacity" in data:
        lab.capacity = as_int(data["capacity"], "capacity", minimum=0) if data["capacity"] not in (None, "") else None
    db.session.commit()
    return ok(data=lab.to_dict())

@app.route("/api/labs/<int:lab_id>", methods=["DELETE"])
@require_user("admin")
def labs_delete(lab_id):
    lab = Lab.query.get_or_404(lab_id, description="Lab not found")
    db.session.delete(lab)
    db.session.commit()
    return ok(message=f"Lab {lab.name} deleted")

@app.route("/api/labs/<int:lab_id>/items")
@require_user()
def lab_items_list(lab_id):
    lab = Lab.query.get_or_404(lab_id, description="Lab not found")
    q = LabItem.query.filter_by(lab_id=lab.id)
    if request.args.get("status"):
        q = q.filter_by(status=request.args["status"])
    return ok(items=[it.to_dict() for it in q.order_by(LabItem.item_number.asc()).all()])

def _apply_item_fields(item, data):
    if "itemNumber" in data:
        number = (data.get("itemNumber") or "").strip()
        if not number:
            raise ValueError("Item number is required")
        item.item_number = number
    if "itemType" in data:
        item.item_type = (data.get("itemType") or "pc").strip().lower()
    if "status" in data:
        if data["status"] not in ITEM_STATUSES:
            raise ValueError(f"Status must be one of {', '.join(ITEM_STATUSES)}")
        item.status = data["status"]
    if "notes" in data:
        item.notes = data.get("notes") or None

@app.route("/api/labs/<int:lab_id>/items", methods=["POST"])
@require_user("admin", "lab_assistant")
def lab_items_create(lab_id):
    lab = Lab.query.get_or_404(lab_id, description="Lab not found")
    data = payload()
    if not (data.get("itemNumber") or "").strip():
        abort(400, "Item number is required")
    if LabItem.query.filter_by(lab_id=lab.id, item_number=data["itemNumber"].strip()).first():
        abort(409, f"Item {data['itemNumber'].strip()} already exists in {lab.name}")
    item = LabItem(lab_id=lab.id)
    _apply_item_fields(item, data)
    db.session.add(item)
    db.session.commit()
    return ok(201, data=item.to_dict())

def _lab_item_or_404(lab_id, item_id):
    item = LabItem.query.filter_by(id=item_id, lab_id=lab_id).first()
    if not item:
        abort(404, "Item not found in this lab")
    return item

@app.route("/api/labs/<int:lab_id>/items/<int:item_id>", methods=["PUT"])
@require_user("admin", "lab_assistant")
def lab_items_update(lab_id, item_id):
    item = _lab_item_or_404(lab_id, item_id)
    _apply_item_fields(item, payload())
    db.session.commit()
    return ok(data=item.to_dict())

@app.route("/api/labs/<int:lab_id>/items/<int:item_id>", methods=["DELETE"])
@require_user("admin", "lab_assistant")
def lab_items_delete(lab_id, item_id):
    item = _lab_item_or_404(lab_id, item_id)
    db.session.delete(item)
    db.session.commit()
    return ok(message=f"Item {item.item_number} deleted")

# --------------------------------------------------------------------
# Tickets
# --------------------------------------------------------------------
def _next_ticket_number():
    last = Ticket.query.order_by(Ticket.id.desc()).first()
    seq = 1
    if last:
        try:
            seq = int(last.ticket_number.split("-", 1)[1]) + 1
        except (IndexError, ValueError):
            seq = last.id + 1
    return f"TKT-{seq:06d}"

def _ticket_visible_to(ticket, user, student):
    if student and not user:
        return ticket.created_by_student_id == student.id
    return True

def _ticket_or_404(ticket_id):
    ticket = Ticket.query.get_or_404(ticket_id, description="Ticket not found")
    if not _ticket_visible_to(ticket, current_user(), current_student()):
        abort(403, "Access denied")
    return ticket

@app.route("/api/tickets", methods=["POST"])
@require_account()
def tickets_create():
    user, student = current_user(), current_student()
    data = payload()
    title = (data.get("title") or "").strip()
    description = (data.get("description") or "").strip()
    category = data.get("category") or "other"
    priority = data.get("priority") or "medium"
    if not title:
        abort(400, "Title is required")
    if not description:
        abort(400, "Description is required")
    if category not in TICKET_CATEGORIES:
        abort(400, "Invalid category")
    if priority not in TICKET_PRIORITIES:
        abort(400, "Invalid priority")

    lab = None
    if data.get("labId"):
        lab = Lab.query.get(data["labId"])
        if not lab:
            abort(400, "Lab not found")
    item = None
    if data.get("itemId"):
        item = LabItem.query.get(data["itemId"])
        if not item:
            abort(400, "Item not found")
        if lab and item.lab_id != lab.id:
            abort(400, "Item does not belong to the selected lab")
        lab = lab or item.lab

    ticket = Ticket(
        ticket_number=_next_ticket_number(),
        title=title,
        description=description,
        category=category,
        priority=priority,
        status="open",
        lab_id=lab.id if lab else None,
        item_id=item.id if item else None,
        created_by_user_id=user.id if user else None,
        created_by_student_id=student.id if (student and not user) else None,
    )
    db.session.add(ticket)
    db.session.commit()
    app.logger.info("ticket %s opened by %s", ticket.ticket_number, ticket.creator_name)
    return ok(201, message=f"Ticket {ticket.ticket_number} created successfully", data=ticket.to_dict())

@app.route("/api/tickets")
@require_account()
def tickets_list():
    user, student = current_user(), current_student()
    q = Ticket.query
    status = request.args.get("status")
    if status and status != "all":
        q = q.filter(Ticket.status == status)
    for arg, col in (("priority", Ticket.priority), ("category", Ticket.category)):
        if request.args.get(arg):
            q = q.filter(col == request.args[arg])
    if request.args.get("labId"):
        q = q.filter(Ticket.lab_id == as_int(request.args["labId"], "labId"))

    if not user:
        q = q.filter(Ticket.created_by_student_id == student.id)
    else:
        if as_bool(request.args.get("mine")):
            q = q.filter(Ticket.created_by_user_id == user.id)
        if user.role == "instructor":
            q = q.filter(or_(Ticket.created_by_user_id == user.id, Ticket.assigned_to_id == user.id))

    status_rank = case({"open": 0, "in_progress": 1, "resolved": 2, "closed": 3}, value=Ticket.status, else_=4)
    priority_rank = case({"critical": 0, "high": 1, "medium": 2, "low": 3}, value=Ticket.priority, else_=4)
    q = q.order_by(status_rank, priority_rank, Ticket.created_at.desc(), Ticket.id.desc())
    tickets, meta = paginate(q)
    return ok(tickets=[t.to_dict() for t in tickets], pagination=meta)

@app.route("/api/tickets/stats")
@require_user("admin", "lab_assistant")
def tickets_stats():
    def grouped(col):
        return {k: n for k, n in db.session.query(col, func.count(Ticket.id)).group_by(col).all()}
    week_ago = utcnow() - timedelta(days=7)
    recent = (Ticket.query.filter(Ticket.updated_at >= week_ago)
              .order_by(Ticket.updated_at.desc()).limit(10).all())
    return ok(
        byStatus=grouped(Ticket.status),
        byPriority=grouped(Ticket.priority),
        byCategory=grouped(Ticket.category),
        recentActivity=[{"id": t.id, "ticketNumber": t.ticket_number, "title": t.title,
                         "status": t.status, "updatedAt": t.updated_at.isoformat()} for t in recent],
    )

@app.route("/api/tickets/<int:ticket_id>")
@require_account()
def tickets_detail(ticket_id):
    ticket = _ticket_or_404(ticket_id)
    return ok(data=ticket.to_dict(with_comments=True))

@app.route("/api/tickets/<int:ticket_id>", methods=["PUT"])
@require_user()
def tickets_update(ticket_id):
    ticket = Ticket.query.get_or_404(ticket_id, description="Ticket not found")
    data = payload()
    if "title" in data:
        if not (data.get("title") or "").strip():
            abort(400, "Title is required")
        ticket.title = data["title"].strip()
    if "description" in data:
        ticket.description = (data.get("description") or "").strip() or ticket.description
    if "status" in data:
        if data["status"] not in TICKET_STATUSES:
            abort(400, "Invalid status")
        ticket.status = data["status"]
    if "priority" in data:
        if data["priority"] not in TICKET_PRIORITIES:
            abort(400, "Invalid priority")
        ticket.priority = data["priority"]
    if "category" in data:
        if data["category"] not in TICKET_CATEGORIES:
            abort(400, "Invalid category")
        ticket.category = data["category"]
    if "assignedToId" in data:
        assignee_id = data.get("assignedToId")
        if assignee_id and not User.query.get(assignee_id):
            abort(400, "Assignee not found")
        ticket.assigned_to_id = assignee_id or None
        if assignee_id and ticket.status == "open":
            ticket.status = "in_progress"
    db.session.commit()
    return ok(data=ticket.to_dict())

@app.route("/api/tickets/<int:ticket_id>/resolve", methods=["PUT"])
@require_user("admin", "lab_assistant")
def tickets_resolve(ticket_id):
    ticket = Ticket.query.get_or_404(ticket_id, description="Ticket not found")
    ticket.status = "resolved"
    ticket.resolved_by_id = current_user().id
    ticket.resolved_at = utcnow()
    ticket.resolution_notes = (payload().get("resolutionNotes") or "").strip() or None
    db.session.commit()
    return ok(message=f"Ticket {ticket.ticket_number} resolved", data=ticket.to_dict())

@app.route("/api/tickets/<int:ticket_id>/close", methods=["PUT"])
@require_account()
def tickets_close(ticket_id):
    ticket = Ticket.query.get_or_404(ticket_id, description="Ticket not found")
    user, student = current_user(), current_student()
    is_admin = bool(user and user.is_admin)
    is_creator = (user and ticket.created_by_user_id == user.id) or \
                 (student and not user and ticket.created_by_student_id == student.id)
    if not (is_admin or is_creator):
        abort(403, "Only admins or the ticket creator can close tickets")
    ticket.status = "closed"
    db.session.commit()
    return ok(message=f"Ticket {ticket.ticket_number} closed", data=ticket.to_dict())

@app.route("/api/tickets/<int:ticket_id>/comments", methods=["POST"])
@require_account()
def tickets_comment(ticket_id):
    ticket = _ticket_or_404(ticket_id)
    content = (payload().get("content") or "").strip()
    if not content:
        abort(400, "Comment content is required")
    user, student = current_user(), current_student()
    comment = TicketComment(
        ticket_id=ticket.id,
        user_id=user.id if user else None,
        student_id=student.id if (student and not user) else None,
        author_name=user.name if user else student.name,
        content=content,
    )
    db.session.add(comment)
    ticket.updated_at = utcnow()
    db.session.commit()
    return ok(201, message="Comment added", data=comment.to_dict())

@app.route("/api/tickets/<int:ticket_id>", methods=["DELETE"])
@require_user("admin")
def tickets_delete(ticket_id):
    ticket = Ticket.query.get_or_404(ticket_id, description="Ticket not found")
    db.session.delete(ticket)
    db.session.commit()
    return ok(message=f"Ticket {ticket.ticket_number} deleted")

# --------------------------------------------------------------------
# Assignments & submissions
# --------------------------------------------------------------------
TARGET_TYPES = ("class", "group", "student")

def _apply_assignment_fields(assignment, data):
    if "title" in data or assignment.title is None:
        title = (data.get("title") or "").strip()
        if not title:
            raise ValueError("Title is required")
        assignment.title = title
    if "description" in data:
        assignment.description = data.get("description") or None
    if "subject" in data:
        assignment.subject = (data.get("subject") or "").strip() or None
    if "classId" in data:
        class_id = data.get("classId")
        if class_id and not SchoolClass.query.get(class_id):
            raise ValueError("Class not found")
        assignment.class_id = class_id or None
    if "maxMarks" in data:
        marks = as_float(data.get("maxMarks"), "maxMarks", default=100)
        if marks <= 0:
            raise ValueError("maxMarks must be greater than 0")
        assignment.max_marks = marks
    if "dueDate" in data:
        assignment.due_date = parse_iso(data.get("dueDate"), "dueDate")

def _student_targets(assignment, student):
    """Targets of an assignment that reach the student, most specific first."""
    class_ids = {e.class_id for e in student.enrollments if e.status == "active"}
    group_ids = {m.group_id for m in student.group_memberships}
    rank = {"student": 0, "group": 1, "class": 2}
    hits = []
    for t in assignment.targets:
        if (t.target_type == "student" and t.student_id == student.id) or \
           (t.target_type == "group" and t.group_id in group_ids) or \
           (t.target_type == "class" and t.class_id in class_ids):
            hits.append(t)
    return sorted(hits, key=lambda t: rank[t.target_type])

def _effective_due(assignment, targets):
    for t in targets:
        if t.due_date:
            return t.due_date
    return assignment.due_date

@app.route("/api/assignments")
@require_user(*TEACHING_ROLES)
def assignments_list():
    user = current_user()
    q = Assignment.query
    if not user.is_admin:
        q = q.filter(Assignment.created_by_id == user.id)
    if request.args.get("status"):
        q = q.filter(Assignment.status == request.args["status"])
    if request.args.get("classId"):
        q = q.filter(Assignment.class_id == as_int(request.args["classId"], "classId"))
    items, meta = paginate(q.order_by(Assignment.created_at.desc(), Assignment.id.desc()))
    return ok(assignments=[a.to_dict() for a in items], pagination=meta)

@app.route("/api/assignments", methods=["POST"])
@require_user(*TEACHING_ROLES)
def assignments_create():
    assignment = Assignment(created_by_id=current_user().id, status="draft")
    _apply_assignment_fields(assignment, payload())
    db.session.add(assignment)
    db.session.commit()
    return ok(201, message="Assignment created", data=assignment.to_dict())

@app.route("/api/assignments/<int:assignment_id>")
@require_user(*TEACHING_ROLES)
def assignments_detail(assignment_id):
    assignment = Assignment.query.get_or_404(assignment_id, description="Assignment not found")
    return ok(data=assignment.to_dict())

@app.route("/api/assignments/<int:assignment_id>", methods=["PUT"])
@require_user(*TEACHING_ROLES)
def assignments_update(assignment_id):
    assignment = Assignment.query.get_or_404(assignment_id, description="Assignment not found")
    _apply_assignment_fields(assignment, payload())
    db.session.commit()
    return ok(data=assignment.to_dict())

@app.route("/api/assignments/<int:assignment_id>", methods=["DELETE"])
@require_user(*TEACHING_ROLES)
def assignments_delete(assignment_id):
    assignment = Assignment.query.get_or_404(assignment_id, description="Assignment not found")
    if assignment.submissions:
        abort(400, f"Cannot delete: {len(assignment.submissions)} submission(s) exist")
    db.session.delete(assignment)
    db.session.commit()
    return ok(message="Assignment deleted")

@app.route("/api/assignments/<int:assignment_id>/publish", methods=["POST"])
@require_user(*TEACHING_ROLES)
def assignments_publish(assignment_id):
    assignment = Assignment.query.get_or_404(assignment_id, description="Assignment not found")
    if assignment.status == "published":
        abort(400, "Assignment is already published")
    assignment.status = "published"
    assignment.published_at = utcnow()
    db.session.commit()
    return ok(message="Assignment published", data=assignment.to_dict())

@app.route("/api/assignments/<int:assignment_id>/targets", methods=["POST"])
@require_user(*TEACHING_ROLES)
def assignments_add_targets(assignment_id):
    assignment = Assignment.query.get_or_404(assignment_id, description="Assignment not found")
    data = payload()
    target_type = data.get("targetType")
    ids = data.get("targetIds") or []
    if target_type not in TARGET_TYPES:
        abort(400, f"targetType must be one of {', '.join(TARGET_TYPES)}")
    if not isinstance(ids, list) or not ids:
        abort(400, "targetIds array is required")
    due = parse_iso(data.get("dueDate"), "dueDate")
    model = {"class": SchoolClass, "group": StudentGroup, "student": Student}[target_type]
    column = f"{target_type}_id"

    existing = {getattr(t, column) for t in assignment.targets if t.target_type == target_type}
    created = []
    for tid in dict.fromkeys(ids):
        if not model.query.get(tid):
            abort(400, f"{target_type.capitalize()} {tid} not found")
        if tid in existing:
            continue
        target = AssignmentTarget(assignment_id=assignment.id, target_type=target_type, due_date=due)
        setattr(target, column, tid)
        db.session.add(target)
        created.append(target)
    db.session.commit()
    return ok(201, message=f"Added {len(created)} target(s)", targets=[t.to_dict() for t in created])

@app.route("/api/assignments/targets/<int:target_id>", methods=["DELETE"])
@require_user(*TEACHING_ROLES)
def assignments_remove_target(target_id):
    target = AssignmentTarget.query.get_or_404(target_id, description="Target not found")
    db.session.delete(target)
    db.session.commit()
    return ok(message="Target removed")

@app.route("/api/assignments/my")
@require_student()
def assignments_mine():
    student = current_student()
    out = []
    for assignment in Assignment.query.filter_by(status="published").order_by(Assignment.due_date.asc()).all():
        targets = _student_targets(assignment, student)
        if not targets:
            continue
        item = assignment.to_dict()
        item.pop("targets", None)
        item.pop("submissionCount", None)
        due = _effective_due(assignment, targets)
        item["dueDate"] = due.isoformat() if due else None
        sub = Submission.query.filter_by(assignment_id=assignment.id, student_id=student.id).first()
        item["submission"] = sub.to_dict() if sub else None
        out.append(item)
    return ok(assignments=out)

@app.route("/api/assignments/<int:assignment_id>/submit", methods=["POST"])
@require_student()
def assignments_submit(assignment_id):
    student = current_student()
    assignment = Assignment.query.get_or_404(assignment_id, description="Assignment not found")
    targets = _student_targets(assignment, student)
    if assignment.status != "published" or not targets:
        abort(403, "This assignment is not assigned to you")
    content = (payload().get("content") or "").strip()
    if not content:
        abort(400, "Submission content is required")

    now = utcnow()
    due = _effective_due(assignment, targets)
    status = "late" if due and now > due else "submitted"
    sub = Submission.query.filter_by(assignment_id=assignment.id, student_id=student.id).first()
    if sub:
        if sub.status != "needs_revision" and sub.marks is not None:
            abort(400, "Submission already graded")
        sub.content = content
        sub.status = status
        sub.submitted_at = now
    else:
        sub = Submission(assignment_id=assignment.id, student_id=student.id,
                         content=content, status=status, submitted_at=now)
        db.session.add(sub)
    db.session.commit()
    return ok(201, message="Submitted late" if status == "late" else "Submitted", data=sub.to_dict())

@app.route("/api/assignments/<int:assignment_id>/submissions")
@require_user(*TEACHING_ROLES)
def assignments_submissions(assignment_id):
    assignment = Assignment.query.get_or_404(assignment_id, description="Assignment not found")
    subs = (Submission.query.filter_by(assignment_id=assignment.id)
            .order_by(Submission.submitted_at.asc()).all())
    return ok(submissions=[s.to_dict() for s in subs], total=len(subs))

@app.route("/api/submissions/<int:submission_id>/grade", methods=["PUT"])
@require_user(*TEACHING_ROLES)
def submissions_grade(submission_id):
    sub = Submission.query.get_or_404(submission_id, description="Submission not found")
    data = payload()
    marks = as_float(data.get("marks"), "marks", minimum=0)
    if marks > sub.assignment.max_marks:
        abort(400, f"Marks cannot exceed {sub.assignment.max_marks:g}")
    sub.marks = marks
    sub.feedback = (data.get("feedback") or "").strip() or None
    sub.status = "needs_revision" if as_bool(data.get("needsRevision")) else "graded"
    sub.graded_at = utcnow()
    sub.graded_by_id = current_user().id
    db.session.commit()
    return ok(data=sub.to_dict())

# --------------------------------------------------------------------
# Exam administration
# --------------------------------------------------------------------
def _exam_or_404(exam_id):
    return Exam.query.get_or_404(exam_id, description="Exam not found")

def _section_or_404(exam, section_id):
    section = Section.query.filter_by(id=section_id, exam_id=exam.id).first()
    if not section:
        abort(404, "Section not found")
    return section

def _apply_exam_fields(exam, data):
    if "title" in data or exam.title is None:
        exam.title = bilingual(data.get("title"), "Title")
    if "description" in data:
        exam.description = data.get("description") or None
    if "instructions" in data:
        instructions = data.get("instructions") or []
        if isinstance(instructions, str):
            instructions = [line.strip() for line in instructions.splitlines() if line.strip()]
        exam.instructions = list(instructions)
    if "duration" in data or exam.duration is None:
        exam.duration = as_int(data.get("duration"), "duration", default=60, minimum=1)
    for key, attr in (("negativeMarking", "negative_marking"), ("securityMode", "security_mode"),
                      ("isPublished", "is_published")):
        if key in data:
            setattr(exam, attr, as_bool(data[key]))

def _exam_summary(exam):
    data = exam.to_dict()
    data["sectionCount"] = len(exam.sections)
    data["questionCount"] = sum(len(s.questions) for s in exam.sections)
    data["assignedCount"] = len(exam.assignments)
    data["attemptCount"] = sum(1 for a in exam.attempts if a.status == "submitted")
    return data

@app.route("/api/admin/exams")
@require_user("admin")
def admin_exams_list():
    exams = Exam.query.order_by(Exam.created_at.desc(), Exam.id.desc()).all()
    return ok(exams=[_exam_summary(e) for e in exams])

@app.route("/api/admin/exams", methods=["POST"])
@require_user("admin")
def admin_exams_create():
    exam = Exam(created_by_id=current_user().id)
    _apply_exam_fields(exam, payload())
    db.session.add(exam)
    db.session.commit()
    return ok(201, data=exam.to_dict())

@app.route("/api/admin/exams/<int:exam_id>")
@require_user("admin")
def admin_exams_detail(exam_id):
    exam = _exam_or_404(exam_id)
    data = _exam_summary(exam)
    data["sections"] = [s.to_dict() for s in exam.sections]
    data["schedules"] = [s.to_dict() for s in exam.schedules]
    return ok(data=data)

@app.route("/api/admin/exams/<int:exam_id>", methods=["PUT"])
@require_user("admin")
def admin_exams_update(exam_id):
    exam = _exam_or_404(exam_id)
    _apply_exam_fields(exam, payload())
    db.session.commit()
    return ok(data=exam.to_dict())

@app.route("/api/admin/exams/<int:exam_id>", methods=["DELETE"])
@require_user("admin")
def admin_exams_delete(exam_id):
    exam = _exam_or_404(exam_id)
    db.session.delete(exam)
    db.session.commit()
    return ok(message="Exam deleted")

@app.route("/api/admin/exams/<int:exam_id>/qr.png")
@require_user("admin")
def admin_exams_qr(exam_id):
    exam = _exam_or_404(exam_id)
    base = (SHARE_HOST or request.url_root).rstrip("/")
    target = f"{base}/student/exam/{exam.id}"

    qr = qrcode.QRCode(
        version=None,  # auto
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=8,
        border=2,
    )
    qr.add_data(target)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buf = io.BytesIO()
    img.save(buf, format="PNG")
    buf.seek(0)
    return send_file(buf, mimetype="image/png", download_name=f"exam-{exam.id}.png")

# ---------- Sections ----------
@app.route("/api/admin/exams/<int:exam_id>/sections", methods=["POST"])
@require_user("admin")
def admin_sections_create(exam_id):
    exam = _exam_or_404(exam_id)
    data = payload()
    next_order = max([s.order for s in exam.sections] or [0]) + 1
    section = Section(exam_id=exam.id, name=bilingual(data.get("name"), "Section name"),
                      order=as_int(data.get("order"), "order", default=next_order, minimum=1))
    db.session.add(section)
    db.session.commit()
    return ok(201, data=section.to_dict())

@app.route("/api/admin/exams/<int:exam_id>/sections/<int:section_id>", methods=["PUT"])
@require_user("admin")
def admin_sections_update(exam_id, section_id):
    section = _section_or_404(_exam_or_404(exam_id), section_id)
    data = payload()
    if "name" in data:
        section.name = bilingual(data.get("name"), "Section name")
    if "order" in data:
        section.order = as_int(data.get("order"), "order", minimum=1)
    db.session.commit()
    return ok(data=section.to_dict())

@app.route("/api/admin/exams/<int:exam_id>/sections/<int:section_id>", methods=["DELETE"])
@require_user("admin")
def admin_sections_delete(exam_id, section_id):
    exam = _exam_or_404(exam_id)
    section = _section_or_404(exam, section_id)
    db.session.delete(section)
    db.session.flush()
    db.session.refresh(exam)
    exam.recompute_total_marks()
    db.session.commit()
    return ok(message="Section deleted")

# ---------- Questions ----------
def _normalize_options(raw):
    options = []
    for idx, opt in enumerate(raw or []):
        if isinstance(opt, dict):
            key = str(opt.get("id") or opt.get("key") or chr(ord("a") + idx)).strip().lower()
            text = bilingual(opt.get("text"))
            image = opt.get("imageUrl")
        else:
            key, text, image = chr(ord("a") + idx), bilingual(opt), None
        if not (text["en"] or text["pa"] or image):
            continue
        options.append({"key": key, "text": text, "imageUrl": image})
    keys = [o["key"] for o in options]
    if len(keys) != len(set(keys)):
        raise ValueError("Option keys must be unique")
    return options

def _apply_question_fields(question, data, exam):
    """Validate a question payload and write it onto ``question``. Raises ValueError."""
    qtype = data.get("type", question.type or "mcq_single")
    if qtype not in QUESTION_TYPES:
        raise ValueError(f"Invalid question type: {qtype}")
    question.type = qtype
    if "text" in data or question.text is None:
        question.text = bilingual(data.get("text"), "Question text")
    if "explanation" in data:
        expl = bilingual(data.get("explanation"))
        question.explanation = expl if (expl["en"] or expl["pa"]) else None
    if "marks" in data or question.marks is None:
        question.marks = 0 if qtype == "paragraph" else as_float(data.get("marks"), "marks", default=4, minimum=0)
    if "negativeMarks" in data:
        question.negative_marks = as_float(data.get("negativeMarks"), "negativeMarks", default=0, minimum=0)
    if "imageUrl" in data:
        question.image_url = data.get("imageUrl") or None
    if "tags" in data:
        question.tags = questionbank.ensure_tags(questionbank.clean_tags(data.get("tags"))) or None
    if "parentId" in data:
        parent_id = data.get("parentId")
        if parent_id:
            parent = Question.query.get(parent_id)
            if not parent or parent.section.exam_id != exam.id:
                raise ValueError("Parent question not found in this exam")
        question.parent_id = parent_id or None

    if "options" in data:
        options = _normalize_options(data.get("options"))
        question.options = [QuestionOption(key=o["key"], text=o["text"], image_url=o["imageUrl"], order=i)
                            for i, o in enumerate(options, start=1)]
    if qtype in ("mcq_single", "mcq_multiple") and len(question.options) < 2:
        raise ValueError("Multiple choice questions need at least two options")

    if "correctAnswer" in data:
        question.correct_answer = scoring.normalize_answer(data.get("correctAnswer"))
    answer = question.correct_answer or []
    if qtype in ("mcq_single", "mcq_multiple"):
        keys = {o.key for o in question.options}
        if not answer:
            raise ValueError("Correct answer is required")
        if any(a not in keys for a in answer):
            raise ValueError("Correct answer must reference an option")
        if qtype == "mcq_single" and len(answer) != 1:
            raise ValueError("Single choice questions take exactly one correct answer")

    if qtype == "paragraph" and ("paragraphText" in data or "text" in data):
        content = bilingual(data.get("paragraphText") or data.get("text"), "Paragraph text")
        if question.paragraph is None:
            question.paragraph = Paragraph(text=question.text, content=content)
        else:
            question.paragraph.text = question.text
            question.paragraph.content = content
    return question

@app.route("/api/admin/exams/<int:exam_id>/sections/<int:section_id>/questions")
@require_user("admin")
def admin_questions_list(exam_id, section_id):
    section = _section_or_404(_exam_or_404(exam_id), section_id)
    return ok(questions=[q.to_dict(include_answer=True) for q in section.questions])

@app.route("/api/admin/exams/<int:exam_id>/sections/<int:section_id>/questions", methods=["POST"])
@require_user("admin")
def admin_questions_create(exam_id, section_id):
    exam = _exam_or_404(exam_id)
    section = _section_or_404(exam, section_id)
    data = payload()
    next_order = max([q.order for q in section.questions] or [0]) + 1
    question = Question(section=section, order=as_int(data.get("order"), "order", default=next_order, minimum=1),
                        correct_answer=[])
    _apply_question_fields(question, data, exam)
    db.session.add(question)
    db.session.flush()
    exam.recompute_total_marks()
    db.session.commit()
    return ok(201, data=question.to_dict(include_answer=True))

def _question_or_404(section, question_id):
    question = Question.query.filter_by(id=question_id, section_id=section.id).first()
    if not question:
        abort(404, "Question not found")
    return question

def _delete_questions(questions):
    """Delete questions with their responses, detach children, refresh exam totals."""
    ids = [q.id for q in questions]
    sections = {q.section for q in questions}
    Question.query.filter(Question.parent_id.in_(ids)).update({"parent_id": None}, synchronize_session=False)
    QuestionResponse.query.filter(QuestionResponse.question_id.in_(ids)).delete(synchronize_session=False)
    ExamAttempt.query.filter(ExamAttempt.current_question_id.in_(ids)).update(
        {"current_question_id": None}, synchronize_session=False)
    for question in questions:
        db.session.delete(question)
    db.session.flush()
    for section in sections:
        db.session.refresh(section)
    for exam in {s.exam for s in sections}:
        exam.recompute_total_marks()
    return len(ids)

@app.route("/api/admin/exams/<int:exam_id>/sections/<int:section_id>/questions/<int:question_id>", methods=["PUT"])
@require_user("admin")
def admin_questions_update(exam_id, section_id, question_id):
    exam = _exam_or_404(exam_id)
    section = _section_or_404(exam, section_id)
    question = _question_or_404(section, question_id)
    _apply_question_fields(question, payload(), exam)
    exam.recompute_total_marks()
    db.session.commit()
    return ok(data=question.to_dict(include_answer=True))

@app.route("/api/admin/exams/<int:exam_id>/sections/<int:section_id>/questions/<int:question_id>", methods=["DELETE"])
@require_user("admin")
def admin_questions_delete(exam_id, section_id, question_id):
    exam = _exam_or_404(exam_id)
    section = _section_or_404(exam, section_id)
    _delete_questions([_question_or_404(section, question_id)])
    db.session.commit()
    return ok(message="Question deleted")

@app.route("/api/admin/exams/<int:exam_id>/sections/<int:section_id>/questions/reorder", methods=["POST"])
@require_user("admin")
def admin_questions_reorder(exam_id, section_id):
    section = _section_or_404(_exam_or_404(exam_id), section_id)
    ids = payload().get("questionIds") or []
    by_id = {q.id: q for q in section.questions}
    if not isinstance(ids, list) or sorted(ids) != sorted(by_id):
        abort(400, "questionIds must list every question of the section exactly once")
    for order, qid in enumerate(ids, start=1):
        by_id[qid].order = order
    db.session.commit()
    return ok(message="Order updated")

# ---------- Import ----------
def _pick_language(en, pa, language):
    return {
        "en": en if language in ("both", "en") else "",
        "pa": pa if language in ("both", "pa") else "",
    }

def _import_rows(exam, rows, language):
    """Create questions from parsed import rows. Returns the number imported."""
    sections = {s.id: s for s in exam.sections}
    by_section = {}
    for row in rows:
        section_id = importer.to_int(row.get("section"), None)
        if row.get("error") or section_id not in sections:
            continue
        by_section.setdefault(section_id, []).append(row)

    imported = 0
    for section_id, section_rows in by_section.items():
        section = sections[section_id]
        order = max([q.order for q in section.questions] or [0])
        row_to_question = {}
        for row in sorted(section_rows, key=lambda r: importer.to_int(r.get("row"), 0)):
            order += 1
            parent = None
            parent_row = importer.to_int(row.get("parentRow"), None)
            if parent_row:
                parent = row_to_question.get(parent_row)
                if parent is None:
                    raise ValueError(
                        f"Parent question at row {parent_row} not found for question at row {row.get('row')}. "
                        "Ensure parent appears before child in the CSV.")
            qtype = row.get("type") or "mcq_single"
            text = _pick_language(row.get("textEn", ""), row.get("textPa", ""), language)
            explanation = None
            if row.get("explanationEn") or row.get("explanationPa"):
                explanation = _pick_language(row.get("explanationEn", ""), row.get("explanationPa", ""), language)
            question = Question(
                section=section,
                type=qtype,
                text=text,
                explanation=explanation,
                correct_answer=importer.row_correct_answer(row),
                marks=0 if qtype == "paragraph" else float(row.get("marks") or 0),
                negative_marks=float(row.get("negativeMarks") or 0),
                order=order,
                parent=parent,
            )
            if qtype == "paragraph":
                question.paragraph = Paragraph(text=text, content=dict(text))
            if qtype in ("mcq_single", "mcq_multiple"):
                question.options = [
                    QuestionOption(key=o["key"], text=o["text"], order=i)
                    for i, o in enumerate(importer.row_options(row), start=1)
                ]
            db.session.add(question)
            row_to_question[importer.to_int(row.get("row"), None)] = question
            imported += 1
    return imported

@app.route("/api/admin/exams/<int:exam_id>/import/preview", methods=["POST"])
@require_user("admin")
def admin_import_preview(exam_id):
    exam = _exam_or_404(exam_id)
    data = payload()
    default_section = _section_or_404(exam, data["sectionId"]) if data.get("sectionId") else None
    rows = importer.parse_import_text(data.get("text"), exam.sections, default_section)
    valid = sum(1 for r in rows if not r["error"])
    return ok(rows=rows, validCount=valid, errorCount=len(rows) - valid)

@app.route("/api/admin/exams/<int:exam_id>/import", methods=["POST"])
@require_user("admin")
def admin_import(exam_id):
    exam = _exam_or_404(exam_id)
    data = payload()
    language = data.get("language") or "both"
    if language not in ("both", "en", "pa"):
        abort(400, "language must be en, pa or both")
    rows = data.get("questions")
    if data.get("text"):
        default_section = _section_or_404(exam, data["sectionId"]) if data.get("sectionId") else None
        rows = importer.parse_import_text(data["text"], exam.sections, default_section)
    if not isinstance(rows, list) or not rows:
        abort(400, "No questions provided")
    valid = [r for r in rows if isinstance(r, dict) and not r.get("error")]
    if not valid:
        abort(400, "No valid questions")

    imported = _import_rows(exam, valid, language)
    db.session.flush()
    exam.recompute_total_marks()
    db.session.commit()
    app.logger.info("imported %d question(s) into exam %s", imported, exam.id)
    return ok(imported=imported, skipped=len(rows) - imported, totalMarks=exam.total_marks)

@app.route("/api/admin/exams/<int:exam_id>/import/template")
@require_user("admin")
def admin_import_template(exam_id):
    exam = _exam_or_404(exam_id)
    body = importer.build_template_csv(exam.sections)
    return Response(
        body,
        mimetype="text/csv",
        headers={"Content-Disposition": "attachment; filename=master_import_template.csv"},
    )

# ---------- Schedules & assignment ----------
@app.route("/api/admin/exams/<int:exam_id>/schedules")
@require_user("admin")
def admin_schedules_list(exam_id):
    exam = _exam_or_404(exam_id)
    now = utcnow()
    return ok(schedules=[dict(s.to_dict(), state=s.state(now)) for s in exam.schedules])

@app.route("/api/admin/exams/<int:exam_id>/schedules", methods=["POST"])
@require_user("admin")
def admin_schedules_create(exam_id):
    exam = _exam_or_404(exam_id)
    data = payload()
    start = parse_iso(data.get("startTime"), "startTime")
    end = parse_iso(data.get("endTime"), "endTime")
    if not start or not end:
        abort(400, "startTime and endTime are required")
    if end <= start:
        abort(400, "End time must be after start time")
    sched = ExamSchedule(exam_id=exam.id, start_time=start, end_time=end)
    db.session.add(sched)
    db.session.commit()
    return ok(201, data=sched.to_dict())

@app.route("/api/admin/exams/<int:exam_id>/schedules/<int:schedule_id>", methods=["DELETE"])
@require_user("admin")
def admin_schedules_delete(exam_id, schedule_id):
    sched = ExamSchedule.query.filter_by(id=schedule_id, exam_id=exam_id).first()
    if not sched:
        abort(404, "Schedule not found")
    ExamAssignment.query.filter_by(schedule_id=sched.id).update({"schedule_id": None})
    db.session.delete(sched)
    db.session.commit()
    return ok(message="Schedule deleted")

def _finished_attempts(exam_id, student_id):
    return ExamAttempt.query.filter(
        ExamAttempt.exam_id == exam_id,
        ExamAttempt.student_id == student_id,
        ExamAttempt.status.in_(("submitted", "abandoned")),
    ).count()

@app.route("/api/admin/exams/<int:exam_id>/assign")
@require_user("admin")
def admin_assign_list(exam_id):
    exam = _exam_or_404(exam_id)
    rows = []
    for a in sorted(exam.assignments, key=lambda a: (a.student.name or "").lower()):
        rows.append({
            "id": a.id,
            "student": a.student.to_dict(),
            "maxAttempts": a.max_attempts,
            "attemptsUsed": _finished_attempts(exam.id, a.student_id),
            "schedule": a.schedule.to_dict() if a.schedule else None,
        })
    return ok(assignments=rows)

@app.route("/api/admin/exams/<int:exam_id>/assign", methods=["POST"])
@require_user("admin")
def admin_assign(exam_id):
    exam = _exam_or_404(exam_id)
    data = payload()
    student_ids = data.get("studentIds")
    if not isinstance(student_ids, list) or not student_ids:
        abort(400, "studentIds array is required")
    max_attempts = as_int(data.get("maxAttempts"), "maxAttempts", default=1, minimum=1)
    schedule_id = data.get("scheduleId") or None
    if schedule_id and not ExamSchedule.query.filter_by(id=schedule_id, exam_id=exam.id).first():
        abort(400, "Schedule does not belong to this exam")

    existing = {a.student_id: a for a in exam.assignments}
    assigned = 0
    for sid in dict.fromkeys(student_ids):
        if not Student.query.get(sid):
            abort(400, f"Student {sid} not found")
        row = existing.get(sid)
        if row is None:
            row = ExamAssignment(exam_id=exam.id, student_id=sid)
            db.session.add(row)
        row.max_attempts = max_attempts
        row.schedule_id = schedule_id
        assigned += 1
    db.session.commit()
    return ok(message=f"Assigned {assigned} student(s)", assigned=assigned)

@app.route("/api/admin/exams/<int:exam_id>/monitor")
@require_user("admin")
def admin_monitor(exam_id):
    exam = _exam_or_404(exam_id)
    now = utcnow()
    rows = []
    started = set()
    for attempt in sorted(exam.attempts, key=lambda a: a.started_at, reverse=True):
        started.add(attempt.student_id)
        answered = sum(1 for r in attempt.responses if scoring.is_attempted(r.answer))
        rows.append({
            "attemptId": attempt.id,
            "student": attempt.student.to_dict() if attempt.student else None,
            "status": attempt.status,
            "startedAt": attempt.started_at.isoformat(),
            "submittedAt": attempt.submitted_at.isoformat() if attempt.submitted_at else None,
            "remainingSeconds": proctoring.remaining_seconds(attempt, exam, now) if attempt.status == "in_progress" else 0,
            "answered": answered,
            "violations": attempt.violation_count,
            "paused": attempt.paused_at is not None,
            "score": attempt.total_score,
        })
    counts = {
        "assigned": len(exam.assignments),
        "inProgress": sum(1 for r in rows if r["status"] == "in_progress"),
        "submitted": sum(1 for r in rows if r["status"] == "submitted"),
        "notStarted": sum(1 for a in exam.assignments if a.student_id not in started),
    }
    return ok(exam=exam.to_dict(), attempts=rows, counts=counts)

# ---------- Reports & manual grading ----------
def _question_review(question, resp):
    data = question.to_dict(include_answer=True)
    data["yourAnswer"] = resp.answer if resp else None
    data["markedForReview"] = resp.marked_for_review if resp else False
    data["isCorrect"] = resp.is_correct if resp else None
    data["marksAwarded"] = resp.marks_awarded if resp else None
    return data

def _attempt_review(attempt):
    responses = attempt.response_map()
    questions = [_question_review(q, responses.get(q.id))
                 for section in attempt.exam.sections for q in section.questions]
    return {
        "attemptId": attempt.id,
        "status": attempt.status,
        "student": attempt.student.to_dict() if attempt.student else None,
        "exam": attempt.exam.to_dict(),
        "startedAt": attempt.started_at.isoformat(),
        "submittedAt": attempt.submitted_at.isoformat() if attempt.submitted_at else None,
        "autoSubmit": attempt.auto_submit,
        "violations": attempt.violation_count,
        "totalScore": attempt.total_score,
        "summary": scoring.attempt_summary(attempt),
        "questions": questions,
    }

@app.route("/api/admin/reports/exam/<int:exam_id>")
@require_user("admin")
def admin_report_exam(exam_id):
    exam = _exam_or_404(exam_id)
    return ok(report=scoring.exam_report(exam, exam.attempts))

@app.route("/api/admin/reports/attempts/<int:attempt_id>")
@require_user("admin")
def admin_report_attempt(attempt_id):
    attempt = ExamAttempt.query.get_or_404(attempt_id, description="Attempt not found")
    return ok(attempt=_attempt_review(attempt))

@app.route("/api/admin/attempts/<int:attempt_id>/responses/<int:question_id>/grade", methods=["PUT"])
@require_user("admin")
def admin_grade_response(attempt_id, question_id):
    attempt = ExamAttempt.query.get_or_404(attempt_id, description="Attempt not found")
    resp = QuestionResponse.query.filter_by(attempt_id=attempt.id, question_id=question_id).first()
    if not resp:
        abort(404, "Response not found")
    if resp.question.type not in scoring.MANUAL_TYPES:
        abort(400, "Only descriptive answers are graded manually")
    marks = as_float(payload().get("marks"), "marks", minimum=0)
    if marks > (resp.question.marks or 0):
        abort(400, f"Marks cannot exceed {resp.question.marks:g}")
    resp.marks_awarded = marks
    resp.is_correct = marks > 0
    scoring.recompute_total(attempt)
    db.session.commit()
    return ok(totalScore=attempt.total_score, marksAwarded=marks)

# ---------- Notes ----------
@app.route("/api/admin/notes")
@require_user("admin")
def admin_notes_list():
    q = AdminNote.query
    search = (request.args.get("search") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(or_(AdminNote.title.ilike(like), cast(AdminNote.content, Text).ilike(like)))
    notes, meta = paginate(q.order_by(AdminNote.updated_at.desc(), AdminNote.id.desc()))
    return ok(notes=[n.to_dict() for n in notes], pagination=meta)

@app.route("/api/admin/notes", methods=["POST"])
@require_user("admin")
def admin_notes_create():
    data = payload()
    title = (data.get("title") or "").strip()
    if not title:
        abort(400, "Title is required")
    if data.get("content") in (None, ""):
        abort(400, "Content is required")
    note = AdminNote(title=title, content=data["content"], author_id=current_user().id)
    db.session.add(note)
    db.session.commit()
    return ok(201, data=note.to_dict())

@app.route("/api/admin/notes/<int:note_id>", methods=["PUT"])
@require_user("admin")
def admin_notes_update(note_id):
    note = AdminNote.query.get_or_404(note_id, description="Note not found")
    data = payload()
    if "title" in data:
        if not (data.get("title") or "").strip():
            abort(400, "Title is required")
        note.title = data["title"].strip()
    if "content" in data:
        note.content = data["content"]
    db.session.commit()
    return ok(data=note.to_dict())

@app.route("/api/admin/notes/<int:note_id>", methods=["DELETE"])
@require_user("admin")
def admin_notes_delete(note_id):
    note = AdminNote.query.get_or_404(note_id, description="Note not found")
    db.session.delete(note)
    db.session.commit()
    return ok(message="Note deleted")

# ---------- Question bank ----------
def _bank_dict(question):
    data = question.to_dict(include_answer=True)
    section = question.section
    data["section"] = {"id": section.id, "name": section.name,
                       "exam": {"id": section.exam.id, "title": section.exam.title}}
    return data

@app.route("/api/admin/questions")
@require_user("admin")
def admin_bank_list():
    q = Question.query.filter(Question.parent_id.is_(None))
    qtype = request.args.get("type") or "all"
    if qtype != "all":
        if qtype not in QUESTION_TYPES:
            abort(400, f"Invalid question type: {qtype}")
        q = q.filter(Question.type == qtype)
    if request.args.get("examId"):
        exam_id = as_int(request.args.get("examId"), "examId")
        q = q.join(Section).filter(Section.exam_id == exam_id)
    tag = " ".join((request.args.get("tag") or "").split())
    if tag:
        q = q.filter(cast(Question.tags, Text).ilike(f'%"{tag}"%'))
    search = (request.args.get("search") or "").strip()
    if search:
        q = q.filter(cast(Question.text, Text).ilike(f"%{search}%"))
    questions, meta = paginate(q.order_by(Question.created_at.desc(), Question.id.desc()))
    return ok(questions=[_bank_dict(x) for x in questions], pagination=meta)

@app.route("/api/admin/questions/duplicates")
@require_user("admin")
def admin_bank_duplicates():
    threshold = as_int(request.args.get("threshold"), "threshold",
                       default=questionbank.DUPLICATE_THRESHOLD, minimum=50, maximum=100)
    candidates = Question.query.filter(Question.type != "paragraph").order_by(Question.id).all()
    groups = questionbank.duplicate_groups(candidates, threshold=threshold)
    return ok(groups=[[_bank_dict(q) for q in group] for group in groups])

@app.route("/api/admin/questions/<int:question_id>")
@require_user("admin")
def admin_bank_detail(question_id):
    question = Question.query.get_or_404(question_id, description="Question not found")
    return ok(data=_bank_dict(question))

@app.route("/api/admin/questions/<int:question_id>", methods=["PUT"])
@require_user("admin")
def admin_bank_update(question_id):
    question = Question.query.get_or_404(question_id, description="Question not found")
    exam = question.section.exam
    _apply_question_fields(question, payload(), exam)
    exam.recompute_total_marks()
    db.session.commit()
    return ok(data=_bank_dict(question))

@app.route("/api/admin/questions/<int:question_id>", methods=["DELETE"])
@require_user("admin")
def admin_bank_delete(question_id):
    question = Question.query.get_or_404(question_id, description="Question not found")
    _delete_questions([question])
    db.session.commit()
    return ok(message="Question deleted")

@app.route("/api/admin/questions/bulk-delete", methods=["POST"])
@require_user("admin")
def admin_bank_bulk_delete():
    ids = payload().get("questionIds")
    if not isinstance(ids, list) or not ids:
        abort(400, "questionIds is required")
    ids = [as_int(i, "questionIds") for i in ids]
    questions = Question.query.filter(Question.id.in_(ids)).all()
    deleted = _delete_questions(questions) if questions else 0
    db.session.commit()
    app.logger.info("bulk deleted %d questions by %s", deleted, current_user().email)
    return ok(deletedCount=deleted)

# ---------- Tags ----------
@app.route("/api/admin/tags")
@require_user("admin")
def admin_tags_list():
    counts = questionbank.tag_counts()
    tags = Tag.query.order_by(func.lower(Tag.name)).all()
    return ok(tags=[t.to_dict(question_count=counts.get(t.name.lower(), 0)) for t in tags])

@app.route("/api/admin/tags", methods=["POST"])
@require_user("admin")
def admin_tags_create():
    names = questionbank.clean_tags([payload().get("name")])
    if not names:
        abort(400, "Tag name is required")
    if Tag.query.filter(func.lower(Tag.name) == names[0].lower()).first():
        abort(409, "Tag already exists")
    tag = Tag(name=names[0])
    db.session.add(tag)
    db.session.commit()
    return ok(201, data=tag.to_dict())

@app.route("/api/admin/tags/<int:tag_id>", methods=["DELETE"])
@require_user("admin")
def admin_tags_delete(tag_id):
    tag = Tag.query.get_or_404(tag_id, description="Tag not found")
    changed = questionbank.strip_tag(tag.name)
    db.session.delete(tag)
    db.session.commit()
    return ok(message="Tag deleted", questionsUpdated=changed)

# ---------- Students ----------
def _admin_student_dict(student):
    data = student.to_dict()
    data.update({
        "firstLogin": student.first_login,
        "lastLogin": student.last_login.isoformat() if student.last_login else None,
        "createdAt": student.created_at.isoformat() if student.created_at else None,
        "classes": [e.school_class.name for e in student.enrollments],
    })
    return data

def _email_taken(email, student_id=None):
    if User.query.filter(func.lower(User.email) == email).first():
        return True
    q = Student.query.filter(func.lower(Student.email) == email)
    if student_id:
        q = q.filter(Student.id != student_id)
    return q.first() is not None

def _apply_student_fields(student, data):
    if "name" in data or student.name is None:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValueError("Name is required")
        student.name = name
    if "email" in data or student.email is None:
        email = (data.get("email") or "").strip().lower()
        if "@" not in email:
            raise ValueError("A valid email is required")
        if _email_taken(email, student.id):
            abort(409, "Email already registered")
        student.email = email
    if "rollNumber" in data:
        roll = str(data.get("rollNumber") or "").strip() or None
        if roll:
            taken = Student.query.filter(Student.roll_number == roll)
            if student.id:
                taken = taken.filter(Student.id != student.id)
            if taken.first():
                abort(409, "Roll number already exists")
        student.roll_number = roll
    password = data.get("password") or ""
    if password or not student.password_hash:
        if len(password) < 8:
            raise ValueError("Password must be at least 8 characters")
        student.set_password(password)
        student.first_login = as_bool(data.get("firstLogin", True))
    return student

def _delete_students(students):
    ids = [s.id for s in students]
    for attempt in ExamAttempt.query.filter(ExamAttempt.student_id.in_(ids)).all():
        db.session.delete(attempt)
    for model in (ExamAssignment, Submission, AssignmentTarget):
        model.query.filter(model.student_id.in_(ids)).delete(synchronize_session=False)
    Ticket.query.filter(Ticket.created_by_student_id.in_(ids)).update(
        {"created_by_student_id": None}, synchronize_session=False)
    TicketComment.query.filter(TicketComment.student_id.in_(ids)).update(
        {"student_id": None}, synchronize_session=False)
    for student in students:
        db.session.delete(student)
    return len(ids)

@app.route("/api/admin/students")
@require_user("admin")
def admin_students_list():
    q = Student.query
    search = (request.args.get("search") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(or_(Student.name.ilike(like), Student.email.ilike(like), Student.roll_number.ilike(like)))
    students, meta = paginate(q.order_by(Student.created_at.desc(), Student.id.desc()), default_limit=50)
    return ok(students=[_admin_student_dict(s) for s in students], pagination=meta)

@app.route("/api/admin/students", methods=["POST"])
@require_user("admin")
def admin_students_create():
    student = _apply_student_fields(Student(), payload())
    db.session.add(student)
    db.session.commit()
    app.logger.info("student %s created by %s", student.email, current_user().email)
    return ok(201, data=_admin_student_dict(student))

@app.route("/api/admin/students/<int:student_id>", methods=["PUT"])
@require_user("admin")
def admin_students_update(student_id):
    student = Student.query.get_or_404(student_id, description="Student not found")
    _apply_student_fields(student, payload())
    db.session.commit()
    return ok(data=_admin_student_dict(student))

@app.route("/api/admin/students/<int:student_id>", methods=["DELETE"])
@require_user("admin")
def admin_students_delete(student_id):
    student = Student.query.get_or_404(student_id, description="Student not found")
    _delete_students([student])
    db.session.commit()
    return ok(message="Student deleted")

@app.route("/api/admin/students", methods=["DELETE"])
@require_user("admin")
def admin_students_bulk_delete():
    ids = payload().get("ids")
    if not isinstance(ids, list) or not ids:
        abort(400, "No student IDs provided")
    students = Student.query.filter(Student.id.in_([as_int(i, "ids") for i in ids])).all()
    deleted = _delete_students(students) if students else 0
    db.session.commit()
    return ok(message=f"Deleted {deleted} student(s)", deletedCount=deleted)

# ---------- Query logs ----------
@app.route("/api/admin/query-logs")
@require_user("admin")
def admin_query_logs():
    q = QueryLog.query
    success = request.args.get("success")
    if success in ("true", "false"):
        q = q.filter(QueryLog.success.is_(success == "true"))
    if request.args.get("route"):
        q = q.filter(QueryLog.route.ilike(f"%{request.args['route']}%"))
    search = (request.args.get("search") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(or_(QueryLog.route.ilike(like), QueryLog.error.ilike(like), QueryLog.query_text.ilike(like)))
    logs, meta = paginate(q.order_by(QueryLog.created_at.desc(), QueryLog.id.desc()), default_limit=50)
    return ok(logs=[entry.to_dict() for entry in logs], pagination=meta, stats=querylog.log_stats())

@app.route("/api/admin/query-logs", methods=["DELETE"])
@require_user("superadmin")
def admin_query_logs_purge():
    days = as_int(request.args.get("days"), "days", default=30, minimum=0)
    deleted = querylog.purge(days)
    app.logger.info("query logs purged by %s (days=%s): %d", current_user().email, days, deleted)
    return ok(deleted=deleted, message=f"Deleted {deleted} log entries")

# ---------- AI extraction ----------
@app.route("/api/ai/extract-questions", methods=["POST"])
@require_user("admin")
def ai_extract_questions():
    data = payload()
    images = data.get("images") or []
    if not isinstance(images, list):
        abort(400, "No images provided.")
    try:
        result = extraction.extract_questions(
            images,
            model=data.get("model"),
            custom_prompt=data.get("customPrompt"),
            pacing=app.config.get("AI_PACING", True),
        )
    except extraction.ExtractionError as exc:
        abort(500, str(exc))
    pages = len(images)
    if pages and len(result["rateLimitedPages"]) == pages:
        label = extraction.PROVIDERS[result["provider"]]["label"]
        return _error(429, f"{label} rate limit reached on every key, retry later")
    return ok(
        questions=result["questions"],
        instructions=result["instructions"],
        paragraphs=result["paragraphs"],
        failedPages=result["failedPages"],
        model=result["model"],
    )

# --------------------------------------------------------------------
# Student exam flow
# --------------------------------------------------------------------
def _student_attempts(exam_id, student_id):
    return (ExamAttempt.query
            .filter_by(exam_id=exam_id, student_id=student_id)
            .order_by(ExamAttempt.started_at.desc(), ExamAttempt.id.desc())
            .all())

def _active_attempt(exam_id, student_id):
    return (ExamAttempt.query
            .filter_by(exam_id=exam_id, student_id=student_id, status="in_progress")
            .order_by(ExamAttempt.started_at.desc(), ExamAttempt.id.desc())
            .first())

def _expire_if_due(attempt, exam, now):
    """Auto-submit an in-progress attempt whose time ran out. True when it did."""
    if attempt.status != "in_progress" or not proctoring.is_expired(attempt, exam, now):
        return False
    scoring.submit_attempt(attempt, now, auto=True)
    db.session.commit()
    app.logger.info("attempt %s auto-submitted at time up", attempt.id)
    return True

def _writable_attempt(exam, student, now):
    attempt = _active_attempt(exam.id, student.id)
    if attempt is None:
        latest = _student_attempts(exam.id, student.id)
        if latest and latest[0].status == "submitted":
            abort(400, "Exam already submitted")
        abort(400, "Invalid attempt")
    if _expire_if_due(attempt, exam, now):
        abort(400, "Time is up, the exam has been submitted")
    return attempt

def _exam_questions(exam):
    return [q for section in exam.sections for q in section.questions]

def _save_response(attempt, question_ids, item):
    qid = item.get("questionId")
    if qid not in question_ids:
        raise ValueError(f"Question {qid} is not part of this exam")
    answer = item.get("answer")
    if answer is not None and not isinstance(answer, list):
        answer = [answer]
    resp = QuestionResponse.query.filter_by(attempt_id=attempt.id, question_id=qid).first()
    if resp is None:
        resp = QuestionResponse(attempt_id=attempt.id, question_id=qid)
        db.session.add(resp)
    resp.answer = answer or None
    resp.marked_for_review = as_bool(item.get("markedForReview"))
    return resp

@app.route("/api/student/exams")
@require_student()
def student_exams():
    student = current_student()
    now = utcnow()
    rows = []
    for a in ExamAssignment.query.filter_by(student_id=student.id).all():
        exam = a.exam
        attempts = _student_attempts(exam.id, student.id)
        active = next((x for x in attempts if x.status == "in_progress"), None)
        used = sum(1 for x in attempts if x.status in ("submitted", "abandoned"))
        last = next((x for x in attempts if x.status == "submitted"), None)
        state = a.schedule.state(now) if a.schedule else "always"
        rows.append({
            "exam": exam.to_dict(),
            "maxAttempts": a.max_attempts,
            "attemptsUsed": used,
            "scheduleState": state,
            "schedule": a.schedule.to_dict() if a.schedule else None,
            "activeAttemptId": active.id if active else None,
            "lastScore": last.total_score if last else None,
            "canStart": state in ("open", "always") and (active is not None or used < a.max_attempts),
        })
    return ok(exams=rows)

@app.route("/api/student/exam/<int:exam_id>", methods=["POST"])
@require_student()
def student_exam_start(exam_id):
    student = current_student()
    exam = _exam_or_404(exam_id)
    assignment = ExamAssignment.query.filter_by(exam_id=exam.id, student_id=student.id).first()
    if not assignment:
        abort(403, "Not assigned to this exam")

    now = utcnow()
    if assignment.schedule:
        state = assignment.schedule.state(now)
        if state == "upcoming":
            abort(400, "Exam has not started yet")
        if state == "ended":
            abort(400, "Exam has ended")

    attempts = _student_attempts(exam.id, student.id)
    in_progress = [a for a in attempts if a.status == "in_progress"]
    if in_progress:
        active, duplicates = in_progress[0], in_progress[1:]
        for old in duplicates:
            app.logger.warning("abandoning duplicate in-progress attempt %s", old.id)
            old.status = "abandoned"
        db.session.commit()
        if not _expire_if_due(active, exam, now):
            return ok(attemptId=active.id, startedAt=active.started_at.isoformat(), resumed=True,
                      remainingSeconds=proctoring.remaining_seconds(active, exam, now))

    finished = _finished_attempts(exam.id, student.id)
    if finished >= assignment.max_attempts:
        return _error(400, "Maximum attempts reached",
                      details=f"Used {finished} of {assignment.max_attempts} attempts")

    attempt = ExamAttempt(exam_id=exam.id, student_id=student.id, started_at=now,
                          status="in_progress", ip_address=request.remote_addr)
    db.session.add(attempt)
    db.session.commit()
    app.logger.info("student %s started exam %s (attempt %s)", student.id, exam.id, attempt.id)
    return ok(201, attemptId=attempt.id, startedAt=attempt.started_at.isoformat(), resumed=False,
              remainingSeconds=proctoring.remaining_seconds(attempt, exam, now))

@app.route("/api/student/exam/<int:exam_id>")
@require_student()
def student_exam_data(exam_id):
    student = current_student()
    exam = _exam_or_404(exam_id)
    attempts = _student_attempts(exam.id, student.id)
    attempt = next((a for a in attempts if a.status == "in_progress"), attempts[0] if attempts else None)
    if attempt is None:
        abort(400, "No attempt found, start the exam first")
    now = utcnow()
    if _expire_if_due(attempt, exam, now):
        return ok(attemptId=attempt.id, status="submitted", autoSubmitted=True, remainingSeconds=0)
    if attempt.status != "in_progress":
        abort(400, "Exam already submitted")

    if attempt.paused_at is not None:
        attempt.paused_at = None
        db.session.commit()

    responses = attempt.response_map()
    pal = proctoring.palette(exam.sections, responses, attempt.current_question_id)
    return ok(
        attemptId=attempt.id,
        status=attempt.status,
        exam=exam.to_dict(),
        sections=[{"id": s.id, "name": s.name, "order": s.order} for s in exam.sections],
        questions=[q.to_dict() for q in _exam_questions(exam)],
        responses={str(qid): r.to_dict() for qid, r in responses.items()},
        remainingSeconds=proctoring.remaining_seconds(attempt, exam, now),
        currentQuestionId=attempt.current_question_id,
        violationCount=attempt.violation_count,
        palette=pal,
        counts=proctoring.palette_counts(pal),
    )

@app.route("/api/student/exam/<int:exam_id>/save", methods=["POST"])
@require_student()
def student_exam_save(exam_id):
    student = current_student()
    exam = _exam_or_404(exam_id)
    now = utcnow()
    attempt = _writable_attempt(exam, student, now)
    data = payload()
    question_ids = {q.id for q in _exam_questions(exam)}
    _save_response(attempt, question_ids, data)
    current = data.get("currentQuestionId") or data.get("questionId")
    if current in question_ids:
        attempt.current_question_id = current
    db.session.commit()
    return ok(remainingSeconds=proctoring.remaining_seconds(attempt, exam, now))

@app.route("/api/student/exam/<int:exam_id>/save", methods=["PUT"])
@require_student()
def student_exam_save_batch(exam_id):
    student = current_student()
    exam = _exam_or_404(exam_id)
    now = utcnow()
    attempt = _writable_attempt(exam, student, now)
    data = payload()
    items = data.get("responses")
    if not isinstance(items, list):
        abort(400, "responses array is required")
    question_ids = {q.id for q in _exam_questions(exam)}
    for item in items:
        if isinstance(item, dict):
            _save_response(attempt, question_ids, item)
    if data.get("currentQuestionId") in question_ids:
        attempt.current_question_id = data["currentQuestionId"]
    db.session.commit()
    return ok(saved=len(items), remainingSeconds=proctoring.remaining_seconds(attempt, exam, now))

@app.route("/api/student/exam/<int:exam_id>/session", methods=["POST"])
@require_student()
def student_exam_session(exam_id):
    student = current_student()
    exam = _exam_or_404(exam_id)
    data = payload()
    attempt = _active_attempt(exam.id, student.id)
    if attempt is None:
        return ok(sessionToken=secrets.token_hex(16), isNewSession=True, noActiveAttempt=True)
    had_token = bool(attempt.session_token)
    claimed, token = proctoring.claim_session(attempt, data.get("clientToken"), as_bool(data.get("forceLogin")))
    if not claimed:
        return _error(409, "This exam is active on another device. Continue here to log out the other device.",
                      activeOnOtherDevice=True)
    db.session.commit()
    return ok(sessionToken=token, isNewSession=not had_token or token != data.get("clientToken"))

@app.route("/api/student/exam/<int:exam_id>/pause", methods=["POST"])
@require_student()
def student_exam_pause(exam_id):
    student = current_student()
    exam = _exam_or_404(exam_id)
    now = utcnow()
    attempt = _writable_attempt(exam, student, now)
    proctoring.pause(attempt, now)
    db.session.commit()
    return ok(timeSpent=attempt.time_spent, remainingSeconds=proctoring.remaining_seconds(attempt, exam, now))

@app.route("/api/student/exam/<int:exam_id>/violation", methods=["POST"])
@require_student()
def student_exam_violation(exam_id):
    student = current_student()
    exam = _exam_or_404(exam_id)
    now = utcnow()
    attempt = _writable_attempt(exam, student, now)
    data = payload()
    result = proctoring.record_violation(
        attempt, exam, data.get("type"),
        away_seconds=data.get("awaySeconds"),
        grace_seconds=app.config["TAB_SWITCH_GRACE_SEC"],
        max_violations=app.config["MAX_VIOLATIONS"],
        now=now,
    )
    if result["autoSubmit"]:
        scoring.submit_attempt(attempt, now, auto=True)
    db.session.commit()
    return ok(status=attempt.status, **result)

@app.route("/api/student/exam/<int:exam_id>/submit", methods=["POST"])
@require_student()
def student_exam_submit(exam_id):
    student = current_student()
    exam = _exam_or_404(exam_id)
    attempt = _active_attempt(exam.id, student.id)
    if attempt is None:
        latest = _student_attempts(exam.id, student.id)
        if latest and latest[0].status == "submitted":
            abort(400, "Exam already submitted")
        abort(400, "No active attempt")
    auto = as_bool(payload().get("autoSubmit"))
    scoring.submit_attempt(attempt, utcnow(), auto=auto)
    db.session.commit()
    app.logger.info("attempt %s submitted (auto=%s) score=%s", attempt.id, auto, attempt.total_score)
    return ok(attemptId=attempt.id, totalScore=attempt.total_score, totalMarks=exam.total_marks,
              summary=scoring.attempt_summary(attempt))

@app.route("/api/student/results/<int:exam_id>")
@require_student()
def student_results(exam_id):
    student = current_student()
    exam = _exam_or_404(exam_id)
    attempt = (ExamAttempt.query
               .filter_by(exam_id=exam.id, student_id=student.id, status="submitted")
               .order_by(ExamAttempt.submitted_at.desc(), ExamAttempt.id.desc())
               .first())
    if not attempt:
        abort(404, "No submitted attempt for this exam")
    return ok(result=_attempt_review(attempt))

# --------------------------------------------------------------------
# Dev entry
# --------------------------------------------------------------------
def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=5000)
    parser.add_argument("--debug", action="store_true")
    args = parser.parse_args()
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app.run(host=args.host, port=args.port, debug=args.debug)

if __name__ == "__main__":
    main()

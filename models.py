import json
from datetime import datetime, timezone
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.types import TypeDecorator, TEXT
from sqlalchemy import UniqueConstraint
from werkzeug.security import generate_password_hash, check_password_hash


db = SQLAlchemy()

STAFF_ROLES = ("superadmin", "admin", "instructor", "lab_assistant")
QUESTION_TYPES = ("mcq_single", "mcq_multiple", "fill_blank", "short_answer", "long_answer", "paragraph")
TICKET_CATEGORIES = ("hardware_issue", "software_issue", "maintenance_request", "general_complaint", "other")
TICKET_PRIORITIES = ("low", "medium", "high", "critical")
TICKET_STATUSES = ("open", "in_progress", "resolved", "closed")

def _as_naive_utc(dt):
    """Return dt as naive UTC (or None). Handles aware/naive inputs safely."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt

def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)

def _iso(dt):
    return dt.isoformat() if dt else None

class JSONText(TypeDecorator):
    impl = TEXT
    cache_ok = True
    def process_bind_param(self, value, dialect):
        if value is None: return None
        return json.dumps(value, ensure_ascii=False)
    def process_result_value(self, value, dialect):
        if value is None: return None
        return json.loads(value)

# --------------------------------------------------------------------
# People
# --------------------------------------------------------------------
class User(db.Model):
    __tablename__ = 'users'
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, index=True, nullable=False)
    name = db.Column(db.String(120), nullable=False)
    role = db.Column(db.String(32), nullable=False, default="instructor")  # superadmin, admin, instructor, lab_assistant
    password_hash = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    first_login = db.Column(db.Boolean, nullable=False, default=True)
    last_login  = db.Column(db.DateTime, nullable=True)

    def set_password(self, pw): self.password_hash = generate_password_hash(pw)
    def check_password(self, pw): return check_password_hash(self.password_hash, pw)

    @property
    def is_admin(self):
        return self.role in ("admin", "superadmin")

    def to_dict(self):
        return {"id": self.id, "name": self.name, "email": self.email, "role": self.role}

class Student(db.Model):
    __tablename__ = 'students'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), unique=True, index=True, nullable=False)
    roll_number = db.Column(db.String(32), nullable=True)
    password_hash = db.Column(db.String(255), nullable=False, default="")
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    first_login = db.Column(db.Boolean, nullable=False, default=True)
    last_login  = db.Column(db.DateTime, nullable=True)

    def set_password(self, pw): self.password_hash = generate_password_hash(pw)
    def check_password(self, pw): return check_password_hash(self.password_hash, pw)

    def to_dict(self):
        return {"id": self.id, "name": self.name, "email": self.email, "rollNumber": self.roll_number}

# --------------------------------------------------------------------
# Classes & groups
# --------------------------------------------------------------------
class SchoolClass(db.Model):
    __tablename__ = 'classes'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    grade_level = db.Column(db.Integer, nullable=False)
    section = db.Column(db.String(16), nullable=True)
    stream = db.Column(db.String(64), nullable=True)
    academic_year = db.Column(db.String(16), nullable=True)  # e.g. "2025-26"
    class_teacher_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete="SET NULL"), nullable=True)
    max_students = db.Column(db.Integer, nullable=False, default=60)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    class_teacher = db.relationship('User')

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "gradeLevel": self.grade_level,
            "section": self.section,
            "stream": self.stream,
            "academicYear": self.academic_year,
            "classTeacher": self.class_teacher.to_dict() if self.class_teacher else None,
            "maxStudents": self.max_students,
        }

class ClassEnrollment(db.Model):
    __tablename__ = 'class_enrollments'
    id = db.Column(db.Integer, primary_key=True)
    class_id = db.Column(db.Integer, db.ForeignKey('classes.id', ondelete="CASCADE"), index=True, nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete="CASCADE"), index=True, nullable=False)
    roll_number = db.Column(db.Integer, nullable=True)
    status = db.Column(db.String(16), nullable=False, default="active")
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    school_class = db.relationship('SchoolClass', backref=db.backref('enrollments', cascade="all,delete-orphan"))
    student = db.relationship('Student', backref=db.backref('enrollments', cascade="all,delete-orphan"))

    __table_args__ = (
        UniqueConstraint('student_id', 'class_id', name='uq_enrollment_student_class'),
    )

class StudentGroup(db.Model):
    __tablename__ = 'student_groups'
    id = db.Column(db.Integer, primary_key=True)
    class_id = db.Column(db.Integer, db.ForeignKey('classes.id', ondelete="CASCADE"), index=True, nullable=False)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text, nullable=True)
    assigned_item_id = db.Column(db.Integer, db.ForeignKey('lab_items.id', ondelete="SET NULL"), nullable=True)
    created_by_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    school_class = db.relationship('SchoolClass', backref=db.backref('groups', cascade="all,delete-orphan"))
    assigned_item = db.relationship('LabItem')

    def to_dict(self):
        members = sorted(self.memberships, key=lambda m: (m.role != "leader", (m.student.name or "").lower()))
        return {
            "id": self.id,
            "classId": self.class_id,
            "name": self.name,
            "description": self.description,
            "assignedItem": self.assigned_item.to_dict() if self.assigned_item else None,
            "members": [
                {"id": m.id, "role": m.role, "student": m.student.to_dict()} for m in members
            ],
        }

class StudentGroupMembership(db.Model):
    __tablename__ = 'student_group_memberships'
    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.Integer, db.ForeignKey('student_groups.id', ondelete="CASCADE"), index=True, nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete="CASCADE"), index=True, nullable=False)
    role = db.Column(db.String(16), nullable=False, default="member")  # leader | member

    group = db.relationship('StudentGroup', backref=db.backref('memberships', cascade="all,delete-orphan"))
    student = db.relationship('Student', backref=db.backref('group_memberships', cascade="all,delete-orphan"))

    __table_args__ = (
        UniqueConstraint('group_id', 'student_id', name='uq_group_student'),
    )

# --------------------------------------------------------------------
# Labs & tickets
# --------------------------------------------------------------------
class Lab(db.Model):
    __tablename__ = 'labs'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), unique=True, nullable=False)
    room_number = db.Column(db.String(32), nullable=True)
    capacity = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self, with_items=False):
        data = {
            "id": self.id,
            "name": self.name,
            "roomNumber": self.room_number,
            "capacity": self.capacity,
            "itemCount": len(self.items),
        }
        if with_items:
            data["items"] = [it.to_dict() for it in sorted(self.items, key=lambda i: i.item_number)]
        return data

class LabItem(db.Model):
    __tablename__ = 'lab_items'
    id = db.Column(db.Integer, primary_key=True)
    lab_id = db.Column(db.Integer, db.ForeignKey('labs.id', ondelete="CASCADE"), index=True, nullable=False)
    item_number = db.Column(db.String(32), nullable=False)  # "PC-01"
    item_type = db.Column(db.String(32), nullable=False, default="pc")
    status = db.Column(db.String(16), nullable=False, default="active")  # active | maintenance | retired
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    lab = db.relationship('Lab', backref=db.backref('items', cascade="all,delete-orphan"))

    __table_args__ = (
        UniqueConstraint('lab_id', 'item_number', name='uq_lab_item_number'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "labId": self.lab_id,
            "itemNumber": self.item_number,
            "itemType": self.item_type,
            "status": self.status,
            "notes": self.notes,
        }

class Ticket(db.Model):
    __tablename__ = 'tickets'
    id = db.Column(db.Integer, primary_key=True)
    ticket_number = db.Column(db.String(16), unique=True, index=True, nullable=False)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)
    category = db.Column(db.String(32), nullable=False, default="other")
    priority = db.Column(db.String(16), nullable=False, default="medium")
    status = db.Column(db.String(16), nullable=False, default="open")
    lab_id = db.Column(db.Integer, db.ForeignKey('labs.id', ondelete="SET NULL"), index=True, nullable=True)
    item_id = db.Column(db.Integer, db.ForeignKey('lab_items.id', ondelete="SET NULL"), index=True, nullable=True)
    # exactly one of the creator columns is set
    created_by_user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete="SET NULL"), index=True, nullable=True)
    created_by_student_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete="SET NULL"), index=True, nullable=True)
    assigned_to_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete="SET NULL"), nullable=True)
    resolved_by_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete="SET NULL"), nullable=True)
    resolved_at = db.Column(db.DateTime, nullable=True)
    resolution_notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    lab = db.relationship('Lab')
    item = db.relationship('LabItem')
    created_by_user = db.relationship('User', foreign_keys=[created_by_user_id])
    created_by_student = db.relationship('Student', foreign_keys=[created_by_student_id])
    assigned_to = db.relationship('User', foreign_keys=[assigned_to_id])
    resolved_by = db.relationship('User', foreign_keys=[resolved_by_id])

    @property
    def creator_name(self):
        if self.created_by_user:
            return self.created_by_user.name
        if self.created_by_student:
            return self.created_by_student.name
        return None

    def to_dict(self, with_comments=False):
        data = {
            "id": self.id,
            "ticketNumber": self.ticket_number,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "priority": self.priority,
            "status": self.status,
            "lab": {"id": self.lab.id, "name": self.lab.name} if self.lab else None,
            "item": {"id": self.item.id, "itemNumber": self.item.item_number, "itemType": self.item.item_type} if self.item else None,
            "createdBy": self.creator_name,
            "assignedTo": self.assigned_to.to_dict() if self.assigned_to else None,
            "resolvedBy": self.resolved_by.to_dict() if self.resolved_by else None,
            "resolvedAt": _iso(self.resolved_at),
            "resolutionNotes": self.resolution_notes,
            "commentCount": len(self.comments),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }
        if with_comments:
            data["comments"] = [c.to_dict() for c in self.comments]
        return data

class TicketComment(db.Model):
    __tablename__ = 'ticket_comments'
    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(db.Integer, db.ForeignKey('tickets.id', ondelete="CASCADE"), index=True, nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete="SET NULL"), nullable=True)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete="SET NULL"), nullable=True)
    author_name = db.Column(db.String(120), nullable=False)
    content = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    ticket = db.relationship('Ticket', backref=db.backref('comments', cascade="all,delete-orphan", order_by='TicketComment.created_at'))

    def to_dict(self):
        return {"id": self.id, "author": self.author_name, "content": self.content, "createdAt": _iso(self.created_at)}

# --------------------------------------------------------------------
# Assignments
# --------------------------------------------------------------------
class Assignment(db.Model):
    __tablename__ = 'assignments'
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    subject = db.Column(db.String(120), nullable=True)
    class_id = db.Column(db.Integer, db.ForeignKey('classes.id', ondelete="SET NULL"), index=True, nullable=True)
    max_marks = db.Column(db.Float, nullable=False, default=100)
    due_date = db.Column(db.DateTime, nullable=True)
    status = db.Column(db.String(16), nullable=False, default="draft")  # draft | published
    published_at = db.Column(db.DateTime, nullable=True)
    created_by_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    school_class = db.relationship('SchoolClass')
    created_by = db.relationship('User')

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "subject": self.subject,
            "classId": self.class_id,
            "maxMarks": self.max_marks,
            "dueDate": _iso(self.due_date),
            "status": self.status,
            "publishedAt": _iso(self.published_at),
            "createdBy": self.created_by.name if self.created_by else None,
            "targets": [t.to_dict() for t in self.targets],
            "submissionCount": len(self.submissions),
        }

class AssignmentTarget(db.Model):
    __tablename__ = 'assignment_targets'
    id = db.Column(db.Integer, primary_key=True)
    assignment_id = db.Column(db.Integer, db.ForeignKey('assignments.id', ondelete="CASCADE"), index=True, nullable=False)
    target_type = db.Column(db.String(16), nullable=False)  # class | group | student
    class_id = db.Column(db.Integer, db.ForeignKey('classes.id', ondelete="CASCADE"), nullable=True)
    group_id = db.Column(db.Integer, db.ForeignKey('student_groups.id', ondelete="CASCADE"), nullable=True)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete="CASCADE"), nullable=True)
    due_date = db.Column(db.DateTime, nullable=True)  # overrides the assignment due date
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    assignment = db.relationship('Assignment', backref=db.backref('targets', cascade="all,delete-orphan"))

    def to_dict(self):
        return {
            "id": self.id,
            "targetType": self.target_type,
            "classId": self.class_id,
            "groupId": self.group_id,
            "studentId": self.student_id,
            "dueDate": _iso(self.due_date),
        }

class Submission(db.Model):
    __tablename__ = 'submissions'
    id = db.Column(db.Integer, primary_key=True)
    assignment_id = db.Column(db.Integer, db.ForeignKey('assignments.id', ondelete="CASCADE"), index=True, nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete="CASCADE"), index=True, nullable=False)
    content = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(16), nullable=False, default="submitted")  # submitted | late | graded | needs_revision
    marks = db.Column(db.Float, nullable=True)
    feedback = db.Column(db.Text, nullable=True)
    submitted_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    graded_at = db.Column(db.DateTime, nullable=True)
    graded_by_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete="SET NULL"), nullable=True)

    assignment = db.relationship('Assignment', backref=db.backref('submissions', cascade="all,delete-orphan"))
    student = db.relationship('Student')

    __table_args__ = (
        UniqueConstraint('assignment_id', 'student_id', name='uq_submission_assignment_student'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "assignmentId": self.assignment_id,
            "student": self.student.to_dict() if self.student else None,
            "content": self.content,
            "status": self.status,
            "marks": self.marks,
            "feedback": self.feedback,
            "submittedAt": _iso(self.submitted_at),
            "gradedAt": _iso(self.graded_at),
        }

# --------------------------------------------------------------------
# Entrance exams
# --------------------------------------------------------------------
class Exam(db.Model):
    __tablename__ = 'exams'
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(JSONText, nullable=False)  # {"en": "...", "pa": "..."}
    description = db.Column(db.Text, nullable=True)
    instructions = db.Column(JSONText, nullable=True)  # list of strings
    duration = db.Column(db.Integer, nullable=False, default=60)  # minutes
    total_marks = db.Column(db.Float, nullable=False, default=0)
    negative_marking = db.Column(db.Boolean, nullable=False, default=False)
    security_mode = db.Column(db.Boolean, nullable=False, default=False)
    is_published = db.Column(db.Boolean, nullable=False, default=False)
    created_by_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    sections = db.relationship('Section', backref='exam', cascade="all,delete-orphan", order_by='Section.order')

    def recompute_total_marks(self):
        total = 0.0
        for section in self.sections:
            for q in section.questions:
                if q.type != "paragraph":
                    total += float(q.marks or 0)
        self.total_marks = total
        return total

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "instructions": self.instructions or [],
            "duration": self.duration,
            "totalMarks": self.total_marks,
            "negativeMarking": self.negative_marking,
            "securityMode": self.security_mode,
            "isPublished": self.is_published,
            "createdAt": _iso(self.created_at),
        }

class ExamSchedule(db.Model):
    __tablename__ = 'exam_schedules'
    id = db.Column(db.Integer, primary_key=True)
    exam_id = db.Column(db.Integer, db.ForeignKey('exams.id', ondelete="CASCADE"), index=True, nullable=False)
    start_time = db.Column(db.DateTime, nullable=False)
    end_time = db.Column(db.DateTime, nullable=False)

    exam = db.relationship('Exam', backref=db.backref('schedules', cascade="all,delete-orphan", order_by='ExamSchedule.start_time'))

    def state(self, now=None):
        now = now or utcnow()
        if now < _as_naive_utc(self.start_time):
            return "upcoming"
        if now > _as_naive_utc(self.end_time):
            return "ended"
        return "open"

    def to_dict(self):
        return {"id": self.id, "examId": self.exam_id, "startTime": _iso(self.start_time), "endTime": _iso(self.end_time)}

class ExamAssignment(db.Model):
    __tablename__ = 'exam_assignments'
    id = db.Column(db.Integer, primary_key=True)
    exam_id = db.Column(db.Integer, db.ForeignKey('exams.id', ondelete="CASCADE"), index=True, nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete="CASCADE"), index=True, nullable=False)
    max_attempts = db.Column(db.Integer, nullable=False, default=1)
    schedule_id = db.Column(db.Integer, db.ForeignKey('exam_schedules.id', ondelete="SET NULL"), nullable=True)
    assigned_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    exam = db.relationship('Exam', backref=db.backref('assignments', cascade="all,delete-orphan"))
    student = db.relationship('Student')
    schedule = db.relationship('ExamSchedule')

    __table_args__ = (
        UniqueConstraint('exam_id', 'student_id', name='uq_exam_assignment_student'),
    )

class Section(db.Model):
    __tablename__ = 'sections'
    id = db.Column(db.Integer, primary_key=True)
    exam_id = db.Column(db.Integer, db.ForeignKey('exams.id', ondelete="CASCADE"), index=True, nullable=False)
    name = db.Column(JSONText, nullable=False)  # {"en": "...", "pa": "..."}
    order = db.Column(db.Integer, nullable=False, default=1)

    questions = db.relationship('Question', backref='section', cascade="all,delete-orphan", order_by='Question.order')

    def to_dict(self):
        return {"id": self.id, "examId": self.exam_id, "name": self.name, "order": self.order,
                "questionCount": len(self.questions)}

class Paragraph(db.Model):
    __tablename__ = 'paragraphs'
    id = db.Column(db.Integer, primary_key=True)
    text = db.Column(JSONText, nullable=True)     # title
    content = db.Column(JSONText, nullable=False)  # passage body
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

class Question(db.Model):
    __tablename__ = 'questions'
    id = db.Column(db.Integer, primary_key=True)
    section_id = db.Column(db.Integer, db.ForeignKey('sections.id', ondelete="CASCADE"), index=True, nullable=False)
    type = db.Column(db.String(20), nullable=False, default="mcq_single")
    text = db.Column(JSONText, nullable=False)
    explanation = db.Column(JSONText, nullable=True)
    correct_answer = db.Column(JSONText, nullable=False, default=list)  # ["b"] or ["a", "c"] or ["Delhi"]
    marks = db.Column(db.Float, nullable=False, default=4)
    negative_marks = db.Column(db.Float, nullable=False, default=0)
    order = db.Column(db.Integer, nullable=False, default=1)
    image_url = db.Column(db.String(500), nullable=True)
    tags = db.Column(JSONText, nullable=True)
    parent_id = db.Column(db.Integer, db.ForeignKey('questions.id', ondelete="SET NULL"), nullable=True)
    paragraph_id = db.Column(db.Integer, db.ForeignKey('paragraphs.id', ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    options = db.relationship('QuestionOption', backref='question', cascade="all,delete-orphan", order_by='QuestionOption.order')
    paragraph = db.relationship('Paragraph')
    parent = db.relationship('Question', remote_side=[id])

    def to_dict(self, include_answer=False):
        data = {
            "id": self.id,
            "sectionId": self.section_id,
            "type": self.type,
            "text": self.text,
            "options": [o.to_dict() for o in self.options] if self.options else None,
            "marks": self.marks,
            "negativeMarks": self.negative_marks,
            "order": self.order,
            "imageUrl": self.image_url,
            "tags": self.tags or [],
            "parentId": self.parent_id,
            "paragraphId": self.paragraph_id,
            "paragraphText": self.paragraph.content if self.paragraph else None,
            "paragraphTitle": self.paragraph.text if self.paragraph else None,
        }
        if include_answer:
            data["correctAnswer"] = self.correct_answer or []
            data["explanation"] = self.explanation
        return data

class QuestionOption(db.Model):
    __tablename__ = 'options'
    id = db.Column(db.Integer, primary_key=True)
    question_id = db.Column(db.Integer, db.ForeignKey('questions.id', ondelete="CASCADE"), index=True, nullable=False)
    key = db.Column(db.String(4), nullable=False)  # "a", "b", ...
    text = db.Column(JSONText, nullable=False)
    image_url = db.Column(db.String(500), nullable=True)
    order = db.Column(db.Integer, nullable=False, default=1)

    def to_dict(self):
        return {"id": self.key, "text": self.text, "imageUrl": self.image_url}

class Tag(db.Model):
    __tablename__ = 'tags'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(64), unique=True, nullable=False)  # questions store the name in Question.tags
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self, question_count=0):
        return {"id": self.id, "name": self.name, "questionCount": question_count,
                "createdAt": _iso(self.created_at)}

class ExamAttempt(db.Model):
    __tablename__ = 'exam_attempts'
    id = db.Column(db.Integer, primary_key=True)
    exam_id = db.Column(db.Integer, db.ForeignKey('exams.id', ondelete="CASCADE"), index=True, nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete="CASCADE"), index=True, nullable=False)
    status = db.Column(db.String(16), nullable=False, default="in_progress")  # in_progress | submitted | abandoned
    started_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    submitted_at = db.Column(db.DateTime, nullable=True)
    total_score = db.Column(db.Float, nullable=True)
    auto_submit = db.Column(db.Boolean, nullable=False, default=False)
    session_token = db.Column(db.String(64), nullable=True)
    current_question_id = db.Column(db.Integer, db.ForeignKey('questions.id', ondelete="SET NULL"), nullable=True)
    paused_at = db.Column(db.DateTime, nullable=True)
    time_spent = db.Column(db.Integer, nullable=True)  # seconds, captured on pause
    violation_count = db.Column(db.Integer, nullable=False, default=0)
    ip_address = db.Column(db.String(64), nullable=True)

    exam = db.relationship('Exam', backref=db.backref('attempts', cascade="all,delete-orphan"))
    student = db.relationship('Student')

    def response_map(self):
        return {r.question_id: r for r in self.responses}

class QuestionResponse(db.Model):
    __tablename__ = 'question_responses'
    id = db.Column(db.Integer, primary_key=True)
    attempt_id = db.Column(db.Integer, db.ForeignKey('exam_attempts.id', ondelete="CASCADE"), index=True, nullable=False)
    question_id = db.Column(db.Integer, db.ForeignKey('questions.id', ondelete="CASCADE"), index=True, nullable=False)
    answer = db.Column(JSONText, nullable=True)
    marked_for_review = db.Column(db.Boolean, nullable=False, default=False)
    is_correct = db.Column(db.Boolean, nullable=True)
    marks_awarded = db.Column(db.Float, nullable=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    attempt = db.relationship('ExamAttempt', backref=db.backref('responses', cascade="all,delete-orphan"))
    question = db.relationship('Question')

    __table_args__ = (
        UniqueConstraint('attempt_id', 'question_id', name='uq_response_attempt_question'),
    )

    def to_dict(self):
        return {"answer": self.answer, "markedForReview": self.marked_for_review}

# --------------------------------------------------------------------
# Admin tooling
# --------------------------------------------------------------------
class AdminNote(db.Model):
    __tablename__ = 'admin_notes'
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    content = db.Column(JSONText, nullable=False)
    author_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    author = db.relationship('User')

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "authorName": self.author.name if self.author else None,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

class QueryLog(db.Model):
    __tablename__ = 'query_logs'
    id = db.Column(db.Integer, primary_key=True)
    route = db.Column(db.String(255), index=True, nullable=False)
    method = db.Column(db.String(8), nullable=False)
    query_text = db.Column("query", db.Text, nullable=True)
    params = db.Column(JSONText, nullable=True)
    success = db.Column(db.Boolean, nullable=False, default=True)
    error = db.Column(db.Text, nullable=True)
    duration = db.Column(db.Integer, nullable=False, default=0)  # ms
    user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, index=True, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "route": self.route,
            "method": self.method,
            "query": self.query_text,
            "params": self.params,
            "success": self.success,
            "error": self.error,
            "duration": self.duration,
            "userId": self.user_id,
            "createdAt": _iso(self.created_at),
        }

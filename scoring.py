import math
from collections import OrderedDict

from models import db

OBJECTIVE_TYPES = ("mcq_single", "mcq_multiple", "fill_blank")
MANUAL_TYPES = ("short_answer", "long_answer")
PASS_PERCENT = 40.0


def normalize_answer(value):
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        value = [value]
    out = []
    for item in value:
        if item is None:
            continue
        text = str(item).strip().lower()
        if text:
            out.append(text)
    return out

def is_attempted(answer):
    return bool(normalize_answer(answer))

def grade_response(question, answer, negative_marking):
    """Return (is_correct, marks) for one answer.

    is_correct is None when the question was skipped, is descriptive, or is a
    comprehension passage.
    """
    if question.type == "paragraph":
        return None, 0.0
    given = normalize_answer(answer)
    if not given:
        return None, 0.0
    if question.type in MANUAL_TYPES:
        return None, 0.0
    expected = normalize_answer(question.correct_answer)
    if sorted(given) == sorted(expected):
        return True, float(question.marks or 0)
    penalty = float(question.negative_marks or 0) if negative_marking else 0.0
    return False, -penalty

def grade_attempt(attempt):
    """Grade every response of an attempt and store the total. Manual marks already
    given to descriptive answers are kept."""
    exam = attempt.exam
    total = 0.0
    for resp in attempt.responses:
        question = resp.question
        if question is None:
            continue
        if question.type in MANUAL_TYPES:
            if resp.marks_awarded is not None:
                total += resp.marks_awarded
            continue
        is_correct, marks = grade_response(question, resp.answer, exam.negative_marking)
        resp.is_correct = is_correct
        resp.marks_awarded = marks
        total += marks
    attempt.total_score = total
    return total

def recompute_total(attempt):
    attempt.total_score = sum(r.marks_awarded or 0 for r in attempt.responses)
    return attempt.total_score

def _exam_questions(exam):
    for section in exam.sections:
        for q in section.questions:
            yield section, q

def attempt_summary(attempt):
    """Per-section attempted/correct/wrong/score for one attempt."""
    responses = attempt.response_map()
    sections = OrderedDict()
    for section, q in _exam_questions(attempt.exam):
        if q.type == "paragraph":
            continue
        row = sections.setdefault(section.id, {
            "sectionId": section.id,
            "name": section.name,
            "total": 0,
            "attempted": 0,
            "correct": 0,
            "wrong": 0,
            "pending": 0,
            "score": 0.0,
            "maxScore": 0.0,
        })
        row["total"] += 1
        row["maxScore"] += float(q.marks or 0)
        resp = responses.get(q.id)
        if resp is None or not is_attempted(resp.answer):
            continue
        row["attempted"] += 1
        if resp.is_correct is True:
            row["correct"] += 1
        elif resp.is_correct is False:
            row["wrong"] += 1
        elif q.type in MANUAL_TYPES and resp.marks_awarded is None:
            row["pending"] += 1
        row["score"] += resp.marks_awarded or 0

    rows = list(sections.values())
    return {
        "sections": rows,
        "totalQuestions": sum(r["total"] for r in rows),
        "attempted": sum(r["attempted"] for r in rows),
        "correct": sum(r["correct"] for r in rows),
        "wrong": sum(r["wrong"] for r in rows),
        "score": attempt.total_score or 0,
        "maxScore": attempt.exam.total_marks,
    }

def exam_report(exam, attempts, pass_percent=PASS_PERCENT):
    """Aggregate submitted attempts of one exam."""
    submitted = [a for a in attempts if a.status == "submitted"]
    scores = [a.total_score or 0 for a in submitted]
    pass_mark = (exam.total_marks or 0) * pass_percent / 100.0
    rows = []
    for a in sorted(submitted, key=lambda a: -(a.total_score or 0)):
        rows.append({
            "attemptId": a.id,
            "student": a.student.to_dict() if a.student else None,
            "score": a.total_score or 0,
            "submittedAt": a.submitted_at.isoformat() if a.submitted_at else None,
            "autoSubmit": a.auto_submit,
            "violations": a.violation_count,
            "passed": (a.total_score or 0) >= pass_mark,
        })
    return {
        "exam": exam.to_dict(),
        "totalAttempts": len(submitted),
        "averageScore": round(sum(scores) / len(scores), 2) if scores else 0,
        "highestScore": max(scores) if scores else 0,
        "lowestScore": min(scores) if scores else 0,
        "passMark": pass_mark,
        "passCount": sum(1 for s in scores if s >= pass_mark),
        "attempts": rows,
    }

def paginate_meta(total, page, limit):
    page = max(1, int(page or 1))
    limit = max(1, int(limit or 1))
    return {
        "total": total,
        "page": page,
        "limit": limit,
        "totalPages": int(math.ceil(total / float(limit))),
    }

def submit_attempt(attempt, now, auto=False):
    """Grade and close an in-progress attempt. Caller commits."""
    grade_attempt(attempt)
    attempt.status = "submitted"
    attempt.submitted_at = now
    attempt.auto_submit = bool(auto)
    attempt.paused_at = None
    db.session.add(attempt)
    return attempt

import logging
import uuid
from collections import Counter, OrderedDict
from datetime import timedelta

from models import _as_naive_utc, utcnow
from scoring import is_attempted

log = logging.getLogger(__name__)

VIOLATION_KINDS = ("tab_switch", "window_blur", "fullscreen_exit")
STATUSES = ("not_visited", "not_answered", "answered", "marked_for_review", "answered_and_marked")


def deadline(attempt, exam):
    return _as_naive_utc(attempt.started_at) + timedelta(minutes=exam.duration or 0)

def remaining_seconds(attempt, exam, now=None):
    """Seconds left on the clock. The clock keeps running while paused."""
    now = now or utcnow()
    elapsed = (now - _as_naive_utc(attempt.started_at)).total_seconds()
    return max(0, int((exam.duration or 0) * 60 - elapsed))

def is_expired(attempt, exam, now=None):
    return remaining_seconds(attempt, exam, now) <= 0

def question_status(response, is_current=False):
    if response is None:
        return "not_answered" if is_current else "not_visited"
    answered = is_attempted(response.answer)
    if response.marked_for_review:
        return "answered_and_marked" if answered else "marked_for_review"
    return "answered" if answered else "not_answered"

def palette(sections, responses, current_id=None):
    """Question palette grouped by section: [{sectionId, name, questions: [{id, number, status}]}]."""
    out = []
    number = 0
    for section in sections:
        items = []
        for q in section.questions:
            if q.type == "paragraph":
                continue
            number += 1
            items.append({
                "id": q.id,
                "number": number,
                "status": question_status(responses.get(q.id), q.id == current_id),
            })
        out.append({"sectionId": section.id, "name": section.name, "questions": items})
    return out

def palette_counts(pal):
    counts = OrderedDict((s, 0) for s in STATUSES)
    counts.update(Counter(q["status"] for sec in pal for q in sec["questions"]))
    return dict(counts)

def claim_session(attempt, client_token=None, force=False):
    """Bind an attempt to one browser.

    Returns (ok, token). A second device is refused unless it forces a takeover,
    which invalidates the first device's token.
    """
    if not attempt.session_token:
        attempt.session_token = uuid.uuid4().hex
        return True, attempt.session_token
    if client_token and client_token == attempt.session_token:
        return True, attempt.session_token
    if force:
        log.info("attempt %s session taken over", attempt.id)
        attempt.session_token = uuid.uuid4().hex
        return True, attempt.session_token
    return False, None

def pause(attempt, now=None):
    now = now or utcnow()
    attempt.paused_at = now
    attempt.time_spent = int((now - _as_naive_utc(attempt.started_at)).total_seconds())
    return attempt

def record_violation(attempt, exam, kind, away_seconds=0, grace_seconds=10, max_violations=3, now=None):
    """Apply one proctoring event. Returns a dict with the new count and whether the
    attempt must now be auto-submitted. Raises ValueError for an unknown kind."""
    if kind not in VIOLATION_KINDS:
        raise ValueError(f"Unknown violation type: {kind}")
    if not exam.security_mode:
        if kind == "window_blur":
            pause(attempt, now)
        return {"violationCount": attempt.violation_count or 0, "autoSubmit": False, "paused": kind == "window_blur"}

    attempt.violation_count = (attempt.violation_count or 0) + 1
    try:
        away = float(away_seconds or 0)
    except (TypeError, ValueError):
        away = 0.0
    auto = away >= grace_seconds or attempt.violation_count > max_violations
    if auto:
        log.warning("attempt %s: %s after %s violation(s), away %.1fs, auto-submitting",
                    attempt.id, kind, attempt.violation_count, away)
    return {
        "violationCount": attempt.violation_count,
        "remainingWarnings": max(0, max_violations - attempt.violation_count),
        "autoSubmit": auto,
        "paused": False,
    }

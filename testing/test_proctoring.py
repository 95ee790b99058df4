from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

import proctoring

START = datetime(2025, 3, 1, 9, 0, 0)


def attempt(**kw):
    base = dict(id=7, started_at=START, violation_count=0, session_token=None,
                paused_at=None, time_spent=None)
    base.update(kw)
    return SimpleNamespace(**base)


def exam(duration=30, security_mode=True):
    return SimpleNamespace(duration=duration, security_mode=security_mode)


def test_remaining_seconds_counts_down_from_start():
    now = START + timedelta(minutes=10)
    assert proctoring.remaining_seconds(attempt(), exam(), now) == 20 * 60
    assert not proctoring.is_expired(attempt(), exam(), now)


def test_remaining_seconds_never_negative():
    now = START + timedelta(minutes=45)
    assert proctoring.remaining_seconds(attempt(), exam(), now) == 0
    assert proctoring.is_expired(attempt(), exam(), now)


def test_aware_start_time_is_treated_as_utc():
    a = attempt(started_at=START.replace(tzinfo=timezone.utc))
    assert proctoring.remaining_seconds(a, exam(), START + timedelta(minutes=5)) == 25 * 60
    assert proctoring.deadline(a, exam()) == START + timedelta(minutes=30)


def test_unknown_violation_kind_rejected():
    with pytest.raises(ValueError):
        proctoring.record_violation(attempt(), exam(), "copy_paste")


def test_blur_pauses_outside_secure_mode():
    a = attempt()
    now = START + timedelta(minutes=10)
    result = proctoring.record_violation(a, exam(security_mode=False), "window_blur", now=now)
    assert result == {"violationCount": 0, "autoSubmit": False, "paused": True}
    assert a.paused_at == now
    assert a.time_spent == 600


def test_tab_switch_ignored_outside_secure_mode():
    a = attempt()
    result = proctoring.record_violation(a, exam(security_mode=False), "tab_switch", away_seconds=60)
    assert result["autoSubmit"] is False
    assert result["paused"] is False
    assert a.violation_count == 0


def test_short_absence_warns_in_secure_mode():
    a = attempt()
    result = proctoring.record_violation(a, exam(), "tab_switch", away_seconds=3)
    assert result["violationCount"] == 1
    assert result["remainingWarnings"] == 2
    assert result["autoSubmit"] is False


def test_absence_past_grace_auto_submits():
    result = proctoring.record_violation(attempt(), exam(), "tab_switch", away_seconds=12, grace_seconds=10)
    assert result["autoSubmit"] is True


def test_too_many_violations_auto_submit():
    a = attempt(violation_count=3)
    result = proctoring.record_violation(a, exam(), "fullscreen_exit", away_seconds=0, max_violations=3)
    assert a.violation_count == 4
    assert result["autoSubmit"] is True
    assert result["remainingWarnings"] == 0


def test_session_claim_and_takeover():
    a = attempt()
    ok, token = proctoring.claim_session(a, client_token="stale-token")
    assert ok and len(token) == 32
    assert proctoring.claim_session(a, client_token=token) == (True, token)
    assert proctoring.claim_session(a, client_token="other-device") == (False, None)

    ok, new_token = proctoring.claim_session(a, client_token="other-device", force=True)
    assert ok and new_token != token
    assert proctoring.claim_session(a, client_token=token) == (False, None)


@pytest.mark.parametrize("response, current, status", [
    (None, False, "not_visited"),
    (None, True, "not_answered"),
    (SimpleNamespace(answer=["a"], marked_for_review=False), False, "answered"),
    (SimpleNamespace(answer=None, marked_for_review=False), False, "not_answered"),
    (SimpleNamespace(answer=None, marked_for_review=True), False, "marked_for_review"),
    (SimpleNamespace(answer=["a"], marked_for_review=True), False, "answered_and_marked"),
])
def test_question_status(response, current, status):
    assert proctoring.question_status(response, current) == status


def test_palette_numbers_across_sections_and_skips_passages():
    q = lambda qid, qtype="mcq_single": SimpleNamespace(id=qid, type=qtype)
    sections = [
        SimpleNamespace(id=1, name={"en": "A"}, questions=[q(10, "paragraph"), q(11), q(12)]),
        SimpleNamespace(id=2, name={"en": "B"}, questions=[q(20)]),
    ]
    responses = {11: SimpleNamespace(answer=["b"], marked_for_review=False)}
    pal = proctoring.palette(sections, responses, current_id=12)

    numbers = [(item["id"], item["number"], item["status"]) for sec in pal for item in sec["questions"]]
    assert numbers == [(11, 1, "answered"), (12, 2, "not_answered"), (20, 3, "not_visited")]

    counts = proctoring.palette_counts(pal)
    assert counts["answered"] == 1
    assert counts["not_answered"] == 1
    assert counts["not_visited"] == 1
    assert counts["marked_for_review"] == 0

from datetime import timedelta

import pytest

import querylog
from models import db, utcnow, QueryLog


def test_record_masks_secrets(app):
    with app.app_context():
        entry = querylog.record("/api/auth/login", "POST",
                                params={"email": "a@b.c", "password": "pw", "newPassword": "pw2",
                                        "images": ["AAA"]},
                                success=False, error="Invalid credentials", duration_ms=12.7)
        stored = QueryLog.query.get(entry.id)
        assert stored.params == {"email": "a@b.c", "password": "***", "newPassword": "***", "images": "***"}
        assert stored.success is False
        assert stored.duration == 12


def test_stats_and_error_rate(app):
    with app.app_context():
        querylog.record("/api/labs", "GET", duration_ms=10)
        querylog.record("/api/labs", "POST", success=False, error="boom", duration_ms=30)
        old = QueryLog(route="/api/old", method="GET", created_at=utcnow() - timedelta(days=3))
        db.session.add(old)
        db.session.commit()

        stats = querylog.log_stats()
        assert stats["total"] == 3
        assert stats["errors"] == 1
        assert stats["errorRate"] == "33.33"
        assert stats["last24h"] == {"total": 2, "errors": 1, "errorRate": "50.00"}
        assert stats["lastHour"] == 2
        assert stats["avgDurationMs"] == 20


def test_purge_by_age(app):
    with app.app_context():
        now = utcnow()
        db.session.add_all([
            QueryLog(route="/api/a", method="GET", created_at=now - timedelta(days=40)),
            QueryLog(route="/api/b", method="GET", created_at=now - timedelta(days=2)),
        ])
        db.session.commit()

        assert querylog.purge(30, now=now) == 1
        assert [q.route for q in QueryLog.query.all()] == ["/api/b"]
        assert querylog.purge(9999) == 1
        assert QueryLog.query.count() == 0
        with pytest.raises(ValueError):
            querylog.purge(-1)


def test_query_string_is_kept(app):
    with app.app_context():
        entry = querylog.record("/api/tickets", "GET", params={"page": "2"}, query="page=2")
        assert QueryLog.query.get(entry.id).to_dict()["query"] == "page=2"
        assert QueryLog.query.filter(QueryLog.query_text.ilike("%page%")).count() == 1

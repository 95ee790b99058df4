import logging
from datetime import timedelta

from sqlalchemy import func

from models import db, QueryLog, utcnow

log = logging.getLogger(__name__)

PURGE_ALL_DAYS = 9999
_MAX_PARAM_LEN = 2000


def _trim_params(params):
    if not params:
        return None
    out = {}
    for key, value in params.items():
        if key.lower().replace("_", "") in ("password", "newpassword", "currentpassword", "images"):
            value = "***"
        elif isinstance(value, str) and len(value) > _MAX_PARAM_LEN:
            value = value[:_MAX_PARAM_LEN] + "..."
        out[key] = value
    return out

def record(route, method, params=None, success=True, error=None, duration_ms=0, user_id=None, query=None):
    entry = QueryLog(
        route=route,
        method=method,
        query_text=query,
        params=_trim_params(params),
        success=bool(success),
        error=error,
        duration=int(duration_ms or 0),
        user_id=user_id,
    )
    db.session.add(entry)
    db.session.commit()
    return entry

def _rate(errors, total):
    return f"{(errors / total * 100) if total else 0:.2f}"

def log_stats(now=None):
    now = now or utcnow()
    day_ago = now - timedelta(hours=24)
    hour_ago = now - timedelta(hours=1)

    total = QueryLog.query.count()
    errors = QueryLog.query.filter_by(success=False).count()
    last24 = QueryLog.query.filter(QueryLog.created_at >= day_ago)
    last24_total = last24.count()
    last24_errors = last24.filter(QueryLog.success.is_(False)).count()
    last_hour = QueryLog.query.filter(QueryLog.created_at >= hour_ago).count()
    avg = db.session.query(func.avg(QueryLog.duration)).filter(QueryLog.created_at >= day_ago).scalar()

    return {
        "total": total,
        "errors": errors,
        "errorRate": _rate(errors, total),
        "last24h": {
            "total": last24_total,
            "errors": last24_errors,
            "errorRate": _rate(last24_errors, last24_total),
        },
        "lastHour": last_hour,
        "avgDurationMs": int(round(avg or 0)),
    }

def purge(days, now=None):
    """Delete log entries older than ``days``; ``days >= 9999`` clears the table."""
    days = int(days)
    if days < 0:
        raise ValueError("days must be >= 0")
    q = QueryLog.query
    if days < PURGE_ALL_DAYS:
        cutoff = (now or utcnow()) - timedelta(days=days)
        q = q.filter(QueryLog.created_at < cutoff)
    deleted = q.delete(synchronize_session=False)
    db.session.commit()
    log.info("purged %d query log entr%s", deleted, "y" if deleted == 1 else "ies")
    return deleted

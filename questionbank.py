"""Question bank helpers shared by the admin routes.

Tags live on each question as a list of names; the ``tags`` table keeps the
canonical spelling so filters and counts match regardless of case.
"""
import logging
from collections import Counter, deque

from thefuzz import fuzz

from models import db, Question, Tag

log = logging.getLogger(__name__)

DUPLICATE_THRESHOLD = 85
MAX_DUPLICATE_PAIRS = 200
MAX_TAG_LEN = 64


def clean_tags(raw):
    """Accept a list or a comma separated string. Returns unique names in input order."""
    if not raw:
        return []
    if isinstance(raw, str):
        raw = raw.split(",")
    out, seen = [], set()
    for item in raw:
        name = " ".join(str(item or "").replace('"', "").split())[:MAX_TAG_LEN]
        if name and name.lower() not in seen:
            seen.add(name.lower())
            out.append(name)
    return out


def ensure_tags(names):
    """Create missing tags and return the names in their canonical spelling."""
    with db.session.no_autoflush:
        known = {t.name.lower(): t for t in Tag.query.all()}
        out = []
        for name in names:
            tag = known.get(name.lower())
            if tag is None:
                tag = Tag(name=name)
                db.session.add(tag)
                known[name.lower()] = tag
            out.append(tag.name)
    return out


def tag_counts():
    counts = Counter()
    for (tags,) in db.session.query(Question.tags).filter(Question.tags.isnot(None)):
        for name in tags or []:
            counts[name.lower()] += 1
    return counts


def strip_tag(name):
    """Remove ``name`` from every question carrying it. Returns the number of questions changed."""
    changed = 0
    for question in Question.query.filter(Question.tags.isnot(None)).all():
        kept = [t for t in question.tags or [] if t.lower() != name.lower()]
        if len(kept) != len(question.tags or []):
            question.tags = kept or None
            changed += 1
    return changed


def plain_text(text):
    if isinstance(text, dict):
        text = text.get("en") or text.get("pa") or ""
    return " ".join(str(text or "").lower().split())


def duplicate_groups(questions, threshold=DUPLICATE_THRESHOLD, max_pairs=MAX_DUPLICATE_PAIRS):
    """Group questions whose text scores at least ``threshold`` (0-100) against another.

    Pairs are linked transitively, so A~B and B~C land in one group. Only the
    ``max_pairs`` most similar pairs are considered.
    """
    texts = [(q, plain_text(q.text)) for q in questions]
    texts = [(q, t) for q, t in texts if t]
    pairs = []
    for i, (q1, t1) in enumerate(texts):
        for q2, t2 in texts[i + 1:]:
            score = fuzz.ratio(t1, t2)
            if score >= threshold:
                pairs.append((score, q1, q2))
    pairs.sort(key=lambda p: -p[0])
    if len(pairs) > max_pairs:
        log.info("duplicate scan truncated to %d of %d pairs", max_pairs, len(pairs))
        pairs = pairs[:max_pairs]

    by_id, links = {}, {}
    for _, q1, q2 in pairs:
        by_id[q1.id], by_id[q2.id] = q1, q2
        links.setdefault(q1.id, []).append(q2.id)
        links.setdefault(q2.id, []).append(q1.id)

    groups, seen = [], set()
    for start in links:
        if start in seen:
            continue
        seen.add(start)
        queue, group = deque([start]), []
        while queue:
            current = queue.popleft()
            group.append(by_id[current])
            for nxt in links[current]:
                if nxt not in seen:
                    seen.add(nxt)
                    queue.append(nxt)
        groups.append(group)
    return groups

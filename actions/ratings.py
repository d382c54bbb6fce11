from __future__ import annotations

import math

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from actions.helpers import append_activity, append_audit, get_str, load_candidate, require_auth, require_str, user_names
from models import CandidateRating
from services.rating_aggregator import MAX_SCORE, MIN_SCORE, RATING_TYPES, aggregate_ratings, candidate_score, to_ten_point_scale
from utils import AuthContext, NotFoundError, PermissionDenied, ValidationError, iso_utc_now, is_privileged, new_uuid, normalize_role


_RATING_TYPE_BY_LOWER = {t.lower(): t for t in RATING_TYPES}
MAX_COMMENTS_LENGTH = 2000


def _parse_rating_type(raw: str) -> str:
    rating_type = _RATING_TYPE_BY_LOWER.get(str(raw or "").strip().lower())
    if not rating_type:
        raise ValidationError(f"Invalid ratingType. Allowed: {', '.join(RATING_TYPES)}")
    return rating_type


def parse_score(raw) -> float:
    if raw is None or isinstance(raw, bool) or str(raw).strip() == "":
        raise ValidationError("Score is required")
    try:
        score = float(raw)
    except (TypeError, ValueError):
        raise ValidationError("Score must be a number")
    if math.isnan(score) or score < MIN_SCORE or score > MAX_SCORE:
        raise ValidationError(f"Score must be between {MIN_SCORE} and {MAX_SCORE}")
    return score


def serialize_rating(row: CandidateRating, names: dict[str, str] | None = None) -> dict:
    uid = str(row.userId or "")
    return {
        "ratingId": str(row.ratingId or ""),
        "candidateId": str(row.candidateId or ""),
        "userId": uid,
        "userName": (names or {}).get(uid, ""),
        "userRole": str(row.userRole or ""),
        "ratingType": str(row.ratingType or ""),
        "score": float(row.score),
        "comments": str(row.comments or ""),
        "createdAt": str(row.createdAt or ""),
        "updatedAt": str(row.updatedAt or ""),
    }


def ratings_for_candidate(db, candidate_id: str) -> list[CandidateRating]:
    return (
        db.execute(select(CandidateRating).where(CandidateRating.candidateId == candidate_id).order_by(CandidateRating.createdAt.desc()))
        .scalars()
        .all()
    )


def summarize(rows) -> dict:
    out = aggregate_ratings(rows).to_dict()
    score = candidate_score(rows)
    out["score"] = score
    out["scoreOutOfTen"] = to_ten_point_scale(score)
    return out


def _load_rating_for_write(db, rating_id: str, auth: AuthContext) -> CandidateRating:
    row = db.execute(
        select(CandidateRating).where(CandidateRating.ratingId == rating_id).with_for_update(of=CandidateRating)
    ).scalar_one_or_none()
    if not row:
        raise NotFoundError("Rating not found")
    if str(row.userId or "") != str(auth.userId or "") and not is_privileged(auth.role):
        raise PermissionDenied("Only the author, Admin or HR Manager can change this rating")
    return row


def candidate_rating_add(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)

    candidate_id = require_str(data, "candidateId")
    rating_type = _parse_rating_type(require_str(data, "ratingType"))
    score = parse_score((data or {}).get("score"))
    comments = get_str(data, "comments", max_len=MAX_COMMENTS_LENGTH)

    load_candidate(db, candidate_id)

    existing = db.execute(
        select(CandidateRating.ratingId)
        .where(CandidateRating.candidateId == candidate_id)
        .where(CandidateRating.userId == str(auth.userId or ""))
        .where(CandidateRating.ratingType == rating_type)
    ).first()
    if existing:
        raise ValidationError(f"You have already rated this candidate for {rating_type}; update that rating instead")

    now = iso_utc_now()
    row = CandidateRating(
        ratingId=f"RAT-{new_uuid()}",
        candidateId=candidate_id,
        userId=str(auth.userId or ""),
        userRole=str(normalize_role(auth.role) or ""),
        ratingType=rating_type,
        score=score,
        comments=comments,
        createdAt=now,
        updatedAt=now,
    )
    db.add(row)
    try:
        db.flush()
    except IntegrityError:
        raise ValidationError(f"You have already rated this candidate for {rating_type}; update that rating instead")

    append_audit(
        db,
        entityType="CANDIDATE",
        entityId=candidate_id,
        action="CANDIDATE_RATING_ADD",
        stageTag="RATING",
        actor=auth,
        at=now,
        meta={"ratingId": row.ratingId, "ratingType": rating_type, "score": score},
    )
    append_activity(db, candidate_id=candidate_id, type="RATING", payload={"ratingId": row.ratingId, "ratingType": rating_type, "score": score}, actor=auth, at=now)

    return serialize_rating(row, user_names(db, [row.userId]))


def candidate_rating_update(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)

    rating_id = require_str(data, "ratingId")
    row = _load_rating_for_write(db, rating_id, auth)

    before = float(row.score)
    if "score" in (data or {}):
        row.score = parse_score((data or {}).get("score"))
    if "comments" in (data or {}):
        row.comments = get_str(data, "comments", max_len=MAX_COMMENTS_LENGTH)
    now = iso_utc_now()
    row.updatedAt = now

    append_audit(
        db,
        entityType="CANDIDATE",
        entityId=str(row.candidateId or ""),
        action="CANDIDATE_RATING_UPDATE",
        fromState=str(before),
        toState=str(float(row.score)),
        stageTag="RATING",
        actor=auth,
        at=now,
        meta={"ratingId": rating_id, "ratingType": str(row.ratingType or "")},
    )
    return serialize_rating(row, user_names(db, [row.userId]))


def candidate_rating_delete(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)

    rating_id = require_str(data, "ratingId")
    row = _load_rating_for_write(db, rating_id, auth)
    candidate_id = str(row.candidateId or "")
    rating_type = str(row.ratingType or "")
    db.delete(row)

    append_audit(
        db,
        entityType="CANDIDATE",
        entityId=candidate_id,
        action="CANDIDATE_RATING_DELETE",
        stageTag="RATING",
        actor=auth,
        meta={"ratingId": rating_id, "ratingType": rating_type},
    )
    return {"ratingId": rating_id, "deleted": True}


def candidate_rating_get(data, auth: AuthContext | None, db, cfg):
    require_auth(auth)

    rating_id = require_str(data, "ratingId")
    row = db.execute(select(CandidateRating).where(CandidateRating.ratingId == rating_id)).scalar_one_or_none()
    if not row:
        raise NotFoundError("Rating not found")
    return serialize_rating(row, user_names(db, [row.userId]))


def candidate_ratings_list(data, auth: AuthContext | None, db, cfg):
    require_auth(auth)

    candidate_id = require_str(data, "candidateId")
    rating_type = get_str(data, "ratingType")
    user_role = normalize_role(get_str(data, "userRole")) or ""
    load_candidate(db, candidate_id)

    q = select(CandidateRating).where(CandidateRating.candidateId == candidate_id)
    if rating_type:
        q = q.where(CandidateRating.ratingType == _parse_rating_type(rating_type))
    if user_role:
        q = q.where(CandidateRating.userRole == user_role)
    rows = db.execute(q.order_by(CandidateRating.createdAt.desc())).scalars().all()
    names = user_names(db, [r.userId for r in rows])
    return {"items": [serialize_rating(r, names) for r in rows], "total": len(rows)}


def candidate_ratings_aggregate(data, auth: AuthContext | None, db, cfg):
    require_auth(auth)

    candidate_id = require_str(data, "candidateId")
    load_candidate(db, candidate_id)
    out = summarize(ratings_for_candidate(db, candidate_id))
    out["candidateId"] = candidate_id
    return out

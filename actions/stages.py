from __future__ import annotations

import logging

from sqlalchemy import func, select

from actions.helpers import actor_id, append_activity, append_audit, get_str, load_candidate, require_auth, require_str
from models import AuditLog, Candidate, CandidateNote
from services.note_visibility import MAX_NOTE_LENGTH
from services.stage_machine import STAGES, validate_reopen, validate_transition
from utils import AuthContext, iso_utc_now, new_uuid, normalize_role, safe_json_load


_log = logging.getLogger("actions.stages")

def _apply_stage(db, cand: Candidate, *, from_stage: str, to_stage: str, action: str, remark: str, auth: AuthContext, now: str) -> None:
    cand.stage = to_stage
    cand.stageUpdatedAt = now
    cand.updatedAt = now
    cand.updatedBy = actor_id(auth)

    append_audit(
        db,
        entityType="CANDIDATE",
        entityId=str(cand.candidateId or ""),
        action=action,
        fromState=from_stage,
        toState=to_stage,
        stageTag="STAGE",
        remark=remark,
        actor=auth,
        at=now,
        meta={"jobId": str(cand.jobId or "")},
    )
    append_activity(
        db,
        candidate_id=str(cand.candidateId or ""),
        type="STAGE",
        payload={"from": from_stage, "to": to_stage, "remark": remark},
        actor=auth,
        at=now,
    )


def candidate_stage_set(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)

    candidate_id = require_str(data, "candidateId")
    target = require_str(data, "stage")
    notes = get_str(data, "notes", max_len=MAX_NOTE_LENGTH)

    cand = load_candidate(db, candidate_id, for_update=True)
    change = validate_transition(str(cand.stage or ""), target)

    now = iso_utc_now()
    if change.changed:
        _apply_stage(db, cand, from_stage=change.fromStage, to_stage=change.toStage, action="CANDIDATE_STAGE_SET", remark=notes, auth=auth, now=now)

    # Notes sent with a stage move are kept as a regular, team-visible note.
    if notes:
        db.add(
            CandidateNote(
                noteId=f"NOTE-{new_uuid()}",
                candidateId=candidate_id,
                userId=str(auth.userId or ""),
                userRole=str(normalize_role(auth.role) or ""),
                noteType="General",
                content=notes,
                isPrivate=False,
                createdAt=now,
                updatedAt=now,
            )
        )

    return {
        "candidateId": candidate_id,
        "fromStage": change.fromStage,
        "stage": change.toStage,
        "changed": change.changed,
        "stageUpdatedAt": str(cand.stageUpdatedAt or ""),
    }


def candidate_stage_reopen(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)

    candidate_id = require_str(data, "candidateId")
    remark = require_str(data, "remark", max_len=MAX_NOTE_LENGTH)
    target = get_str(data, "stage") or None

    cand = load_candidate(db, candidate_id, for_update=True)
    change = validate_reopen(str(cand.stage or ""), target)

    now = iso_utc_now()
    _apply_stage(db, cand, from_stage=change.fromStage, to_stage=change.toStage, action="CANDIDATE_STAGE_REOPEN", remark=remark, auth=auth, now=now)

    return {
        "candidateId": candidate_id,
        "fromStage": change.fromStage,
        "stage": change.toStage,
        "changed": True,
        "stageUpdatedAt": now,
    }


def candidate_stage_history(data, auth: AuthContext | None, db, cfg):
    require_auth(auth)

    candidate_id = require_str(data, "candidateId")
    cand = load_candidate(db, candidate_id)

    rows = (
        db.execute(
            select(AuditLog)
            .where(AuditLog.entityType == "CANDIDATE")
            .where(AuditLog.entityId == candidate_id)
            .where(AuditLog.action.in_(["CANDIDATE_CREATE", "CANDIDATE_STAGE_SET", "CANDIDATE_STAGE_REOPEN"]))
            .order_by(AuditLog.at.asc())
        )
        .scalars()
        .all()
    )

    items = []
    for r in rows:
        meta = safe_json_load(r.metaJson, {}) or {}
        items.append(
            {
                "action": str(r.action or ""),
                "fromStage": str(r.fromState or ""),
                "toStage": str(r.toState or ""),
                "remark": str(r.remark or ""),
                "at": str(r.at or ""),
                "actorUserId": str(r.actorUserId or ""),
                "actorRole": str(r.actorRole or ""),
                "jobId": str(meta.get("jobId") or ""),
            }
        )
    return {"candidateId": candidate_id, "stage": str(cand.stage or ""), "items": items}


def pipeline_counts(data, auth: AuthContext | None, db, cfg):
    require_auth(auth)

    job_id = get_str(data, "jobId")
    q = select(Candidate.stage, func.count()).group_by(Candidate.stage)
    if job_id:
        q = q.where(Candidate.jobId == job_id)

    counts = {s: 0 for s in STAGES}
    for stage, n in db.execute(q).all():
        key = str(stage or "")
        if key in counts:
            counts[key] = int(n or 0)
        else:
            _log.warning("pipeline_counts skipped unknown stage=%s count=%s", key, n)

    return {"jobId": job_id, "stages": [{"stage": s, "count": counts[s]} for s in STAGES], "total": sum(counts.values())}

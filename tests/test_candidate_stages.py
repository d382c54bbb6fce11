from __future__ import annotations

import json

from sqlalchemy import select

from db import SessionLocal
from models import AuditLog, Candidate, CandidateActivity, CandidateNote, User
from passwords import hash_password
from utils import iso_utc_now


PASSWORD = "Password123"


def _api(client, payload: dict):
    return client.post("/api", data=json.dumps(payload), content_type="text/plain; charset=utf-8")


def _seed_user(app, *, user_id: str, email: str, role: str) -> None:
    now = iso_utc_now()
    with SessionLocal() as db:
        db.add(
            User(
                userId=user_id,
                email=email,
                fullName=f"Test {role.title()}",
                role=role,
                status="ACTIVE",
                passwordHash=hash_password(PASSWORD),
                createdAt=now,
                createdBy="TEST",
                updatedAt=now,
                updatedBy="TEST",
            )
        )
        db.commit()


def _login(client, *, email: str) -> str:
    res = _api(client, {"action": "LOGIN", "data": {"email": email, "password": PASSWORD}})
    assert res.status_code == 200
    body = res.get_json()
    assert body["success"] is True
    token = body["data"]["sessionToken"]
    assert token
    return token


def _create_candidate(client, token: str, **extra) -> str:
    data = {"name": "Alice", "email": "alice@example.com", "position": "Backend Engineer", **extra}
    res = _api(client, {"action": "CANDIDATE_CREATE", "token": token, "data": data})
    body = res.get_json()
    assert body["success"] is True, body
    return body["data"]["candidateId"]


def test_stage_set_writes_audit_activity_and_note(app_client):
    app, client = app_client
    _seed_user(app, user_id="USR-REC", email="rec@example.com", role="RECRUITER")
    token = _login(client, email="rec@example.com")
    cid = _create_candidate(client, token)

    res = _api(
        client,
        {"action": "CANDIDATE_STAGE_SET", "token": token, "data": {"candidateId": cid, "stage": "Interview", "notes": "Strong resume"}},
    )
    assert res.status_code == 200
    body = res.get_json()
    assert body["success"] is True
    assert body["data"]["fromStage"] == "Applied"
    assert body["data"]["stage"] == "Interview"
    assert body["data"]["changed"] is True
    assert body["data"]["stageUpdatedAt"]

    with SessionLocal() as db:
        cand = db.execute(select(Candidate).where(Candidate.candidateId == cid)).scalar_one()
        assert cand.stage == "Interview"

        audit = db.execute(
            select(AuditLog)
            .where(AuditLog.entityId == cid)
            .where(AuditLog.action == "CANDIDATE_STAGE_SET")
        ).scalar_one()
        assert (audit.fromState, audit.toState, audit.stageTag) == ("Applied", "Interview", "STAGE")

        act = db.execute(
            select(CandidateActivity).where(CandidateActivity.candidateId == cid).where(CandidateActivity.type == "STAGE")
        ).scalar_one()
        payload = json.loads(act.payloadJson)
        assert payload["from"] == "Applied"
        assert payload["to"] == "Interview"

        note = db.execute(select(CandidateNote).where(CandidateNote.candidateId == cid)).scalar_one()
        assert note.content == "Strong resume"
        assert note.noteType == "General"
        assert note.isPrivate is False


def test_same_stage_is_a_no_op_without_audit(app_client):
    app, client = app_client
    _seed_user(app, user_id="USR-REC", email="rec@example.com", role="RECRUITER")
    token = _login(client, email="rec@example.com")
    cid = _create_candidate(client, token)

    res = _api(client, {"action": "CANDIDATE_STAGE_SET", "token": token, "data": {"candidateId": cid, "stage": "applied"}})
    body = res.get_json()
    assert body["success"] is True
    assert body["data"]["changed"] is False

    with SessionLocal() as db:
        rows = db.execute(select(AuditLog).where(AuditLog.entityType == "CANDIDATE", AuditLog.action == "CANDIDATE_STAGE_SET")).scalars().all()
        assert rows == []


def test_invalid_stage_is_rejected_and_state_unchanged(app_client):
    app, client = app_client
    _seed_user(app, user_id="USR-REC", email="rec@example.com", role="RECRUITER")
    token = _login(client, email="rec@example.com")
    cid = _create_candidate(client, token)

    res = _api(client, {"action": "CANDIDATE_STAGE_SET", "token": token, "data": {"candidateId": cid, "stage": "Onboarding"}})
    assert res.status_code == 400
    body = res.get_json()
    assert body["success"] is False
    assert body["error"]["code"] == "VALIDATION_ERROR"

    with SessionLocal() as db:
        assert db.execute(select(Candidate.stage).where(Candidate.candidateId == cid)).scalar_one() == "Applied"


def test_closed_candidate_needs_manager_reopen(app_client):
    app, client = app_client
    _seed_user(app, user_id="USR-REC", email="rec@example.com", role="RECRUITER")
    _seed_user(app, user_id="USR-HR", email="hr@example.com", role="HR_MANAGER")
    rec = _login(client, email="rec@example.com")
    hr = _login(client, email="hr@example.com")
    cid = _create_candidate(client, rec)

    assert _api(client, {"action": "CANDIDATE_STAGE_SET", "token": rec, "data": {"candidateId": cid, "stage": "Rejected"}}).status_code == 200

    res = _api(client, {"action": "CANDIDATE_STAGE_SET", "token": rec, "data": {"candidateId": cid, "stage": "Offer"}})
    assert res.status_code == 409
    assert res.get_json()["error"]["code"] == "INVALID_STATE"

    res = _api(client, {"action": "CANDIDATE_STAGE_REOPEN", "token": rec, "data": {"candidateId": cid, "remark": "retry"}})
    assert res.status_code == 403
    assert res.get_json()["error"]["code"] == "FORBIDDEN"

    res = _api(client, {"action": "CANDIDATE_STAGE_REOPEN", "token": hr, "data": {"candidateId": cid}})
    assert res.status_code == 400

    res = _api(client, {"action": "CANDIDATE_STAGE_REOPEN", "token": hr, "data": {"candidateId": cid, "remark": "New opening"}})
    body = res.get_json()
    assert body["success"] is True
    assert body["data"]["fromStage"] == "Rejected"
    assert body["data"]["stage"] == "Screening"

    res = _api(client, {"action": "CANDIDATE_STAGE_HISTORY", "token": rec, "data": {"candidateId": cid}})
    items = res.get_json()["data"]["items"]
    assert [(i["action"], i["toStage"]) for i in items] == [
        ("CANDIDATE_CREATE", "Applied"),
        ("CANDIDATE_STAGE_SET", "Rejected"),
        ("CANDIDATE_STAGE_REOPEN", "Screening"),
    ]
    assert items[-1]["remark"] == "New opening"


def test_interviewer_cannot_change_stage(app_client):
    app, client = app_client
    _seed_user(app, user_id="USR-REC", email="rec@example.com", role="RECRUITER")
    _seed_user(app, user_id="USR-INT", email="int@example.com", role="INTERVIEWER")
    rec = _login(client, email="rec@example.com")
    interviewer = _login(client, email="int@example.com")
    cid = _create_candidate(client, rec)

    res = _api(client, {"action": "CANDIDATE_STAGE_SET", "token": interviewer, "data": {"candidateId": cid, "stage": "Offer"}})
    assert res.status_code == 403
    assert res.get_json()["success"] is False


def test_candidate_update_refuses_stage_field(app_client):
    app, client = app_client
    _seed_user(app, user_id="USR-REC", email="rec@example.com", role="RECRUITER")
    token = _login(client, email="rec@example.com")
    cid = _create_candidate(client, token)

    res = _api(client, {"action": "CANDIDATE_UPDATE", "token": token, "data": {"candidateId": cid, "stage": "Hired"}})
    assert res.status_code == 400
    assert res.get_json()["error"]["code"] == "VALIDATION_ERROR"


def test_pipeline_counts_cover_every_stage(app_client):
    app, client = app_client
    _seed_user(app, user_id="USR-REC", email="rec@example.com", role="RECRUITER")
    token = _login(client, email="rec@example.com")
    _create_candidate(client, token)
    _create_candidate(client, token, email="bob@example.com", name="Bob", stage="Offer")

    res = _api(client, {"action": "PIPELINE_COUNTS", "token": token, "data": {}})
    data = res.get_json()["data"]
    counts = {s["stage"]: s["count"] for s in data["stages"]}
    assert counts == {"Applied": 1, "Screening": 0, "Interview": 0, "Offer": 1, "Hired": 0, "Rejected": 0}
    assert data["total"] == 2


def test_stage_set_via_rest_route(app_client):
    app, client = app_client
    _seed_user(app, user_id="USR-REC", email="rec@example.com", role="RECRUITER")
    token = _login(client, email="rec@example.com")
    cid = _create_candidate(client, token)

    res = client.patch(f"/api/candidates/{cid}/stage", json={"stage": "Screening"}, headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 200
    assert res.get_json()["data"]["stage"] == "Screening"

    res = client.patch(f"/api/candidates/{cid}/stage", json={"stage": "Screening"})
    assert res.status_code == 401
    assert res.get_json()["error"]["code"] == "AUTH_INVALID"

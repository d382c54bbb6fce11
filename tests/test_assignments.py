from __future__ import annotations

import base64
import io
import json
import os

from sqlalchemy import select

from db import SessionLocal
from models import Assignment, Candidate, Communication, StoredFile, User
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


def _setup(app, client):
    _seed_user(app, user_id="USR-REC", email="rec@example.com", role="RECRUITER")
    token = _login(client, email="rec@example.com")
    return token, _create_candidate(client, token)


def _create_assignment(client, token: str, cid: str, **extra) -> dict:
    data = {"candidateId": cid, "title": "Take-home API task", "descriptionHtml": "<p>Build a small REST API</p>", **extra}
    res = _api(client, {"action": "ASSIGNMENT_CREATE", "token": token, "data": data})
    body = res.get_json()
    assert body["success"] is True, body
    return body["data"]


def _upload(client, token: str, assignment_id: str, name: str = "brief.pdf", blob: bytes = b"%PDF-1.4 brief"):
    return client.post(
        f"/api/assignments/{assignment_id}/files",
        data={"files": [(io.BytesIO(blob), name)]},
        content_type="multipart/form-data",
        headers={"Authorization": f"Bearer {token}"},
    )


def _files_on_disk(app) -> list[str]:
    upload_dir = app.config["CFG"].UPLOAD_DIR
    if not os.path.isdir(upload_dir):
        return []
    return sorted(os.listdir(upload_dir))


def _fail_request_audit(monkeypatch):
    import server

    def _boom(*args, **kwargs):
        raise RuntimeError("audit store unavailable")

    monkeypatch.setattr(server, "_audit_api_call", _boom)


def test_created_assignment_starts_as_draft(app_client):
    app, client = app_client
    token, cid = _setup(app, client)

    asg = _create_assignment(client, token, cid, dueDate="2030-01-15T17:00:00Z")
    assert asg["status"] == "Draft"
    assert asg["sentAt"] == ""
    assert asg["dueDate"] == "2030-01-15T17:00:00.000Z"
    assert asg["assignedBy"] == "USR-REC"


def test_unknown_job_is_rejected(app_client):
    app, client = app_client
    token, cid = _setup(app, client)

    res = _api(client, {"action": "ASSIGNMENT_CREATE", "token": token, "data": {"candidateId": cid, "title": "X", "jobId": "JOB-missing"}})
    assert res.status_code == 404
    assert res.get_json()["error"]["code"] == "NOT_FOUND"


def test_send_moves_draft_to_assigned_and_notifies(app_client):
    app, client = app_client
    token, cid = _setup(app, client)
    asg = _create_assignment(client, token, cid)

    res = client.post(f"/api/assignments/{asg['assignmentId']}/send", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 200
    data = res.get_json()["data"]
    assert data["status"] == "Assigned"
    assert data["sentAt"]
    assert data["notificationQueued"] is True

    with SessionLocal() as db:
        cand = db.execute(select(Candidate).where(Candidate.candidateId == cid)).scalar_one()
        assert cand.inHouseAssignmentStatus == "Assigned"
        comm = db.execute(select(Communication).where(Communication.assignmentId == asg["assignmentId"])).scalar_one()
        assert comm.status == "Sent"

    res = client.post(f"/api/assignments/{asg['assignmentId']}/send", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 409
    assert res.get_json()["error"]["code"] == "INVALID_STATE"


def test_notification_failure_keeps_assignment_sent(app_client, monkeypatch):
    import actions.assignments as assignments_mod

    monkeypatch.setattr(assignments_mod, "dispatch_assignment_sent", lambda payload: False)
    app, client = app_client
    token, cid = _setup(app, client)
    asg = _create_assignment(client, token, cid)

    res = _api(client, {"action": "ASSIGNMENT_SEND", "token": token, "data": {"assignmentId": asg["assignmentId"]}})
    data = res.get_json()["data"]
    assert data["status"] == "Assigned"
    assert data["notificationQueued"] is False

    res = _api(client, {"action": "ASSIGNMENT_GET", "token": token, "data": {"assignmentId": asg["assignmentId"]}})
    assert [c["status"] for c in res.get_json()["data"]["communications"]] == ["Pending"]


def test_send_requires_content(app_client):
    app, client = app_client
    token, cid = _setup(app, client)
    asg = _create_assignment(client, token, cid, descriptionHtml="")

    res = _api(client, {"action": "ASSIGNMENT_SEND", "token": token, "data": {"assignmentId": asg["assignmentId"]}})
    assert res.status_code == 400
    with SessionLocal() as db:
        assert db.execute(select(Assignment.status).where(Assignment.assignmentId == asg["assignmentId"])).scalar_one() == "Draft"

    assert _upload(client, token, asg["assignmentId"]).status_code == 200
    res = _api(client, {"action": "ASSIGNMENT_SEND", "token": token, "data": {"assignmentId": asg["assignmentId"]}})
    data = res.get_json()["data"]
    assert data["status"] == "Assigned"
    assert [a["originalName"] for a in data["attachments"]] == ["brief.pdf"]


def test_only_draft_can_be_edited_or_deleted(app_client):
    app, client = app_client
    token, cid = _setup(app, client)
    asg = _create_assignment(client, token, cid)
    aid = asg["assignmentId"]

    res = _api(client, {"action": "ASSIGNMENT_UPDATE", "token": token, "data": {"assignmentId": aid, "title": "Revised task"}})
    assert res.get_json()["data"]["title"] == "Revised task"

    _api(client, {"action": "ASSIGNMENT_SEND", "token": token, "data": {"assignmentId": aid}})

    res = _api(client, {"action": "ASSIGNMENT_UPDATE", "token": token, "data": {"assignmentId": aid, "title": "Too late"}})
    assert res.status_code == 409

    res = client.delete(f"/api/assignments/{aid}", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 409
    assert res.get_json()["error"]["code"] == "INVALID_STATE"

    with SessionLocal() as db:
        row = db.execute(select(Assignment).where(Assignment.assignmentId == aid)).scalar_one()
        assert row.title == "Revised task"


def test_delete_draft_removes_files(app_client):
    app, client = app_client
    token, cid = _setup(app, client)
    aid = _create_assignment(client, token, cid)["assignmentId"]
    file_id = _upload(client, token, aid).get_json()["data"]["files"][0]["fileId"]

    res = client.delete(f"/api/assignments/{aid}", headers={"Authorization": f"Bearer {token}"})
    assert res.get_json()["data"]["deleted"] is True

    cfg = app.config["CFG"]
    assert not [n for n in os.listdir(cfg.UPLOAD_DIR) if n.startswith(file_id)]
    with SessionLocal() as db:
        assert db.execute(select(StoredFile).where(StoredFile.fileId == file_id)).scalar_one_or_none() is None


def test_status_lifecycle_after_send(app_client):
    app, client = app_client
    token, cid = _setup(app, client)
    aid = _create_assignment(client, token, cid)["assignmentId"]

    def _status(target):
        return client.patch(f"/api/assignments/{aid}/status", json={"status": target}, headers={"Authorization": f"Bearer {token}"})

    assert _status("Assigned").status_code == 409
    _api(client, {"action": "ASSIGNMENT_SEND", "token": token, "data": {"assignmentId": aid}})

    assert _status("Approved").status_code == 409
    assert _status("In Progress").get_json()["data"]["status"] == "In Progress"

    res = _upload(client, token, aid, name="solution.zip", blob=b"PK\x03\x04")
    assert res.get_json()["data"]["kind"] == "SUBMISSION"

    assert _status("Submitted").get_json()["data"]["changed"] is True
    assert _status("Submitted").get_json()["data"]["changed"] is False
    assert _status("Approved").get_json()["data"]["status"] == "Approved"
    assert _status("Cancelled").status_code == 409

    with SessionLocal() as db:
        assert db.execute(select(Candidate.inHouseAssignmentStatus).where(Candidate.candidateId == cid)).scalar_one() == "Approved"


def test_attachment_removal_and_download(app_client):
    app, client = app_client
    token, cid = _setup(app, client)
    aid = _create_assignment(client, token, cid)["assignmentId"]
    f = _upload(client, token, aid, name="task brief.pdf", blob=b"%PDF-1.4 data").get_json()["data"]["files"][0]

    res = client.get(f"/api/files/{f['fileId']}", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 200
    assert res.data == b"%PDF-1.4 data"
    assert "task brief.pdf" in res.headers["Content-Disposition"]

    assert client.get(f"/api/files/{f['fileId']}").status_code == 401

    res = client.delete(f"/api/assignments/{aid}/files/{f['fileId']}", headers={"Authorization": f"Bearer {token}"})
    assert res.get_json()["data"]["deleted"] is True
    assert client.get(f"/api/files/{f['fileId']}", headers={"Authorization": f"Bearer {token}"}).status_code == 404


def test_rejected_upload_types(app_client):
    app, client = app_client
    token, cid = _setup(app, client)
    aid = _create_assignment(client, token, cid)["assignmentId"]

    res = _upload(client, token, aid, name="run.exe", blob=b"MZ")
    assert res.status_code == 400
    assert res.get_json()["error"]["code"] == "VALIDATION_ERROR"


def test_candidate_assignments_lists_all(app_client):
    app, client = app_client
    token, cid = _setup(app, client)
    _create_assignment(client, token, cid, title="One")
    _create_assignment(client, token, cid, title="Two")

    res = _api(client, {"action": "CANDIDATE_ASSIGNMENTS", "token": token, "data": {"candidateId": cid}})
    assert res.get_json()["data"]["total"] == 2

    res = _api(client, {"action": "ASSIGNMENT_LIST", "token": token, "data": {"status": "Draft", "candidateId": cid}})
    assert sorted(a["title"] for a in res.get_json()["data"]["items"]) == ["One", "Two"]


def test_failed_send_does_not_notify(app_client, monkeypatch):
    import actions.assignments as assignments_mod

    calls = []
    monkeypatch.setattr(assignments_mod, "dispatch_assignment_sent", lambda payload: calls.append(payload) or True)
    app, client = app_client
    token, cid = _setup(app, client)
    aid = _create_assignment(client, token, cid)["assignmentId"]

    with monkeypatch.context() as m:
        _fail_request_audit(m)
        res = client.post(f"/api/assignments/{aid}/send", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 500
    assert calls == []

    with SessionLocal() as db:
        assert db.execute(select(Assignment.status).where(Assignment.assignmentId == aid)).scalar_one() == "Draft"
        assert db.execute(select(Communication).where(Communication.assignmentId == aid)).scalars().all() == []

    res = client.post(f"/api/assignments/{aid}/send", headers={"Authorization": f"Bearer {token}"})
    assert res.get_json()["data"]["notificationQueued"] is True
    assert [p["assignmentId"] for p in calls] == [aid]


def test_failed_delete_keeps_files_on_disk(app_client, monkeypatch):
    app, client = app_client
    token, cid = _setup(app, client)
    aid = _create_assignment(client, token, cid)["assignmentId"]
    file_id = _upload(client, token, aid, blob=b"%PDF-1.4 keep me").get_json()["data"]["files"][0]["fileId"]

    with monkeypatch.context() as m:
        _fail_request_audit(m)
        res = client.delete(f"/api/assignments/{aid}", headers={"Authorization": f"Bearer {token}"})
        assert res.status_code == 500
        res = client.delete(f"/api/assignments/{aid}/files/{file_id}", headers={"Authorization": f"Bearer {token}"})
        assert res.status_code == 500

    with SessionLocal() as db:
        assert db.execute(select(Assignment.status).where(Assignment.assignmentId == aid)).scalar_one() == "Draft"
    res = client.get(f"/api/files/{file_id}", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 200
    assert res.data == b"%PDF-1.4 keep me"


def test_rejected_batch_writes_nothing(app_client):
    app, client = app_client
    token, cid = _setup(app, client)
    aid = _create_assignment(client, token, cid)["assignmentId"]

    res = client.post(
        f"/api/assignments/{aid}/files",
        data={"files": [(io.BytesIO(b"%PDF-1.4 ok"), "ok.pdf"), (io.BytesIO(b"MZ"), "bad.exe")]},
        content_type="multipart/form-data",
        headers={"Authorization": f"Bearer {token}"},
    )
    assert res.status_code == 400
    assert _files_on_disk(app) == []
    with SessionLocal() as db:
        assert db.execute(select(StoredFile).where(StoredFile.assignmentId == aid)).scalars().all() == []


def test_rolled_back_upload_leaves_no_files(app_client, monkeypatch):
    app, client = app_client
    token, cid = _setup(app, client)
    aid = _create_assignment(client, token, cid)["assignmentId"]

    _fail_request_audit(monkeypatch)
    res = client.post(
        f"/api/assignments/{aid}/files",
        data={"files": [(io.BytesIO(b"%PDF-1.4 one"), "one.pdf"), (io.BytesIO(b"two"), "two.txt")]},
        content_type="multipart/form-data",
        headers={"Authorization": f"Bearer {token}"},
    )
    assert res.status_code == 500
    assert _files_on_disk(app) == []
    with SessionLocal() as db:
        assert db.execute(select(StoredFile)).scalars().all() == []


def test_json_upload_takes_base64_blobs(app_client):
    app, client = app_client
    token, cid = _setup(app, client)
    aid = _create_assignment(client, token, cid)["assignmentId"]

    blob = base64.b64encode(b"%PDF-1.4 from json").decode("ascii")
    res = _api(
        client,
        {
            "action": "ASSIGNMENT_UPLOAD_FILES",
            "token": token,
            "data": {"assignmentId": aid, "files": [{"fileName": "brief.pdf", "mimeType": "application/pdf", "blob": blob}]},
        },
    )
    assert res.status_code == 200
    f = res.get_json()["data"]["files"][0]
    assert f["size"] == len(b"%PDF-1.4 from json")

    res = client.get(f"/api/files/{f['fileId']}", headers={"Authorization": f"Bearer {token}"})
    assert res.data == b"%PDF-1.4 from json"

    res = _api(
        client,
        {
            "action": "ASSIGNMENT_UPLOAD_FILES",
            "token": token,
            "data": {"assignmentId": aid, "files": [{"fileName": "data.pdf", "blob": "data:application/pdf;base64," + blob}]},
        },
    )
    assert res.status_code == 200


def test_malformed_json_upload_is_a_validation_error(app_client):
    app, client = app_client
    token, cid = _setup(app, client)
    aid = _create_assignment(client, token, cid)["assignmentId"]

    for files in ([{"fileName": "brief.pdf", "blob": "hello"}], ["brief.pdf"], [{"fileName": "brief.pdf"}], [{"blob": "aGVsbG8="}]):
        res = _api(client, {"action": "ASSIGNMENT_UPLOAD_FILES", "token": token, "data": {"assignmentId": aid, "files": files}})
        assert res.status_code == 400, files
        assert res.get_json()["error"]["code"] == "VALIDATION_ERROR"

    assert _files_on_disk(app) == []


def test_send_only_from_draft(app_client):
    app, client = app_client
    token, cid = _setup(app, client)
    headers = {"Authorization": f"Bearer {token}"}

    def _walk(*statuses):
        aid = _create_assignment(client, token, cid)["assignmentId"]
        if statuses and statuses[0] != "Cancelled":
            assert client.post(f"/api/assignments/{aid}/send", headers=headers).status_code == 200
        for s in statuses:
            res = client.patch(f"/api/assignments/{aid}/status", json={"status": s}, headers=headers)
            assert res.status_code == 200, (s, res.get_json())
        return aid

    cases = {
        "Cancelled": _walk("Cancelled"),
        "Submitted": _walk("In Progress", "Submitted"),
        "Approved": _walk("In Progress", "Submitted", "Approved"),
        "Rejected": _walk("In Progress", "Submitted", "Rejected"),
    }
    for status, aid in cases.items():
        res = client.post(f"/api/assignments/{aid}/send", headers=headers)
        assert res.status_code == 409, status
        assert res.get_json()["error"]["code"] == "INVALID_STATE"
        with SessionLocal() as db:
            assert db.execute(select(Assignment.status).where(Assignment.assignmentId == aid)).scalar_one() == status


def test_cancelled_draft_cannot_be_deleted(app_client):
    app, client = app_client
    token, cid = _setup(app, client)
    aid = _create_assignment(client, token, cid)["assignmentId"]

    res = client.patch(f"/api/assignments/{aid}/status", json={"status": "Cancelled"}, headers={"Authorization": f"Bearer {token}"})
    assert res.get_json()["data"]["status"] == "Cancelled"

    res = client.delete(f"/api/assignments/{aid}", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 409
    assert res.get_json()["error"]["code"] == "INVALID_STATE"
    with SessionLocal() as db:
        assert db.execute(select(Assignment.status).where(Assignment.assignmentId == aid)).scalar_one() == "Cancelled"

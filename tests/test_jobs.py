from __future__ import annotations

import io
import json
import os

from db import SessionLocal
from models import User
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


def _create_job(client, token: str, **extra) -> dict:
    data = {
        "title": "Backend Engineer",
        "department": "Engineering",
        "location": "Remote",
        "jobType": "full-time",
        "requirements": ["Python", "SQL", "Flask"],
        "portals": [
            {"name": "LinkedIn", "url": "https://linkedin.example/jobs/1", "status": "Posted"},
            {"name": "Naukri", "status": "draft"},
        ],
        **extra,
    }
    res = _api(client, {"action": "JOB_CREATE", "token": token, "data": data})
    body = res.get_json()
    assert body["success"] is True, body
    return body["data"]


def test_job_create_keeps_requirements_and_portals(app_client):
    app, client = app_client
    _seed_user(app, user_id="USR-REC", email="rec@example.com", role="RECRUITER")
    token = _login(client, email="rec@example.com")

    job = _create_job(client, token)
    assert job["jobId"].startswith("JOB-")
    assert job["status"] == "Active"
    assert job["jobType"] == "Full-time"
    assert job["requirements"] == ["Python", "SQL", "Flask"]
    assert [(p["name"], p["status"]) for p in job["portals"]] == [("LinkedIn", "Posted"), ("Naukri", "Draft")]
    assert job["applicantCount"] == 0

    res = _api(client, {"action": "JOB_CREATE", "token": token, "data": {"title": "Designer", "requirements": "Figma\n\nPortfolio\n"}})
    assert res.get_json()["data"]["requirements"] == ["Figma", "Portfolio"]

    res = _api(client, {"action": "JOB_CREATE", "token": token, "data": {"title": "Intern", "jobType": "Volunteer"}})
    assert res.status_code == 400


def test_applicant_counts_follow_candidates(app_client):
    app, client = app_client
    _seed_user(app, user_id="USR-REC", email="rec@example.com", role="RECRUITER")
    token = _login(client, email="rec@example.com")
    job = _create_job(client, token)

    _create_candidate(client, token, email="a@example.com", jobId=job["jobId"], source="LinkedIn")
    _create_candidate(client, token, email="b@example.com", jobId=job["jobId"], source="LinkedIn")
    _create_candidate(client, token, email="c@example.com", jobId=job["jobId"], source="Referral")
    _create_candidate(client, token, email="d@example.com")

    res = _api(client, {"action": "JOB_GET", "token": token, "data": {"jobId": job["jobId"]}})
    data = res.get_json()["data"]
    assert data["applicantCount"] == 3
    assert {p["name"]: p["applicantCount"] for p in data["portals"]} == {"LinkedIn": 2, "Naukri": 0}

    res = _api(client, {"action": "JOBS_LIST", "token": token, "data": {}})
    items = res.get_json()["data"]["items"]
    assert [j["applicantCount"] for j in items] == [3]
    assert "portals" not in items[0]


def test_job_update_replaces_portals_but_not_status(app_client):
    app, client = app_client
    _seed_user(app, user_id="USR-REC", email="rec@example.com", role="RECRUITER")
    token = _login(client, email="rec@example.com")
    job = _create_job(client, token)

    res = _api(client, {"action": "JOB_UPDATE", "token": token, "data": {"jobId": job["jobId"], "status": "Closed"}})
    assert res.status_code == 400

    res = _api(
        client,
        {"action": "JOB_UPDATE", "token": token, "data": {"jobId": job["jobId"], "salaryRange": "10-20 LPA", "portals": [{"name": "Indeed"}]}},
    )
    data = res.get_json()["data"]
    assert data["salaryRange"] == "10-20 LPA"
    assert [p["name"] for p in data["portals"]] == ["Indeed"]
    assert data["status"] == "Active"


def test_job_status_requires_manager(app_client):
    app, client = app_client
    _seed_user(app, user_id="USR-REC", email="rec@example.com", role="RECRUITER")
    _seed_user(app, user_id="USR-HR", email="hr@example.com", role="HR_MANAGER")
    rec = _login(client, email="rec@example.com")
    hr = _login(client, email="hr@example.com")
    job = _create_job(client, rec)

    res = _api(client, {"action": "JOB_STATUS_SET", "token": rec, "data": {"jobId": job["jobId"], "status": "Closed"}})
    assert res.status_code == 403
    assert res.get_json()["error"]["code"] == "FORBIDDEN"

    res = _api(client, {"action": "JOB_STATUS_SET", "token": hr, "data": {"jobId": job["jobId"], "status": "paused"}})
    assert res.get_json()["data"] == {"jobId": job["jobId"], "fromStatus": "Active", "status": "Paused", "changed": True}

    res = _api(client, {"action": "JOBS_LIST", "token": rec, "data": {"status": "Active"}})
    assert res.get_json()["data"]["total"] == 0


def test_duplicate_application_for_same_job_is_rejected(app_client):
    app, client = app_client
    _seed_user(app, user_id="USR-REC", email="rec@example.com", role="RECRUITER")
    token = _login(client, email="rec@example.com")
    job = _create_job(client, token)
    other = _create_job(client, token, title="Data Engineer", portals=[])

    _create_candidate(client, token, jobId=job["jobId"])
    res = _api(
        client,
        {
            "action": "CANDIDATE_CREATE",
            "token": token,
            "data": {"name": "Alice", "email": "ALICE@example.com", "position": "Backend Engineer", "jobId": job["jobId"]},
        },
    )
    assert res.status_code == 400
    assert res.get_json()["error"]["code"] == "VALIDATION_ERROR"

    _create_candidate(client, token, jobId=other["jobId"])

    res = _api(client, {"action": "CANDIDATE_CREATE", "token": token, "data": {"name": "Bob", "email": "bob@example.com", "position": "X", "jobId": "JOB-missing"}})
    assert res.status_code == 404


def test_candidate_create_validation(app_client):
    app, client = app_client
    _seed_user(app, user_id="USR-REC", email="rec@example.com", role="RECRUITER")
    token = _login(client, email="rec@example.com")

    res = _api(client, {"action": "CANDIDATE_CREATE", "token": token, "data": {"name": "Bob", "email": "not-an-email", "position": "X"}})
    assert res.status_code == 400
    res = _api(client, {"action": "CANDIDATE_CREATE", "token": token, "data": {"name": "Bob", "email": "bob@example.com"}})
    assert res.status_code == 400
    res = _api(client, {"action": "CANDIDATE_CREATE", "token": token, "data": {"name": "Bob", "email": "bob@example.com", "position": "X", "stage": "Limbo"}})
    assert res.status_code == 400
    res = _api(client, {"action": "CANDIDATE_CREATE", "token": token, "data": {"name": "Bob", "email": "bob@example.com", "position": "X", "experienceYears": -1}})
    assert res.status_code == 400


def test_candidates_list_filters(app_client):
    app, client = app_client
    _seed_user(app, user_id="USR-REC", email="rec@example.com", role="RECRUITER")
    token = _login(client, email="rec@example.com")
    job = _create_job(client, token)

    a = _create_candidate(client, token, name="Asha", email="asha@example.com", jobId=job["jobId"], source="LinkedIn")
    _create_candidate(client, token, name="Bilal", email="bilal@example.com", source="Referral", stage="Screening")
    _create_candidate(client, token, name="Chen", email="chen@example.com", position="Data Analyst")

    def _ids(data):
        res = _api(client, {"action": "CANDIDATES_LIST", "token": token, "data": data})
        body = res.get_json()["data"]
        return body["total"], body["items"]

    total, items = _ids({"jobId": job["jobId"]})
    assert total == 1
    assert items[0]["candidateId"] == a
    assert items[0]["jobTitle"] == "Backend Engineer"

    total, items = _ids({"stage": "screening"})
    assert [c["name"] for c in items] == ["Bilal"]

    total, items = _ids({"source": "LinkedIn"})
    assert [c["name"] for c in items] == ["Asha"]

    total, items = _ids({"q": "analyst"})
    assert [c["name"] for c in items] == ["Chen"]

    total, items = _ids({})
    assert total == 3
    assert all(c["score"] is None for c in items)


def test_resume_upload_replaces_previous(app_client):
    app, client = app_client
    _seed_user(app, user_id="USR-REC", email="rec@example.com", role="RECRUITER")
    token = _login(client, email="rec@example.com")
    cid = _create_candidate(client, token)
    headers = {"Authorization": f"Bearer {token}"}

    res = client.post(
        f"/api/candidates/{cid}/resume",
        data={"resume": (io.BytesIO(b"%PDF-1.4 v1"), "alice_cv.pdf")},
        content_type="multipart/form-data",
        headers=headers,
    )
    first = res.get_json()["data"]["resume"]
    assert first["kind"] == "RESUME"
    assert first["originalName"] == "alice_cv.pdf"

    res = client.post(
        f"/api/candidates/{cid}/resume",
        data={"file": (io.BytesIO(b"%PDF-1.4 v2"), "alice_cv_v2.pdf")},
        content_type="multipart/form-data",
        headers=headers,
    )
    second = res.get_json()["data"]["resume"]

    assert client.get(f"/api/files/{first['fileId']}", headers=headers).status_code == 404
    assert client.get(f"/api/files/{second['fileId']}", headers=headers).data == b"%PDF-1.4 v2"

    res = _api(client, {"action": "CANDIDATE_GET", "token": token, "data": {"candidateId": cid}})
    assert res.get_json()["data"]["resume"]["fileId"] == second["fileId"]

    res = client.post(f"/api/candidates/{cid}/resume", data={}, content_type="multipart/form-data", headers=headers)
    assert res.status_code == 400


def test_failed_resume_replace_keeps_previous_file(app_client, monkeypatch):
    import server

    app, client = app_client
    _seed_user(app, user_id="USR-REC", email="rec@example.com", role="RECRUITER")
    token = _login(client, email="rec@example.com")
    cid = _create_candidate(client, token)
    headers = {"Authorization": f"Bearer {token}"}

    res = client.post(
        f"/api/candidates/{cid}/resume",
        data={"resume": (io.BytesIO(b"%PDF-1.4 v1"), "alice_cv.pdf")},
        content_type="multipart/form-data",
        headers=headers,
    )
    first = res.get_json()["data"]["resume"]

    def _boom(*args, **kwargs):
        raise RuntimeError("audit store unavailable")

    with monkeypatch.context() as m:
        m.setattr(server, "_audit_api_call", _boom)
        res = client.post(
            f"/api/candidates/{cid}/resume",
            data={"resume": (io.BytesIO(b"%PDF-1.4 v2"), "alice_cv_v2.pdf")},
            content_type="multipart/form-data",
            headers=headers,
        )
    assert res.status_code == 500

    assert client.get(f"/api/files/{first['fileId']}", headers=headers).data == b"%PDF-1.4 v1"
    names = os.listdir(app.config["CFG"].UPLOAD_DIR)
    assert len(names) == 1 and names[0].startswith(first["fileId"])

    res = _api(client, {"action": "CANDIDATE_GET", "token": token, "data": {"candidateId": cid}})
    assert res.get_json()["data"]["resume"]["fileId"] == first["fileId"]


def test_interviewer_cannot_create_candidates(app_client):
    app, client = app_client
    _seed_user(app, user_id="USR-INT", email="int@example.com", role="INTERVIEWER")
    token = _login(client, email="int@example.com")

    res = _api(client, {"action": "CANDIDATE_CREATE", "token": token, "data": {"name": "Bob", "email": "bob@example.com", "position": "X"}})
    assert res.status_code == 403

import pytest
from fastapi.websockets import WebSocketDisconnect

from logbook import main, note_pipeline
from logbook.auth import LOCKOUT_THRESHOLD


def _log_case(client, account, reference, **overrides):
    payload = {
        "departmentId": reference["departments"]["Endodontics"],
        "taskId": reference["tasks"]["RCT Posterior"],
        "procedureDate": "2024-05-01",
        "supervisorName": "Dr. Smith",
        "patientOpNumber": "OP-17",
    }
    payload.update(overrides)
    return client.post("/api/procedures", json=payload, headers=account.headers)


def test_endpoints_require_auth(client):
    assert client.get("/api/procedures").status_code in {401, 403}
    assert client.post("/api/ai/parse-note", json={"text": "hi"}).status_code in {401, 403}
    assert client.get("/api/drafts/procedure").status_code in {401, 403}
    bad = {"Authorization": "Bearer not-a-token"}
    resp = client.get("/api/procedures", headers=bad)
    assert resp.status_code == 401
    assert resp.json()["success"] is False


def test_health_and_metrics(client):
    resp = client.get("/health")
    assert resp.json()["status"] == "ok"
    assert resp.headers["X-Trace-Id"]
    assert client.get("/health", headers={"X-Trace-Id": "abc"}).headers["X-Trace-Id"] == "abc"
    assert "logbook_requests_total" in client.get("/metrics").text


def test_first_registration_becomes_admin(client):
    first = client.post(
        "/api/auth/register", json={"email": "Chief@School.edu", "password": "password123"}
    )
    assert first.status_code == 201
    assert first.json()["user"]["role"] == "admin"
    assert first.json()["user"]["email"] == "chief@school.edu"
    second = client.post(
        "/api/auth/register", json={"email": "kid@school.edu", "password": "password123"}
    )
    assert second.json()["user"]["role"] == "student"
    dup = client.post(
        "/api/auth/register", json={"email": "kid@school.edu", "password": "password123"}
    )
    assert dup.status_code == 409
    assert dup.json()["error"]["code"] == "DUPLICATE_EMAIL"


def test_weak_password_rejected(client):
    resp = client.post("/api/auth/register", json={"email": "a@b.com", "password": "short"})
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "WEAK_PASSWORD"


def test_login_and_lockout(client, student):
    ok = client.post("/api/auth/login", json={"email": student.email, "password": "password123"})
    assert ok.status_code == 200
    token = ok.json()["access_token"]
    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.json()["id"] == student.id

    for _ in range(LOCKOUT_THRESHOLD):
        bad = client.post("/api/auth/login", json={"email": student.email, "password": "wrong-pass1"})
        assert bad.status_code == 401
    locked = client.post("/api/auth/login", json={"email": student.email, "password": "password123"})
    assert locked.status_code == 401


def test_validation_errors_use_envelope(client, student):
    resp = client.post("/api/procedures", json={"procedureDate": "not-a-date"}, headers=student.headers)
    assert resp.status_code == 422
    body = resp.json()
    assert body["success"] is False
    assert body["error"]["code"] == "VALIDATION_ERROR"
    assert body["error"]["details"]


def test_procedure_form_errors_are_listed(client, student):
    resp = client.post("/api/procedures", json={}, headers=student.headers)
    assert resp.status_code == 422
    assert set(resp.json()["error"]["details"]) == {
        "department_id",
        "task_id",
        "procedure_date",
        "supervisor_name",
    }


def test_task_must_belong_to_department(client, student, reference):
    resp = _log_case(client, student, reference, taskId=reference["tasks"]["Simple Exo"])
    assert resp.status_code == 422
    assert "task_id" in resp.json()["error"]["details"]


def test_students_only_see_their_own_procedures(client, student, other_student, instructor, reference):
    created = _log_case(client, student, reference)
    assert created.status_code == 201
    assert created.json()["status"] == "pending"
    assert created.json()["procedureType"] == "RCT Posterior"
    _log_case(client, other_student, reference)

    mine = client.get("/api/procedures", headers=student.headers).json()
    assert [p["studentId"] for p in mine] == [student.id]
    everyone = client.get("/api/procedures", headers=instructor.headers).json()
    assert len(everyone) == 2
    filtered = client.get(
        "/api/procedures", params={"student_id": other_student.id}, headers=instructor.headers
    ).json()
    assert [p["studentId"] for p in filtered] == [other_student.id]


def test_verify_and_reject_notify_student(client, student, instructor, reference):
    first = _log_case(client, student, reference).json()
    second = _log_case(client, student, reference, procedureDate="2024-05-02").json()

    assert client.post(f"/api/procedures/{first['id']}/verify", headers=student.headers).status_code == 403
    verified = client.post(f"/api/procedures/{first['id']}/verify", headers=instructor.headers)
    assert verified.json()["status"] == "verified"

    blank = client.post(
        f"/api/procedures/{second['id']}/reject", json={"reason": "  "}, headers=instructor.headers
    )
    assert blank.status_code == 422
    rejected = client.post(
        f"/api/procedures/{second['id']}/reject", json={"reason": "No radiograph"}, headers=instructor.headers
    )
    assert rejected.json()["rejectionReason"] == "No radiograph"

    notes = client.get("/api/notifications", headers=student.headers).json()
    assert notes["total"] == 2
    assert notes["unreadCount"] == 2
    titles = {n["title"] for n in notes["items"]}
    assert titles == {"Procedure verified", "Procedure rejected"}

    first_id = notes["items"][0]["id"]
    assert client.post(f"/api/notifications/{first_id}/read", headers=instructor.headers).status_code == 404
    assert client.post(f"/api/notifications/{first_id}/read", headers=student.headers).json()["read"] is True
    assert client.post("/api/notifications/read-all", headers=student.headers).json() == {"updated": 1}


def test_edit_and_delete_rules(client, student, other_student, instructor, reference):
    proc = _log_case(client, student, reference).json()
    client.post(
        f"/api/procedures/{proc['id']}/reject", json={"reason": "Wrong date"}, headers=instructor.headers
    )

    assert client.patch(
        f"/api/procedures/{proc['id']}", json={"procedureDate": "2024-05-03"}, headers=other_student.headers
    ).status_code == 403
    edited = client.patch(
        f"/api/procedures/{proc['id']}", json={"procedureDate": "2024-05-03"}, headers=student.headers
    ).json()
    assert edited["status"] == "pending"
    assert edited["procedureDate"] == "2024-05-03"
    assert edited["rejectionReason"] is None

    moved = client.patch(
        f"/api/procedures/{proc['id']}",
        json={"departmentId": reference["departments"]["Oral Maxillofacial Surgery"]},
        headers=student.headers,
    )
    assert moved.status_code == 422

    client.post(f"/api/procedures/{proc['id']}/verify", headers=instructor.headers)
    assert client.patch(
        f"/api/procedures/{proc['id']}", json={"supervisorName": "Dr. Who"}, headers=student.headers
    ).status_code == 409
    assert client.delete(f"/api/procedures/{proc['id']}", headers=student.headers).status_code == 409

    pending = _log_case(client, student, reference).json()
    assert client.delete(f"/api/procedures/{pending['id']}", headers=student.headers).json() == {
        "deleted": pending["id"]
    }


def test_export_csv(client, student, reference):
    _log_case(client, student, reference)
    resp = client.get("/api/procedures/export", headers=student.headers)
    assert resp.headers["content-type"].startswith("text/csv")
    lines = resp.text.strip().splitlines()
    assert lines[0] == "Date,Patient ID,Procedure,Department,Supervisor,Status"
    assert lines[1] == "2024-05-01,OP-17,RCT Posterior,Endodontics,Dr. Smith,Pending"


def test_free_text_keeps_ampersands(client, student, reference):
    created = _log_case(
        client,
        student,
        reference,
        supervisorName="Dr. Smith & Dr. Rao",
        patientName="O'Neil & Sons",
        patientOpNumber="OP-1&2",
    ).json()
    assert created["supervisorName"] == "Dr. Smith & Dr. Rao"
    assert created["patientName"] == "O'Neil & Sons"

    listed = client.get("/api/procedures", headers=student.headers).json()[0]
    assert listed["supervisorName"] == "Dr. Smith & Dr. Rao"

    rows = client.get("/api/procedures/export", headers=student.headers).text.strip().splitlines()
    assert rows[1] == "2024-05-01,OP-1&2,RCT Posterior,Endodontics,Dr. Smith & Dr. Rao,Pending"


def test_logging_updates_stats_and_badges(client, student, reference):
    _log_case(client, student, reference)
    summary = client.get("/api/gamification/summary", headers=student.headers).json()
    assert summary["stats"]["totalProcedures"] == 1
    assert summary["stats"]["currentStreak"] == 1
    assert [b["code"] for b in summary["earned"]] == ["first_case"]


def test_draft_parse_fills_fields_with_keyword_fallback(client, student, reference):
    resp = client.post(
        "/api/drafts/procedure/parse",
        json={"text": "Extraction in oral surgery with Dr. Smith"},
        headers=student.headers,
    )
    body = resp.json()
    assert body["result"]["source"] == "keywords"
    assert body["result"]["corrected"] is False
    assert body["applied"] == ["department", "task", "supervisor"]
    values = body["draft"]["values"]
    assert values["department_id"] == reference["departments"]["Oral Maxillofacial Surgery"]
    assert values["task_id"] == reference["tasks"]["Simple Exo"]
    assert values["supervisor_name"] == "Dr. Smith"


def test_draft_manual_fields_survive_parsing_until_submit(client, student, reference):
    client.patch(
        "/api/drafts/procedure",
        json={"supervisorName": "Dr. Jones", "procedureDate": "2024-05-01"},
        headers=student.headers,
    )
    parsed = client.post(
        "/api/drafts/procedure/parse",
        json={"text": "root canal in endodontics with Dr. Smith"},
        headers=student.headers,
    ).json()
    assert "supervisor" not in parsed["applied"]
    assert parsed["draft"]["values"]["supervisor_name"] == "Dr. Jones"
    assert parsed["draft"]["manual"]["supervisor"] is True

    submitted = client.post("/api/drafts/procedure/submit", headers=student.headers)
    assert submitted.status_code == 201
    assert submitted.json()["procedure"]["supervisorName"] == "Dr. Jones"
    assert submitted.json()["draft"]["manual"] == {
        "department": False,
        "task": False,
        "supervisor": False,
    }
    assert client.get("/api/drafts/procedure", headers=student.headers).json()["values"]["task_id"] is None


def test_manual_department_clears_task(client, student, reference):
    client.post(
        "/api/drafts/procedure/parse",
        json={"text": "Extraction in surgery"},
        headers=student.headers,
    )
    draft = client.patch(
        "/api/drafts/procedure",
        json={"departmentId": reference["departments"]["Endodontics"]},
        headers=student.headers,
    ).json()
    assert draft["values"]["task_id"] is None
    assert draft["manual"]["department"] is True
    assert draft["manual"]["task"] is True


def test_incomplete_draft_submit_keeps_state(client, student):
    client.patch("/api/drafts/procedure", json={"supervisorName": "Dr. Jones"}, headers=student.headers)
    resp = client.post("/api/drafts/procedure/submit", headers=student.headers)
    assert resp.status_code == 422
    draft = client.get("/api/drafts/procedure", headers=student.headers).json()
    assert draft["values"]["supervisor_name"] == "Dr. Jones"
    reset = client.delete("/api/drafts/procedure", headers=student.headers).json()
    assert reset["manual"]["supervisor"] is False


def test_ai_endpoints_use_remote_results(client, student, reference, monkeypatch):
    monkeypatch.setattr(note_pipeline, "call_openai", lambda msgs: "Root canal with Dr. Rao")
    monkeypatch.setattr(
        note_pipeline,
        "call_openai_tool",
        lambda msgs, tool: {"task_id": reference["tasks"]["RCT Posterior"], "supervisor_name": "Dr. Rao"},
    )
    corrected = client.post("/api/ai/correct-note", json={"text": "rute canal"}, headers=student.headers)
    assert corrected.json() == {"correctedText": "Root canal with Dr. Rao", "corrected": True}

    parsed = client.post("/api/ai/parse-note", json={"text": "rct with dr rao"}, headers=student.headers).json()
    assert parsed["department"] == reference["departments"]["Endodontics"]
    assert parsed["task"] == reference["tasks"]["RCT Posterior"]
    assert parsed["supervisorName"] == "Dr. Rao"
    assert parsed["source"] == "ai"


def test_transcription_unavailable_without_key(client, student):
    assert client.get("/api/notes/transcribe/status", headers=student.headers).json() == {
        "available": False,
        "active": False,
    }
    resp = client.post(
        "/api/notes/transcribe", files={"file": ("clip.webm", b"audio")}, headers=student.headers
    )
    assert resp.status_code == 200
    assert resp.json()["available"] is False
    assert client.delete("/api/notes/transcribe", headers=student.headers).json() == {"stopped": False}


def test_transcription_returns_transcript(client, student, monkeypatch):
    monkeypatch.setattr(main, "ai_available", lambda: True)
    monkeypatch.setattr(main, "transcribe_audio", lambda data, filename: f"{len(data)} bytes from {filename}")
    resp = client.post(
        "/api/notes/transcribe", files={"file": ("clip.webm", b"audio")}, headers=student.headers
    )
    assert resp.json() == {"available": True, "transcript": "5 bytes from clip.webm", "state": "completed"}


def test_departments_and_tasks(client, admin, instructor, student):
    depts = client.get("/api/departments", headers=student.headers).json()
    assert len(depts) == 8
    assert client.post("/api/departments", json={"name": "Implantology"}, headers=instructor.headers).status_code == 403
    implant = client.post("/api/departments", json={"name": "Implantology"}, headers=admin.headers)
    assert implant.status_code == 201
    assert client.post("/api/departments", json={"name": "implantology"}, headers=admin.headers).status_code == 409

    task = client.post(
        "/api/tasks",
        json={"departmentId": implant.json()["id"], "taskName": "Implant Placement", "target": 2},
        headers=instructor.headers,
    ).json()
    assert task["isPredefined"] is False
    assert client.patch(f"/api/tasks/{task['id']}", json={"target": 4}, headers=instructor.headers).json()["target"] == 4
    assert client.delete(f"/api/tasks/{task['id']}", headers=instructor.headers).status_code == 200

    predefined = client.get("/api/tasks", headers=student.headers).json()[0]
    assert predefined["isPredefined"] is True
    assert client.delete(f"/api/tasks/{predefined['id']}", headers=admin.headers).status_code == 400


def test_batches_and_membership(client, admin, student, other_student):
    batch = client.post(
        "/api/batches", json={"name": "BDS 2024", "academicYear": "2024", "maxMembers": 1}, headers=admin.headers
    )
    assert batch.status_code == 201
    batch_id = batch.json()["id"]
    assert client.post("/api/batches", json={"name": "BDS 2024"}, headers=admin.headers).status_code == 409

    assigned = client.post(f"/api/batches/{batch_id}/members", json={"userId": student.id}, headers=admin.headers)
    assert assigned.json()["assigned"] is True
    full = client.post(f"/api/batches/{batch_id}/members", json={"userId": other_student.id}, headers=admin.headers)
    assert full.status_code == 409

    mine = client.get("/api/batches/mine", headers=student.headers).json()
    assert [b["name"] for b in mine] == ["BDS 2024"]
    assert mine[0]["memberCount"] == 1

    renamed = client.patch(f"/api/batches/{batch_id}", json={"name": "BDS 2024 A"}, headers=admin.headers)
    assert renamed.json()["name"] == "BDS 2024 A"

    removed = client.delete(f"/api/batches/{batch_id}/members/{student.id}", headers=admin.headers)
    assert removed.json()["removed"] is True
    assert client.delete(f"/api/batches/{batch_id}/members/{student.id}", headers=admin.headers).status_code == 404
    assert client.delete(f"/api/batches/{batch_id}", headers=admin.headers).json() == {"deleted": batch_id}


def test_role_management(client, admin, student):
    assert client.get("/api/admin/users", headers=student.headers).status_code == 403
    users = client.get("/api/admin/users", headers=admin.headers).json()
    assert {u["email"] for u in users} == {admin.email, student.email}

    assert client.put(f"/api/admin/users/{student.id}/role", json={"role": "wizard"}, headers=admin.headers).status_code == 422
    assert client.put(f"/api/admin/users/{admin.id}/role", json={"role": "student"}, headers=admin.headers).status_code == 400
    promoted = client.put(f"/api/admin/users/{student.id}/role", json={"role": "instructor"}, headers=admin.headers)
    assert promoted.json()["role"] == "instructor"


def test_roster_import(client, admin, student):
    text = "email,name,batch\nnew@school.edu,New Student,Batch Z\nstudent@school.edu,Existing,batch z\nnot an email,Batch Z\n"
    resp = client.post("/api/admin/roster/import", json={"text": text}, headers=admin.headers)
    body = resp.json()
    assert body["skippedLines"] == 2
    outcomes = {r["email"]: r for r in body["results"]}
    assert outcomes["new@school.edu"]["status"] == "created"
    assert outcomes["new@school.edu"]["temporaryPassword"]
    assert outcomes["student@school.edu"]["status"] == "assigned"
    assert outcomes["student@school.edu"]["batch"] == "Batch Z"

    batches = client.get("/api/batches", headers=admin.headers).json()
    assert [(b["name"], b["memberCount"]) for b in batches] == [("Batch Z", 2)]

    login = client.post(
        "/api/auth/login",
        json={"email": "new@school.edu", "password": outcomes["new@school.edu"]["temporaryPassword"]},
    )
    assert login.status_code == 200


def test_roster_import_into_full_batch_creates_nothing(client, admin, student):
    batch_id = client.post(
        "/api/batches", json={"name": "Full", "maxMembers": 1}, headers=admin.headers
    ).json()["id"]
    client.post(f"/api/batches/{batch_id}/members", json={"userId": student.id}, headers=admin.headers)

    body = client.post(
        "/api/admin/roster/import", json={"text": "late@school.edu,Late,Full"}, headers=admin.headers
    ).json()
    assert body["skippedLines"] == 0
    assert body["results"] == [
        {"email": "late@school.edu", "name": "Late", "batch": "Full", "status": "skipped", "reason": "batch full"}
    ]
    emails = {u["email"] for u in client.get("/api/admin/users", headers=admin.headers).json()}
    assert "late@school.edu" not in emails

    again = client.post(
        "/api/admin/roster/import", json={"text": "student@school.edu,Student,full"}, headers=admin.headers
    ).json()
    assert again["results"][0]["status"] == "skipped"
    assert again["results"][0]["reason"] == "already in batch"


def test_messages_visibility_and_notifications(client, admin, instructor, student, other_student):
    assert client.post("/api/messages", json={"content": "hi all"}, headers=student.headers).status_code == 403

    dm = client.post(
        "/api/messages",
        json={"content": "<b>Need</b> help <script>x</script>", "recipientId": other_student.id},
        headers=student.headers,
    )
    assert dm.status_code == 201
    assert "<" not in dm.json()["content"]

    batch_id = client.post("/api/batches", json={"name": "Batch B"}, headers=admin.headers).json()["id"]
    client.post(f"/api/batches/{batch_id}/members", json={"userId": other_student.id}, headers=admin.headers)
    client.post("/api/messages", json={"content": "Batch B clinic moved", "batchId": batch_id}, headers=instructor.headers)
    client.post("/api/messages", json={"content": "Holiday on Friday"}, headers=instructor.headers)

    student_view = {m["content"] for m in client.get("/api/messages", headers=student.headers).json()}
    other_view = {m["content"] for m in client.get("/api/messages", headers=other_student.headers).json()}
    assert "Batch B clinic moved" not in student_view
    assert "Holiday on Friday" in student_view
    assert {"Batch B clinic moved", "Holiday on Friday"} <= other_view
    assert len(other_view) == 3

    notes = client.get("/api/notifications", headers=other_student.headers).json()
    assert notes["items"][0]["type"] == "message"
    assert notes["items"][0]["relatedId"] == dm.json()["id"]


def test_reactions_toggle(client, instructor, student):
    message = client.post("/api/messages", json={"content": "Well done"}, headers=instructor.headers).json()
    url = f"/api/messages/{message['id']}/reactions"
    on = client.post(url, json={"reactionType": "like"}, headers=student.headers).json()
    assert on == {"active": True, "reactions": {"like": 1}}
    listed = client.get("/api/messages", headers=student.headers).json()[0]
    assert listed["myReactions"] == ["like"]
    off = client.post(url, json={"reactionType": "like"}, headers=student.headers).json()
    assert off == {"active": False, "reactions": {}}


def test_analytics_endpoints(client, student, instructor, reference):
    _log_case(client, student, reference)
    progress = client.get("/api/analytics/progress", headers=student.headers).json()
    assert len(progress) == 8
    radar = client.get("/api/analytics/risk-radar", headers=student.headers).json()
    assert radar["weeksRemaining"] >= 1
    assert client.get("/api/analytics/batches", headers=student.headers).status_code == 403
    assert client.get("/api/analytics/batches", headers=instructor.headers).json() == []
    assert client.get("/api/analytics/batch-comparison", headers=student.headers).json() == {
        "batch": None,
        "departments": [],
    }


def test_theme_preferences(client, student):
    assert len(client.get("/api/themes").json()) == 8
    default = client.get("/api/profile/theme", headers=student.headers).json()
    assert default["preset"] == "vibrant"

    saved = client.put(
        "/api/profile/theme", json={"preset": "forest", "accent": "10  20% 30%"}, headers=student.headers
    ).json()
    assert saved["preset"] == "forest"
    assert saved["accent"] == "10 20% 30%"

    bad = client.put("/api/profile/theme", json={"primary": "red"}, headers=student.headers)
    assert bad.status_code == 422
    assert bad.json()["error"]["code"] == "INVALID_THEME"

    reset = client.delete("/api/profile/theme", headers=student.headers).json()
    assert reset["preset"] == "vibrant"
    assert reset["custom"] == {}


def test_change_feed_requires_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/changes") as ws:
            ws.receive_json()


def test_change_feed_accepts_query_token(client, student):
    with client.websocket_connect(f"/ws/changes?token={student.token}") as ws:
        assert ws.receive_json() == {"event": "connected"}

import asyncio

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

import main
from conftest import make_students
from session_manager import SessionManager
from sync_manager import SYNC_POLICY_DUAL_WRITE, SYNC_POLICY_REQUIRE_REMOTE, SyncManager


@pytest.fixture
def api(db, fake_sheets, clock, monkeypatch):
    sync = SyncManager(db, fake_sheets, policy=SYNC_POLICY_DUAL_WRITE)
    monkeypatch.setattr(main, "db", db)
    monkeypatch.setattr(main, "sync", sync)
    monkeypatch.setattr(main, "manager", SessionManager(db, sync=sync, clock=clock))
    return TestClient(main.app)


@pytest.fixture
def class_id(api, db):
    created = api.post("/classes", json={"name": "Biology 101"}).json()["class"]
    db.upsert_students(created["id"], make_students(created["id"], 5))
    return created["id"]


def _generate_and_mark(api, class_id, absent=(), n=5, seed=1):
    api.post(f"/classes/{class_id}/select")
    picks = api.post("/session/generate", json={"n": n, "seed": seed}).json()["session"]["picks"]
    for sid in picks:
        status = "absent" if sid in absent else "present"
        api.put("/session/marks", json={"studentId": sid, "status": status, "reason": "unexcused"})
    return picks


def test_root_reports_status(api):
    body = api.get("/").json()

    assert body["status"] == "online"
    assert body["syncPolicy"] == SYNC_POLICY_DUAL_WRITE


def test_create_and_list_classes(api):
    assert api.post("/classes", json={"name": "  "}).status_code == 422

    api.post("/classes", json={"name": "Zoology"})
    api.post("/classes", json={"name": "algebra"})

    names = [c["name"] for c in api.get("/classes").json()["classes"]]
    assert names == ["algebra", "Zoology"]


def test_unknown_class_is_404(api):
    assert api.post("/classes/nope/select").status_code == 404
    assert api.get("/classes/nope/students").status_code == 404


def test_generate_without_class_is_conflict(api):
    response = api.post("/session/generate", json={})

    assert response.status_code == 409
    assert "No class selected" in response.json()["detail"]


def test_save_without_proposal_is_conflict(api, class_id):
    api.post(f"/classes/{class_id}/select")

    assert api.post("/session/save").status_code == 409


def test_full_session_flow(api, class_id):
    picks = _generate_and_mark(api, class_id, absent={"s2", "s4"})
    assert sorted(picks) == ["s1", "s2", "s3", "s4", "s5"]

    saved = api.post("/session/save").json()
    assert saved["absences"] == 2
    assert saved["remoteMirrored"] is False
    assert api.get("/session/current").json()["session"] is None

    students = {s["id"]: s["absenceCount"] for s in api.get(f"/classes/{class_id}/students").json()["students"]}
    assert students == {"s1": 0, "s2": 1, "s3": 0, "s4": 1, "s5": 0}

    history = api.get(f"/classes/{class_id}/sessions").json()["sessions"]
    assert len(history) == 1
    assert history[0]["pickCount"] == 5
    assert history[0]["absentCount"] == 2

    csv_text = api.get(f"/classes/{class_id}/absences.csv").text
    assert csv_text.splitlines()[0] == "date,studentId,displayName,status,reason"
    assert len(csv_text.splitlines()) == 3

    proposal = api.post("/session/generate", json={"n": 0}).json()
    assert sorted(proposal["session"]["carryoverIds"]) == ["s2", "s4"]
    assert proposal["carryoverOverflow"] is True


def test_mark_validation(api, class_id):
    _generate_and_mark(api, class_id, n=1)

    bad_status = api.put("/session/marks", json={"studentId": "s1", "status": "late"})
    bad_reason = api.put("/session/marks", json={"studentId": "s1", "status": "absent", "reason": "sick"})

    assert bad_status.status_code == 422
    assert bad_reason.status_code == 422


def test_mark_student_not_picked_is_400(api, class_id):
    picks = _generate_and_mark(api, class_id, n=1)
    outsider = next(f"s{i}" for i in range(1, 6) if f"s{i}" not in picks)

    response = api.put("/session/marks", json={"studentId": outsider, "status": "absent"})

    assert response.status_code == 400


def test_delete_session_and_clear_history(api, class_id):
    _generate_and_mark(api, class_id, absent={"s1"})
    session_id = api.post("/session/save").json()["session"]["id"]

    assert api.delete(f"/classes/{class_id}/sessions/missing").status_code == 404
    deleted = api.delete(f"/classes/{class_id}/sessions/{session_id}").json()
    assert deleted["removedAbsences"] == 1

    _generate_and_mark(api, class_id, absent={"s3"}, seed=2)
    api.post("/session/save")
    cleared = api.delete(f"/classes/{class_id}/history").json()

    assert cleared["removed"] == {"sessions": 1, "ledger": 1}
    assert api.get(f"/classes/{class_id}/sessions").json()["sessions"] == []


def test_settings_roundtrip_and_validation(api, class_id):
    updated = api.put(f"/classes/{class_id}/settings", json={"defaultN": 3, "neverSeenWeight": 1.5})

    assert updated.status_code == 200
    assert updated.json()["settings"]["defaultN"] == 3
    assert api.get(f"/classes/{class_id}/settings").json()["settings"]["neverSeenWeight"] == 1.5
    assert api.put(f"/classes/{class_id}/settings", json={"defaultN": 0}).status_code == 400


def test_roster_import(api, class_id):
    response = api.post(f"/classes/{class_id}/roster", json={"csv": "firstName,lastName\nGrace,Hopper\n"})

    assert response.json()["imported"] == 1
    assert len(api.get(f"/classes/{class_id}/students").json()["students"]) == 6


def test_spreadsheet_configuration(api, class_id):
    assert api.put(f"/classes/{class_id}/spreadsheet", json={"spreadsheet": "nope"}).status_code == 400

    url = "https://docs.google.com/spreadsheets/d/1AbCdEfGhIjKlMnOpQrStUvWxYz0123456789/edit"
    response = api.put(f"/classes/{class_id}/spreadsheet", json={"spreadsheet": url})

    assert response.json()["settings"]["spreadsheetId"] == "1AbCdEfGhIjKlMnOpQrStUvWxYz0123456789"
    # Configured but not present on the remote
    assert api.post(f"/classes/{class_id}/sync/import").status_code == 404


def test_export_then_dual_write_save(api, class_id, fake_sheets):
    exported = api.post(f"/classes/{class_id}/sync/export").json()
    assert exported["created"] is True
    assert exported["rows"]["Students"] == 5

    _generate_and_mark(api, class_id, absent={"s5"})
    saved = api.post("/session/save").json()

    assert saved["remoteMirrored"] is True
    assert len(fake_sheets.data_rows(exported["spreadsheetId"], "Ledger")) == 1


def test_remote_errors_map_to_status_codes(api, class_id, db, fake_sheets, monkeypatch):
    sync = SyncManager(db, fake_sheets, policy=SYNC_POLICY_REQUIRE_REMOTE)
    monkeypatch.setattr(main, "manager", SessionManager(db, sync=sync))
    spreadsheet_id = api.post(f"/classes/{class_id}/sync/export").json()["spreadsheetId"]

    fake_sheets.trashed.add(spreadsheet_id)
    _generate_and_mark(api, class_id)
    assert api.post("/session/save").status_code == 410

    fake_sheets.unreachable = True
    assert api.post("/session/save").status_code == 503
    assert api.get(f"/classes/{class_id}/sessions").json()["sessions"] == []


def test_discard(api, class_id):
    _generate_and_mark(api, class_id, n=2)

    assert api.delete("/session/current").json()["discarded"] is True
    assert api.delete("/session/current").json()["discarded"] is False


def test_viewing_another_class_keeps_the_proposal(api, class_id):
    other = api.post("/classes", json={"name": "Chemistry"}).json()["class"]["id"]
    picks = _generate_and_mark(api, class_id, absent={"s1"}, n=3, seed=5)

    assert api.get(f"/classes/{other}/students").status_code == 200
    assert api.get(f"/classes/{other}/settings").status_code == 200
    assert api.get(f"/classes/{other}/sessions").status_code == 200
    assert api.get(f"/classes/{other}/absences.csv").status_code == 200

    current = api.get("/session/current").json()
    assert current["selectedClassId"] == class_id
    assert current["session"]["picks"] == picks
    assert len(current["session"]["marks"]) == len(picks)


def test_class_scoped_writes_target_the_path_class(api, class_id):
    other = api.post("/classes", json={"name": "Chemistry"}).json()["class"]["id"]
    _generate_and_mark(api, class_id, n=2)

    api.post(f"/classes/{other}/roster", json={"csv": "firstName,lastName\nAda,Lovelace\n"})
    api.put(f"/classes/{other}/settings", json={"defaultN": 1})

    assert [s["displayName"] for s in api.get(f"/classes/{other}/students").json()["students"]] == ["Ada Lovelace"]
    assert len(api.get(f"/classes/{class_id}/students").json()["students"]) == 5
    assert api.get("/session/current").json()["session"] is not None
    assert len(api.post("/session/generate", json={}).json()["session"]["picks"]) == 5


def test_timeout_middleware_cuts_off_slow_awaiting_handler():
    slow_app = FastAPI()
    slow_app.add_middleware(main.TimeoutMiddleware, timeout=0.05)

    @slow_app.get("/slow")
    async def slow():
        await asyncio.sleep(2)
        return {"done": True}

    response = TestClient(slow_app).get("/slow")

    assert response.status_code == 504
    assert response.json()["error"] == "GATEWAY_TIMEOUT"

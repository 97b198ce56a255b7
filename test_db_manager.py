import os

import pytest

from conftest import make_students
from errors import ClassNotFoundError, SessionNotFoundError, StorageError
from models import AbsenceLedgerItem, ClassSettings, Mark, SessionEntity, StudentEntity


def _session(class_id, sid="sess-1", picks=("s1", "s2", "s3"), absent=("s1",)):
    marks = {p: Mark(status="absent" if p in absent else "present") for p in picks}
    return SessionEntity(
        id=sid,
        classId=class_id,
        date="2026-10-01T09:00:00+00:00",
        savedAt="2026-10-01T09:05:00+00:00",
        picks=list(picks),
        marks=marks,
    )


def _entries(session):
    return [
        AbsenceLedgerItem(id=f"{session.id}-{sid}", classId=session.classId, studentId=sid,
                          date=session.date, sessionId=session.id)
        for sid in session.absent_marks()
    ]


def _counts(db, class_id):
    return {s.id: s.absenceCount for s in db.get_students(class_id)}


def test_create_and_list_classes_sorted_by_name(db):
    db.create_class("zoology")
    db.create_class("Algebra", default_n=3)

    classes = db.get_all_classes()

    assert [c.name for c in classes] == ["Algebra", "zoology"]
    assert classes[0].defaultN == 3


def test_unknown_class_raises(db):
    assert db.get_class("missing") is None
    with pytest.raises(ClassNotFoundError):
        db.get_students("missing")


def test_commit_session_writes_session_ledger_and_counters(db, seeded_class):
    session = _session(seeded_class.id, absent=("s1", "s3"))

    db.commit_session(session, _entries(session))

    assert [s.id for s in db.get_sessions(seeded_class.id)] == ["sess-1"]
    assert len(db.get_ledger(seeded_class.id)) == 2
    assert _counts(db, seeded_class.id) == {"s1": 1, "s2": 0, "s3": 1, "s4": 0, "s5": 0}
    assert db.get_session(seeded_class.id, "sess-1").marks["s1"].status == "absent"


def test_commit_same_session_twice_is_rejected(db, seeded_class):
    session = _session(seeded_class.id)
    db.commit_session(session, _entries(session))

    with pytest.raises(ValueError):
        db.commit_session(session, _entries(session))

    assert len(db.get_ledger(seeded_class.id)) == 1
    assert _counts(db, seeded_class.id)["s1"] == 1


def test_remove_session_reverses_only_its_own_entries(db, seeded_class):
    first = _session(seeded_class.id, sid="a", absent=("s1",))
    second = _session(seeded_class.id, sid="b", absent=("s1", "s2"))
    db.commit_session(first, _entries(first))
    db.commit_session(second, _entries(second))

    removed = db.remove_session(seeded_class.id, "b")

    assert {r.studentId for r in removed} == {"s1", "s2"}
    assert [s.id for s in db.get_sessions(seeded_class.id)] == ["a"]
    assert [item.sessionId for item in db.get_ledger(seeded_class.id)] == ["a"]
    assert _counts(db, seeded_class.id)["s1"] == 1
    assert _counts(db, seeded_class.id)["s2"] == 0


def test_remove_session_floors_counters_at_zero(db, seeded_class):
    session = _session(seeded_class.id, absent=("s1",))
    db.commit_session(session, _entries(session))
    # Counter drifted out of step with the ledger
    db.replace_class_data(
        seeded_class.id,
        make_students(seeded_class.id, 5),
        db.get_sessions(seeded_class.id),
        db.get_ledger(seeded_class.id),
    )

    db.remove_session(seeded_class.id, session.id)

    assert _counts(db, seeded_class.id)["s1"] == 0


def test_remove_unknown_session_raises_and_changes_nothing(db, seeded_class):
    session = _session(seeded_class.id)
    db.commit_session(session, _entries(session))

    with pytest.raises(SessionNotFoundError):
        db.remove_session(seeded_class.id, "nope")

    assert len(db.get_sessions(seeded_class.id)) == 1
    assert _counts(db, seeded_class.id)["s1"] == 1


def test_clear_history_empties_sessions_ledger_and_counters(db, seeded_class):
    for sid in ("a", "b"):
        session = _session(seeded_class.id, sid=sid, absent=("s1", "s2"))
        db.commit_session(session, _entries(session))

    counts = db.clear_history(seeded_class.id)

    assert counts == {"sessions": 2, "ledger": 4}
    assert db.get_sessions(seeded_class.id) == []
    assert db.get_ledger(seeded_class.id) == []
    assert set(_counts(db, seeded_class.id).values()) == {0}
    assert len(db.get_students(seeded_class.id)) == 5


def test_upsert_students_keeps_existing_counters(db, seeded_class):
    session = _session(seeded_class.id, absent=("s1",))
    db.commit_session(session, _entries(session))

    renamed = StudentEntity(id="s1", classId=seeded_class.id, displayName="Renamed", absenceCount=0)
    added = StudentEntity(id="s9", classId="other", displayName="New")
    assert db.upsert_students(seeded_class.id, [renamed, added]) == 2

    students = {s.id: s for s in db.get_students(seeded_class.id)}
    assert students["s1"].displayName == "Renamed"
    assert students["s1"].absenceCount == 1
    assert students["s9"].classId == seeded_class.id
    assert len(students) == 6


def test_upsert_students_counts_repeated_ids_once(db, seeded_class):
    first = StudentEntity(id="s7", classId=seeded_class.id, displayName="First")
    second = StudentEntity(id="s7", classId=seeded_class.id, displayName="Second")

    assert db.upsert_students(seeded_class.id, [first, second]) == 1

    students = {s.id: s.displayName for s in db.get_students(seeded_class.id)}
    assert students["s7"] == "Second"
    assert len(students) == 6


def test_save_settings_updates_class_default_n(db, seeded_class):
    assert db.get_settings(seeded_class.id) is None

    db.save_settings(ClassSettings(classId=seeded_class.id, defaultN=8, cooldownWeight=0.3))

    assert db.get_settings(seeded_class.id).cooldownWeight == 0.3
    assert db.get_class(seeded_class.id).defaultN == 8


def test_failed_write_leaves_previous_document(db, seeded_class, monkeypatch):
    session = _session(seeded_class.id)

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", broken_replace)
    with pytest.raises(StorageError):
        db.commit_session(session, _entries(session))
    monkeypatch.undo()

    assert db.get_sessions(seeded_class.id) == []
    assert db.get_ledger(seeded_class.id) == []
    assert _counts(db, seeded_class.id)["s1"] == 0
    leftovers = [f for f in os.listdir(db.classes_dir) if f.startswith(".tmp_")]
    assert leftovers == []


def test_error_inside_transaction_writes_nothing(db, seeded_class):
    with pytest.raises(RuntimeError):
        with db._class_transaction(seeded_class.id) as doc:
            doc["students"] = []
            raise RuntimeError("boom")

    assert len(db.get_students(seeded_class.id)) == 5


def test_corrupt_document_raises_storage_error(db, seeded_class):
    with open(db.get_class_file(seeded_class.id), "w", encoding="utf-8") as f:
        f.write("{not json")

    with pytest.raises(StorageError):
        db.get_students(seeded_class.id)


def test_delete_class_and_stats(db, seeded_class):
    other = db.create_class("History")
    session = _session(seeded_class.id)
    db.commit_session(session, _entries(session))

    stats = db.get_database_stats()
    assert stats["classes"] == 2
    assert stats["students"] == 5
    assert stats["sessions"] == 1
    assert stats["ledger"] == 1

    assert db.delete_class(other.id) is True
    assert db.delete_class(other.id) is False
    assert [c.id for c in db.get_all_classes()] == [seeded_class.id]

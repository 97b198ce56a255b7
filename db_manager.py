import json
import os
import copy
import tempfile
from contextlib import contextmanager
from typing import Optional, Dict, Any, List, Iterator
from datetime import datetime, timezone

from errors import ClassNotFoundError, SessionNotFoundError, StorageError
from models import (
    AbsenceLedgerItem,
    ClassEntity,
    ClassSettings,
    SessionEntity,
    StudentEntity,
    DEFAULT_N,
    new_id,
)


class DatabaseManager:
    """Manages file-based storage: one JSON document per class holding its whole data set"""

    def __init__(self, base_dir: str = "data"):
        self.base_dir = base_dir
        self.classes_dir = os.path.join(base_dir, "classes")
        self._ensure_directories()

    def _ensure_directories(self):
        """Ensure all base directories exist"""
        os.makedirs(self.classes_dir, exist_ok=True)

    def get_class_file(self, class_id: str) -> str:
        """Get class json file path"""
        return os.path.join(self.classes_dir, f"class_{class_id}.json")

    def read_json(self, file_path: str) -> Optional[Dict[Any, Any]]:
        """Read JSON file; a missing file reads as None"""
        if not os.path.exists(file_path):
            return None
        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            print(f"[DB] ❌ Error reading {file_path}: {e}")
            raise StorageError(f"Could not read {file_path}: {e}") from e

    def write_json(self, file_path: str, data: Dict[Any, Any]):
        """
        Write JSON file atomically.

        The document goes to a temp file in the same directory first and then
        replaces the target in one rename, so readers see either the old or the
        new document, never a half-written one.
        """
        directory = os.path.dirname(file_path)
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".tmp_", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, file_path)
        except OSError as e:
            print(f"[DB] ❌ Error writing {file_path}: {e}")
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise StorageError(f"Could not write {file_path}: {e}") from e

    def _load_class_doc(self, class_id: str) -> Dict[str, Any]:
        doc = self.read_json(self.get_class_file(class_id))
        if not doc:
            raise ClassNotFoundError(class_id)
        return doc

    @contextmanager
    def _class_transaction(self, class_id: str) -> Iterator[Dict[str, Any]]:
        """
        All-or-nothing unit of work on one class document.

        The body mutates a private copy; the copy is written only when the body
        finishes without raising.
        """
        working = copy.deepcopy(self._load_class_doc(class_id))
        yield working
        working["updated_at"] = datetime.now(timezone.utc).isoformat()
        self.write_json(self.get_class_file(class_id), working)

    # ==================== CLASS OPERATIONS ====================

    def create_class(self, name: str, default_n: int = DEFAULT_N) -> ClassEntity:
        cls = ClassEntity(id=new_id(), name=name, defaultN=default_n)
        doc = {
            "class": cls.to_doc(),
            "settings": None,
            "students": [],
            "sessions": [],
            "ledger": [],
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        self.write_json(self.get_class_file(cls.id), doc)
        print(f"[DB] ✅ Created class {cls.id} ({name})")
        return cls

    def get_class(self, class_id: str) -> Optional[ClassEntity]:
        doc = self.read_json(self.get_class_file(class_id))
        if not doc:
            return None
        return ClassEntity.model_validate(doc["class"])

    def get_all_classes(self) -> List[ClassEntity]:
        classes = []
        for filename in sorted(os.listdir(self.classes_dir)):
            if not (filename.startswith("class_") and filename.endswith(".json")):
                continue
            doc = self.read_json(os.path.join(self.classes_dir, filename))
            if doc and doc.get("class"):
                classes.append(ClassEntity.model_validate(doc["class"]))
        return sorted(classes, key=lambda c: c.name.casefold())

    def update_class(self, class_id: str, **updates) -> ClassEntity:
        with self._class_transaction(class_id) as doc:
            updated = ClassEntity.model_validate({**doc["class"], **updates})
            doc["class"] = updated.to_doc()
        return updated

    def delete_class(self, class_id: str) -> bool:
        file_path = self.get_class_file(class_id)
        if not os.path.exists(file_path):
            return False
        os.remove(file_path)
        print(f"[DB] Deleted class {class_id}")
        return True

    # ==================== SETTINGS ====================

    def get_settings(self, class_id: str) -> Optional[ClassSettings]:
        doc = self._load_class_doc(class_id)
        if not doc.get("settings"):
            return None
        return ClassSettings.model_validate(doc["settings"])

    def save_settings(self, settings: ClassSettings) -> ClassSettings:
        """Upsert settings and keep the class's defaultN in step"""
        with self._class_transaction(settings.classId) as doc:
            doc["settings"] = settings.to_doc()
            doc["class"] = {**doc["class"], "defaultN": settings.defaultN}
        return settings

    # ==================== STUDENTS ====================

    def get_students(self, class_id: str) -> List[StudentEntity]:
        doc = self._load_class_doc(class_id)
        return [StudentEntity.model_validate(s) for s in doc.get("students", [])]

    def upsert_students(self, class_id: str, students: List[StudentEntity]) -> int:
        """
        Insert or replace students by id, later rows winning; existing absence
        counters are kept. Returns the number of distinct students written.
        """
        with self._class_transaction(class_id) as doc:
            by_id = {s["id"]: s for s in doc.get("students", [])}
            for st in students:
                existing = by_id.get(st.id)
                count = existing.get("absenceCount", 0) if existing else 0
                by_id[st.id] = st.model_copy(update={"classId": class_id, "absenceCount": count}).to_doc()
            doc["students"] = list(by_id.values())
        return len({st.id for st in students})

    # ==================== SESSIONS & LEDGER ====================

    def get_sessions(self, class_id: str) -> List[SessionEntity]:
        doc = self._load_class_doc(class_id)
        return [SessionEntity.model_validate(s) for s in doc.get("sessions", [])]

    def get_session(self, class_id: str, session_id: str) -> Optional[SessionEntity]:
        for s in self.get_sessions(class_id):
            if s.id == session_id:
                return s
        return None

    def get_ledger(self, class_id: str) -> List[AbsenceLedgerItem]:
        doc = self._load_class_doc(class_id)
        return [AbsenceLedgerItem.model_validate(item) for item in doc.get("ledger", [])]

    def commit_session(self, session: SessionEntity, ledger_entries: List[AbsenceLedgerItem]):
        """Persist a session, its ledger entries and the matching counter increments together"""
        with self._class_transaction(session.classId) as doc:
            if any(s.get("id") == session.id for s in doc["sessions"]):
                raise ValueError(f"Session {session.id} already saved")
            doc["sessions"].append(session.to_doc())
            doc["ledger"].extend(entry.to_doc() for entry in ledger_entries)
            _adjust_counters(doc["students"], [e.studentId for e in ledger_entries], +1)
        print(f"[DB_SAVE_SESSION] ✅ Session {session.id} saved with {len(ledger_entries)} absence(s)")

    def remove_session(self, class_id: str, session_id: str) -> List[AbsenceLedgerItem]:
        """Remove a session and exactly the ledger entries it produced; returns those entries"""
        with self._class_transaction(class_id) as doc:
            remaining = [s for s in doc["sessions"] if s.get("id") != session_id]
            if len(remaining) == len(doc["sessions"]):
                raise SessionNotFoundError(f"Session {session_id} not found")
            doc["sessions"] = remaining

            removed = [item for item in doc["ledger"] if item.get("sessionId") == session_id]
            doc["ledger"] = [item for item in doc["ledger"] if item.get("sessionId") != session_id]
            _adjust_counters(doc["students"], [item["studentId"] for item in removed], -1)

        print(f"[DB_DELETE_SESSION] ✅ Deleted session {session_id}, reversed {len(removed)} absence(s)")
        return [AbsenceLedgerItem.model_validate(item) for item in removed]

    def clear_history(self, class_id: str) -> Dict[str, int]:
        with self._class_transaction(class_id) as doc:
            counts = {"sessions": len(doc["sessions"]), "ledger": len(doc["ledger"])}
            doc["sessions"] = []
            doc["ledger"] = []
            doc["students"] = [{**s, "absenceCount": 0} for s in doc["students"]]
        print(f"[DB_CLEAR_HISTORY] ✅ Class {class_id}: removed {counts['sessions']} sessions, {counts['ledger']} ledger entries")
        return counts

    def replace_class_data(
        self,
        class_id: str,
        students: List[StudentEntity],
        sessions: List[SessionEntity],
        ledger: List[AbsenceLedgerItem],
        settings: Optional[ClassSettings] = None,
    ):
        """Destructively overwrite a class's roster, sessions and ledger in one write"""
        with self._class_transaction(class_id) as doc:
            doc["students"] = [s.to_doc() for s in students]
            doc["sessions"] = [s.to_doc() for s in sessions]
            doc["ledger"] = [item.to_doc() for item in ledger]
            if settings is not None:
                doc["settings"] = settings.to_doc()
                doc["class"] = {**doc["class"], "defaultN": settings.defaultN}

    # ==================== DATABASE STATS ====================

    def get_database_stats(self) -> Dict[str, Any]:
        """Get overall database statistics"""
        classes = self.get_all_classes()
        total_students = total_sessions = total_ledger = 0
        for cls in classes:
            doc = self._load_class_doc(cls.id)
            total_students += len(doc.get("students", []))
            total_sessions += len(doc.get("sessions", []))
            total_ledger += len(doc.get("ledger", []))

        return {
            "database": "file",
            "classes": len(classes),
            "students": total_students,
            "sessions": total_sessions,
            "ledger": total_ledger,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }


def _adjust_counters(students: List[Dict[str, Any]], student_ids: List[str], delta: int):
    """Apply delta once per occurrence of a student id; counters never go below 0"""
    for sid in student_ids:
        for st in students:
            if st.get("id") == sid:
                st["absenceCount"] = max(0, (st.get("absenceCount") or 0) + delta)
                break

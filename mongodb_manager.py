from contextlib import contextmanager
from typing import Optional, Dict, Any, List, Iterator
from datetime import datetime, timezone
from pymongo import MongoClient, ASCENDING
from pymongo.client_session import ClientSession
from pymongo.errors import PyMongoError

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

# Floor-at-zero decrement as an update pipeline, so it runs server side
_DECREMENT_ABSENCE = [
    {"$set": {"absenceCount": {"$max": [0, {"$subtract": [{"$ifNull": ["$absenceCount", 0]}, 1]}]}}}
]


class MongoDBManager:
    """Manages MongoDB storage for CheckPoint; atomic groups run in multi-document transactions"""

    def __init__(self, mongo_uri: str, db_name: str = "checkpoint_db", client: Optional[MongoClient] = None):
        """
        Initialize MongoDB connection

        Args:
            mongo_uri: MongoDB connection URI (transactions need a replica set)
            db_name: Name of the database to use
            client: Pre-built client, mainly for tests
        """
        try:
            self.client = client or MongoClient(mongo_uri)
            self.db = self.client[db_name]

            # Collections
            self.classes = self.db['classes']
            self.students = self.db['students']
            self.sessions = self.db['sessions']
            self.ledger = self.db['ledger']
            self.settings = self.db['settings']

            self._create_indexes()

            print("✅ MongoDB connection established successfully")
        except Exception as e:
            print(f"❌ Failed to connect to MongoDB: {e}")
            raise

    def _create_indexes(self):
        """Create database indexes for efficient queries"""
        def _ensure_index(collection, keys, *, unique: bool = False):
            try:
                collection.create_index(keys, unique=unique)
            except PyMongoError as create_err:
                print(f"⚠️ Warning: Could not create index {keys} (unique={unique}): {create_err}")

        _ensure_index(self.classes, [("id", ASCENDING)], unique=True)
        _ensure_index(self.students, [("classId", ASCENDING), ("id", ASCENDING)], unique=True)
        _ensure_index(self.sessions, [("id", ASCENDING)], unique=True)
        _ensure_index(self.sessions, [("classId", ASCENDING), ("date", ASCENDING)])
        _ensure_index(self.ledger, [("id", ASCENDING)], unique=True)
        _ensure_index(self.ledger, [("classId", ASCENDING), ("studentId", ASCENDING)])
        _ensure_index(self.ledger, [("classId", ASCENDING), ("sessionId", ASCENDING)])
        _ensure_index(self.settings, [("classId", ASCENDING)], unique=True)

        print("✅ MongoDB indexes ensured")

    @contextmanager
    def _transaction(self, label: str) -> Iterator[ClientSession]:
        """Run the body in one transaction; any driver error aborts it and surfaces as StorageError"""
        try:
            with self.client.start_session() as session:
                with session.start_transaction():
                    yield session
        except PyMongoError as e:
            print(f"[{label}] ❌ Transaction aborted: {e}")
            raise StorageError(f"{label} failed: {e}") from e

    def _require_class(self, class_id: str, session: Optional[ClientSession] = None) -> Dict[str, Any]:
        doc = self.classes.find_one({"id": class_id}, {"_id": 0}, session=session)
        if not doc:
            raise ClassNotFoundError(class_id)
        return doc

    # ==================== CLASS OPERATIONS ====================

    def create_class(self, name: str, default_n: int = DEFAULT_N) -> ClassEntity:
        cls = ClassEntity(id=new_id(), name=name, defaultN=default_n)
        self.classes.insert_one({**cls.to_doc(), "created_at": datetime.now(timezone.utc).isoformat()})
        return cls

    def get_class(self, class_id: str) -> Optional[ClassEntity]:
        doc = self.classes.find_one({"id": class_id}, {"_id": 0})
        return ClassEntity.model_validate(doc) if doc else None

    def get_all_classes(self) -> List[ClassEntity]:
        classes = [ClassEntity.model_validate(d) for d in self.classes.find({}, {"_id": 0})]
        return sorted(classes, key=lambda c: c.name.casefold())

    def update_class(self, class_id: str, **updates) -> ClassEntity:
        current = self._require_class(class_id)
        updated = ClassEntity.model_validate({**current, **updates})
        self.classes.update_one({"id": class_id}, {"$set": updated.to_doc()})
        return updated

    def delete_class(self, class_id: str) -> bool:
        with self._transaction("DB_DELETE_CLASS") as s:
            result = self.classes.delete_one({"id": class_id}, session=s)
            for collection in (self.students, self.sessions, self.ledger, self.settings):
                collection.delete_many({"classId": class_id}, session=s)
        return result.deleted_count > 0

    # ==================== SETTINGS ====================

    def get_settings(self, class_id: str) -> Optional[ClassSettings]:
        self._require_class(class_id)
        doc = self.settings.find_one({"classId": class_id}, {"_id": 0})
        return ClassSettings.model_validate(doc) if doc else None

    def save_settings(self, settings: ClassSettings) -> ClassSettings:
        self._require_class(settings.classId)
        with self._transaction("DB_SAVE_SETTINGS") as s:
            self.settings.replace_one({"classId": settings.classId}, settings.to_doc(), upsert=True, session=s)
            self.classes.update_one({"id": settings.classId}, {"$set": {"defaultN": settings.defaultN}}, session=s)
        return settings

    # ==================== STUDENTS ====================

    def get_students(self, class_id: str) -> List[StudentEntity]:
        self._require_class(class_id)
        return [StudentEntity.model_validate(d) for d in self.students.find({"classId": class_id}, {"_id": 0})]

    def upsert_students(self, class_id: str, students: List[StudentEntity]) -> int:
        """
        Insert or replace students by id, later rows winning; existing absence
        counters are kept. Returns the number of distinct students written.
        """
        self._require_class(class_id)
        with self._transaction("DB_UPSERT_STUDENTS") as s:
            for st in students:
                doc = st.model_copy(update={"classId": class_id}).to_doc()
                doc.pop("absenceCount", None)
                self.students.update_one(
                    {"classId": class_id, "id": st.id},
                    {"$set": doc, "$setOnInsert": {"absenceCount": 0}},
                    upsert=True,
                    session=s,
                )
        return len({st.id for st in students})

    # ==================== SESSIONS & LEDGER ====================

    def get_sessions(self, class_id: str) -> List[SessionEntity]:
        self._require_class(class_id)
        return [SessionEntity.model_validate(d) for d in self.sessions.find({"classId": class_id}, {"_id": 0})]

    def get_session(self, class_id: str, session_id: str) -> Optional[SessionEntity]:
        doc = self.sessions.find_one({"classId": class_id, "id": session_id}, {"_id": 0})
        return SessionEntity.model_validate(doc) if doc else None

    def get_ledger(self, class_id: str) -> List[AbsenceLedgerItem]:
        self._require_class(class_id)
        return [AbsenceLedgerItem.model_validate(d) for d in self.ledger.find({"classId": class_id}, {"_id": 0})]

    def commit_session(self, session: SessionEntity, ledger_entries: List[AbsenceLedgerItem]):
        """Persist a session, its ledger entries and the matching counter increments together"""
        self._require_class(session.classId)
        with self._transaction("DB_SAVE_SESSION") as s:
            self.sessions.insert_one(session.to_doc(), session=s)
            if ledger_entries:
                self.ledger.insert_many([e.to_doc() for e in ledger_entries], session=s)
            for entry in ledger_entries:
                self.students.update_one(
                    {"classId": session.classId, "id": entry.studentId},
                    {"$inc": {"absenceCount": 1}},
                    session=s,
                )
        print(f"[DB_SAVE_SESSION] ✅ Session {session.id} saved with {len(ledger_entries)} absence(s)")

    def remove_session(self, class_id: str, session_id: str) -> List[AbsenceLedgerItem]:
        with self._transaction("DB_DELETE_SESSION") as s:
            result = self.sessions.delete_one({"classId": class_id, "id": session_id}, session=s)
            if result.deleted_count == 0:
                raise SessionNotFoundError(f"Session {session_id} not found")

            removed = list(self.ledger.find({"classId": class_id, "sessionId": session_id}, {"_id": 0}, session=s))
            if removed:
                self.ledger.delete_many({"classId": class_id, "sessionId": session_id}, session=s)
            for item in removed:
                self.students.update_one(
                    {"classId": class_id, "id": item["studentId"]},
                    _DECREMENT_ABSENCE,
                    session=s,
                )

        print(f"[DB_DELETE_SESSION] ✅ Deleted session {session_id}, reversed {len(removed)} absence(s)")
        return [AbsenceLedgerItem.model_validate(item) for item in removed]

    def clear_history(self, class_id: str) -> Dict[str, int]:
        self._require_class(class_id)
        with self._transaction("DB_CLEAR_HISTORY") as s:
            sessions = self.sessions.delete_many({"classId": class_id}, session=s)
            ledger = self.ledger.delete_many({"classId": class_id}, session=s)
            self.students.update_many({"classId": class_id}, {"$set": {"absenceCount": 0}}, session=s)
        counts = {"sessions": sessions.deleted_count, "ledger": ledger.deleted_count}
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
        """Destructively overwrite a class's roster, sessions and ledger in one transaction"""
        self._require_class(class_id)
        with self._transaction("DB_REPLACE_CLASS") as s:
            for collection in (self.sessions, self.ledger, self.students):
                collection.delete_many({"classId": class_id}, session=s)
            if students:
                self.students.insert_many([st.to_doc() for st in students], session=s)
            if sessions:
                self.sessions.insert_many([se.to_doc() for se in sessions], session=s)
            if ledger:
                self.ledger.insert_many([item.to_doc() for item in ledger], session=s)
            if settings is not None:
                self.settings.replace_one({"classId": class_id}, settings.to_doc(), upsert=True, session=s)
                self.classes.update_one({"id": class_id}, {"$set": {"defaultN": settings.defaultN}}, session=s)

    # ==================== DATABASE STATS ====================

    def get_database_stats(self) -> Dict[str, Any]:
        """Get database statistics"""
        return {
            "database": "mongodb",
            "classes": self.classes.count_documents({}),
            "students": self.students.count_documents({}),
            "sessions": self.sessions.count_documents({}),
            "ledger": self.ledger.count_documents({}),
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

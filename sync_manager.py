from typing import Any, Dict, List, Optional

from errors import ClassNotFoundError, PreconditionError, RemoteNotConfiguredError
from models import (
    AbsenceLedgerItem,
    ClassSettings,
    Mark,
    SessionEntity,
    StudentEntity,
    parse_iso,
)
from sheets_client import (
    SHEET_HEADERS,
    STATUS_EXISTS,
    SheetsClient,
    normalize_and_validate_spreadsheet_id,
)

SYNC_POLICY_OFF = "off"
SYNC_POLICY_DUAL_WRITE = "dual_write"
SYNC_POLICY_REQUIRE_REMOTE = "require_remote"
SYNC_POLICIES = (SYNC_POLICY_OFF, SYNC_POLICY_DUAL_WRITE, SYNC_POLICY_REQUIRE_REMOTE)


def _cell(value: Any) -> Any:
    return "" if value is None else value


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    value = (value or "").strip()
    return value or None


def _iso_or_none(value: Optional[str]) -> Optional[str]:
    """The trimmed value when it parses as an ISO date, else None"""
    value = _blank_to_none(value)
    if value is None:
        return None
    try:
        parse_iso(value)
    except ValueError:
        return None
    return value


def _split_ids(value: Optional[str]) -> List[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


def _to_int(value: Optional[str], default: int) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def _to_float(value: Optional[str], default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


class SyncManager:
    """
    Mirrors a class's data to its Google spreadsheet.

    Export is a full overwrite (clear data rows, append everything). Import is
    a destructive restore of the local class from the sheet. Which of the two
    save-time contracts applies is fixed by the policy:

    - dual_write: save never waits on the remote; rows are appended after the
      local commit and a failure is only reported.
    - require_remote: save is refused unless the spreadsheet is configured and
      exists; rows are then appended as in dual_write.
    - off: save never talks to the remote.
    """

    def __init__(self, db, sheets: Optional[SheetsClient] = None, policy: str = SYNC_POLICY_DUAL_WRITE):
        if policy not in SYNC_POLICIES:
            raise ValueError(f"Unknown sync policy {policy!r}; expected one of {', '.join(SYNC_POLICIES)}")
        self.db = db
        self.sheets = sheets
        self.policy = policy

    # ==================== SETTINGS ====================

    def _settings(self, class_id: str) -> ClassSettings:
        cls = self.db.get_class(class_id)
        if not cls:
            raise ClassNotFoundError(class_id)
        return self.db.get_settings(class_id) or ClassSettings.defaults_for(class_id, cls.defaultN)

    def _require_client(self) -> SheetsClient:
        if self.sheets is None:
            raise PreconditionError("Google credentials are not configured")
        return self.sheets

    def configure_spreadsheet(self, class_id: str, raw: str) -> ClassSettings:
        spreadsheet_id = normalize_and_validate_spreadsheet_id(raw)
        settings = self._settings(class_id).model_copy(update={"spreadsheetId": spreadsheet_id})
        return self.db.save_settings(settings)

    # ==================== SAVE-TIME CONTRACT ====================

    def ensure_remote_ready(self, class_id: str) -> str:
        """Fail-closed guard: the spreadsheet must be configured and exist right now"""
        spreadsheet_id = self._settings(class_id).spreadsheetId
        if not spreadsheet_id:
            raise RemoteNotConfiguredError()
        self._require_client().require_spreadsheet(spreadsheet_id)
        return spreadsheet_id

    def before_save(self, class_id: str):
        if self.policy == SYNC_POLICY_REQUIRE_REMOTE:
            self.ensure_remote_ready(class_id)

    def mirrors_saves(self) -> bool:
        return self.policy != SYNC_POLICY_OFF

    def mirror_session(self, class_id: str, session: SessionEntity, ledger_entries: List[AbsenceLedgerItem]) -> bool:
        """Append rows for a just-saved session. Returns False when nothing is configured to receive them."""
        spreadsheet_id = self._settings(class_id).spreadsheetId
        if not spreadsheet_id or self.sheets is None:
            if self.policy == SYNC_POLICY_REQUIRE_REMOTE:
                raise RemoteNotConfiguredError()
            return False

        names = {s.id: s.displayName for s in self.db.get_students(class_id)}
        self.sheets.append_rows(spreadsheet_id, "Sessions", [self._session_row(session, names)])
        self.sheets.append_rows(spreadsheet_id, "Marks", self._mark_rows(session, names))
        self.sheets.append_rows(spreadsheet_id, "Ledger", [self._ledger_row(e, names) for e in ledger_entries])
        print(f"[SYNC] ✅ Session {session.id} mirrored to {spreadsheet_id}")
        return True

    # ==================== EXPORT ====================

    def _provision(self, class_id: str, settings: ClassSettings) -> Dict[str, Any]:
        sheets = self._require_client()
        spreadsheet_id = settings.spreadsheetId
        if spreadsheet_id and sheets.spreadsheet_status(spreadsheet_id) == STATUS_EXISTS:
            sheets.ensure_sheets(spreadsheet_id)
            return {"spreadsheetId": spreadsheet_id, "created": False}

        if spreadsheet_id:
            print(f"[SYNC] ⚠️ Spreadsheet {spreadsheet_id} missing or trashed, creating a new one")
        cls = self.db.get_class(class_id)
        spreadsheet_id = sheets.create_and_init_spreadsheet(f"CheckPoint - {cls.name}")
        self.db.save_settings(settings.model_copy(update={"spreadsheetId": spreadsheet_id}))
        return {"spreadsheetId": spreadsheet_id, "created": True}

    def export_class(self, class_id: str) -> Dict[str, Any]:
        settings = self._settings(class_id)
        target = self._provision(class_id, settings)
        spreadsheet_id = target["spreadsheetId"]

        cls = self.db.get_class(class_id)
        students = self.db.get_students(class_id)
        sessions = sorted(self.db.get_sessions(class_id), key=lambda s: s.date)
        ledger = sorted(self.db.get_ledger(class_id), key=lambda item: item.date)
        names = {s.id: s.displayName for s in students}

        rows: Dict[str, List[List[Any]]] = {
            "Classes": [[cls.id, cls.name, cls.defaultN]],
            "Students": [self._student_row(s) for s in students],
            "Sessions": [self._session_row(s, names) for s in sessions],
            "Marks": [row for s in sessions for row in self._mark_rows(s, names)],
            "Ledger": [self._ledger_row(item, names) for item in ledger],
            "Settings": [[
                class_id,
                settings.defaultN,
                settings.neverSeenWeight,
                settings.cooldownWeight,
            ]],
        }

        for sheet in SHEET_HEADERS:
            self.sheets.clear_data_rows(spreadsheet_id, sheet)
        for sheet, sheet_rows in rows.items():
            self.sheets.append_rows(spreadsheet_id, sheet, sheet_rows)

        print(f"[SYNC_EXPORT] ✅ Class {class_id} exported to {spreadsheet_id}")
        return {**target, "rows": {sheet: len(r) for sheet, r in rows.items()}}

    # ==================== IMPORT ====================

    def import_class(self, class_id: str) -> Dict[str, Any]:
        """Replace the local class with what the spreadsheet holds; nothing is merged"""
        settings = self._settings(class_id)
        if not settings.spreadsheetId:
            raise RemoteNotConfiguredError()
        sheets = self._require_client()
        spreadsheet_id = settings.spreadsheetId
        sheets.require_spreadsheet(spreadsheet_id)

        def mine(row: Dict[str, str]) -> bool:
            return (row.get("classId") or class_id).strip() == class_id

        student_rows = [r for r in sheets.read_rows(spreadsheet_id, "Students") if mine(r)]
        session_rows = [r for r in sheets.read_rows(spreadsheet_id, "Sessions") if mine(r)]
        mark_rows = sheets.read_rows(spreadsheet_id, "Marks")
        ledger_rows = [r for r in sheets.read_rows(spreadsheet_id, "Ledger") if mine(r)]
        settings_rows = [r for r in sheets.read_rows(spreadsheet_id, "Settings") if mine(r)]

        sessions = self._parse_sessions(class_id, session_rows, mark_rows)
        session_ids = {s.id for s in sessions}
        ledger = self._parse_ledger(class_id, ledger_rows, session_ids)

        counts: Dict[str, int] = {}
        for item in ledger:
            counts[item.studentId] = counts.get(item.studentId, 0) + 1
        students = self._parse_students(class_id, student_rows, counts)

        new_settings = None
        if settings_rows:
            row = settings_rows[-1]
            new_settings = settings.model_copy(update={
                "defaultN": max(1, _to_int(row.get("defaultN"), settings.defaultN)),
                "neverSeenWeight": _to_float(row.get("neverSeenWeight"), settings.neverSeenWeight),
                "cooldownWeight": _to_float(row.get("cooldownWeight"), settings.cooldownWeight),
            })

        self.db.replace_class_data(class_id, students, sessions, ledger, new_settings)
        print(f"[SYNC_IMPORT] ✅ Class {class_id}: {len(students)} students, {len(sessions)} sessions, {len(ledger)} ledger entries")
        return {
            "spreadsheetId": spreadsheet_id,
            "students": len(students),
            "sessions": len(sessions),
            "ledger": len(ledger),
        }

    def _parse_students(self, class_id: str, rows: List[Dict[str, str]], counts: Dict[str, int]) -> List[StudentEntity]:
        students = {}
        for r in rows:
            sid = _blank_to_none(r.get("id"))
            display = _blank_to_none(r.get("displayName"))
            if not sid or not display:
                continue
            if sid in students:
                continue
            students[sid] = StudentEntity(
                id=sid,
                classId=class_id,
                firstName=_blank_to_none(r.get("firstName")),
                lastName=_blank_to_none(r.get("lastName")),
                displayName=display,
                externalId=_blank_to_none(r.get("externalId")),
                loginId=_blank_to_none(r.get("loginId")),
                sisId=_blank_to_none(r.get("sisId")),
                notes=_blank_to_none(r.get("notes")),
                absenceCount=counts.get(sid, 0),
            )
        return list(students.values())

    def _parse_sessions(
        self, class_id: str, rows: List[Dict[str, str]], mark_rows: List[Dict[str, str]]
    ) -> List[SessionEntity]:
        marks_by_session: Dict[str, Dict[str, Mark]] = {}
        for r in mark_rows:
            session_id = _blank_to_none(r.get("sessionId"))
            student_id = _blank_to_none(r.get("studentId"))
            status = (r.get("status") or "").strip().lower()
            if not session_id or not student_id or status not in ("present", "absent"):
                continue
            reason = (r.get("reason") or "").strip().lower()
            marks_by_session.setdefault(session_id, {})[student_id] = Mark(
                status=status,
                reason=reason if reason in ("excused", "unexcused") else None,
            )

        sessions = {}
        for r in rows:
            session_id = _blank_to_none(r.get("id"))
            date = _iso_or_none(r.get("date"))
            if not session_id or session_id in sessions:
                continue
            if not date:
                print(f"[SYNC_IMPORT] ⚠️ Skipping session {session_id}: unreadable date {r.get('date')!r}")
                continue
            picks = _split_ids(r.get("picksCSV"))
            sessions[session_id] = SessionEntity(
                id=session_id,
                classId=class_id,
                date=date,
                savedAt=_iso_or_none(r.get("savedAt")),
                picks=picks,
                carryoverIds=[sid for sid in _split_ids(r.get("carryoverCSV")) if sid in picks],
                marks=marks_by_session.get(session_id, {}),
            )
        return list(sessions.values())

    def _parse_ledger(self, class_id: str, rows: List[Dict[str, str]], session_ids: set) -> List[AbsenceLedgerItem]:
        ledger = []
        seen = set()
        for r in rows:
            item_id = _blank_to_none(r.get("id"))
            student_id = _blank_to_none(r.get("studentId"))
            date = _iso_or_none(r.get("date"))
            if not item_id or not student_id or item_id in seen:
                continue
            if not date:
                print(f"[SYNC_IMPORT] ⚠️ Skipping ledger entry {item_id}: unreadable date {r.get('date')!r}")
                continue
            session_id = _blank_to_none(r.get("sessionId"))
            if session_id and session_id not in session_ids:
                print(f"[SYNC_IMPORT] ⚠️ Skipping ledger entry {item_id}: session {session_id} not in sheet")
                continue
            reason = (r.get("reason") or "").strip().lower()
            seen.add(item_id)
            ledger.append(AbsenceLedgerItem(
                id=item_id,
                classId=class_id,
                studentId=student_id,
                date=date,
                sessionId=session_id,
                reason=reason if reason in ("excused", "unexcused") else None,
                notes=_blank_to_none(r.get("notes")),
            ))
        return ledger

    # ==================== ROW BUILDERS ====================

    @staticmethod
    def _student_row(s: StudentEntity) -> List[Any]:
        return [
            s.id, s.classId, _cell(s.firstName), _cell(s.lastName), s.displayName,
            _cell(s.externalId), _cell(s.loginId), _cell(s.sisId), _cell(s.notes), s.absenceCount,
        ]

    @staticmethod
    def _session_row(s: SessionEntity, names: Dict[str, str]) -> List[Any]:
        return [
            s.id,
            s.classId,
            s.date,
            _cell(s.savedAt),
            ",".join(s.picks),
            ",".join(names.get(sid, "") for sid in s.picks),
            ",".join(s.carryoverIds),
            ",".join(names.get(sid, "") for sid in s.carryoverIds),
        ]

    @staticmethod
    def _mark_rows(s: SessionEntity, names: Dict[str, str]) -> List[List[Any]]:
        return [
            [s.id, sid, names.get(sid, ""), mark.status, _cell(mark.reason)]
            for sid, mark in s.marks.items()
        ]

    @staticmethod
    def _ledger_row(item: AbsenceLedgerItem, names: Dict[str, str]) -> List[Any]:
        return [
            item.id, item.classId, item.studentId, names.get(item.studentId, ""),
            item.date, _cell(item.sessionId), _cell(item.reason), _cell(item.notes),
        ]

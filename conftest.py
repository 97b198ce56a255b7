import os
import tempfile
from itertools import count
from typing import Dict, List

import pytest

# main.py builds its store at import time; keep it away from the working tree
os.environ["DB_TYPE"] = "file"
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="checkpoint_test_"))
os.environ["SYNC_POLICY"] = "dual_write"
os.environ.pop("GOOGLE_SERVICE_ACCOUNT_FILE", None)
os.environ.pop("GOOGLE_ACCESS_TOKEN", None)

from db_manager import DatabaseManager
from models import StudentEntity
from sheets_client import (
    SHEET_HEADERS,
    STATUS_EXISTS,
    STATUS_NOT_FOUND,
    STATUS_TRASHED,
    RemoteUnavailableError,
    SpreadsheetNotFoundError,
    SpreadsheetTrashedError,
)


class FakeSheets:
    """In-memory stand-in for SheetsClient with the same public methods"""

    def __init__(self):
        self.spreadsheets: Dict[str, Dict[str, List[list]]] = {}
        self.trashed = set()
        self.unreachable = False
        self.fail_appends = False
        self._ids = count(1)

    def _check(self):
        if self.unreachable:
            raise RemoteUnavailableError("offline")

    def create_and_init_spreadsheet(self, title: str) -> str:
        self._check()
        spreadsheet_id = f"fake-spreadsheet-{next(self._ids):08d}-abcdefgh"
        self.spreadsheets[spreadsheet_id] = {sheet: [list(h)] for sheet, h in SHEET_HEADERS.items()}
        return spreadsheet_id

    def spreadsheet_status(self, spreadsheet_id: str) -> str:
        self._check()
        if spreadsheet_id in self.trashed:
            return STATUS_TRASHED
        return STATUS_EXISTS if spreadsheet_id in self.spreadsheets else STATUS_NOT_FOUND

    def require_spreadsheet(self, spreadsheet_id: str):
        state = self.spreadsheet_status(spreadsheet_id)
        if state == STATUS_TRASHED:
            raise SpreadsheetTrashedError(spreadsheet_id)
        if state == STATUS_NOT_FOUND:
            raise SpreadsheetNotFoundError(spreadsheet_id)

    def ensure_sheets(self, spreadsheet_id: str) -> List[str]:
        self._check()
        book = self.spreadsheets[spreadsheet_id]
        missing = [s for s in SHEET_HEADERS if s not in book]
        for sheet in missing:
            book[sheet] = [list(SHEET_HEADERS[sheet])]
        return missing

    def append_rows(self, spreadsheet_id: str, sheet: str, rows: List[list]):
        self._check()
        if self.fail_appends:
            raise RemoteUnavailableError("append failed")
        self.spreadsheets[spreadsheet_id][sheet].extend(list(r) for r in rows)
        return {}

    def read_rows(self, spreadsheet_id: str, sheet: str) -> List[Dict[str, str]]:
        self._check()
        values = self.spreadsheets[spreadsheet_id][sheet]
        headers = values[0]
        # The Sheets API hands every cell back as text
        return [{h: "" if v is None else str(v) for h, v in zip(headers, row)} for row in values[1:]]

    def clear_data_rows(self, spreadsheet_id: str, sheet: str):
        self._check()
        book = self.spreadsheets[spreadsheet_id]
        book[sheet] = book[sheet][:1]

    def data_rows(self, spreadsheet_id: str, sheet: str) -> List[list]:
        return self.spreadsheets[spreadsheet_id][sheet][1:]


@pytest.fixture
def db(tmp_path):
    return DatabaseManager(base_dir=str(tmp_path / "data"))


@pytest.fixture
def fake_sheets():
    return FakeSheets()


@pytest.fixture
def clock():
    """Deterministic, strictly increasing ISO timestamps"""
    ticks = count(0)

    def _now() -> str:
        n = next(ticks)
        return f"2026-10-{1 + n // 1440:02d}T{(n // 60) % 24:02d}:{n % 60:02d}:00+00:00"

    return _now


def make_students(class_id: str, n: int) -> List[StudentEntity]:
    return [
        StudentEntity(id=f"s{i}", classId=class_id, displayName=f"Student {i}")
        for i in range(1, n + 1)
    ]


@pytest.fixture
def seeded_class(db):
    """A class with five students s1..s5"""
    cls = db.create_class("Biology 101")
    db.upsert_students(cls.id, make_students(cls.id, 5))
    return cls

import io
import os
from typing import Dict, List, Optional

import pandas as pd

from models import AbsenceLedgerItem, SessionEntity, StudentEntity, new_id

ROSTER_COLUMNS = ["studentId", "firstName", "lastName", "displayName", "loginId", "sisId", "className"]
ABSENCE_COLUMNS = ["date", "studentId", "displayName", "status", "reason"]


def parse_roster_csv(payload: str) -> List[Dict[str, str]]:
    """Read a roster CSV; every column comes back as a stripped string, blanks as ''"""
    if not payload or not payload.strip():
        return []
    df = pd.read_csv(io.StringIO(payload), dtype=str, keep_default_na=False, skip_blank_lines=True)
    df.columns = [str(c).strip() for c in df.columns]
    for col in ROSTER_COLUMNS:
        if col not in df.columns:
            df[col] = ""
    df = df[ROSTER_COLUMNS].apply(lambda col: col.str.strip())
    return df.to_dict(orient="records")


def to_student_entities(class_id: str, rows: List[Dict[str, str]]) -> List[StudentEntity]:
    """
    Build students from roster rows.

    Rows with no displayName, firstName or lastName are dropped. A non-blank
    studentId is kept so re-imports update the same student; otherwise a new
    id is generated.
    """
    students = []
    for r in rows:
        first = r.get("firstName") or None
        last = r.get("lastName") or None
        display = r.get("displayName") or ""
        if not (display or first or last):
            continue
        display = display or " ".join(p for p in (first, last) if p).strip() or "Unnamed"
        student_id = (r.get("studentId") or "").strip() or new_id()
        students.append(StudentEntity(
            id=student_id,
            classId=class_id,
            firstName=first,
            lastName=last,
            displayName=display,
            loginId=r.get("loginId") or None,
            sisId=r.get("sisId") or None,
            absenceCount=0,
        ))
    return students


def export_absences_csv(items: List[AbsenceLedgerItem], name_by_id: Optional[Dict[str, str]] = None) -> str:
    name_by_id = name_by_id or {}
    rows = [
        {
            "date": a.date,
            "studentId": a.studentId,
            "displayName": name_by_id.get(a.studentId, ""),
            "status": "ABSENT",
            "reason": a.reason or "",
        }
        for a in sorted(items, key=lambda a: a.date)
    ]
    return pd.DataFrame(rows, columns=ABSENCE_COLUMNS).to_csv(index=False)


def append_absences_csv(path: str, session: SessionEntity, name_by_id: Dict[str, str]) -> int:
    """Append one ABSENT row per absent mark of a saved session; writes the header for a new file"""
    rows = [
        {
            "date": session.date,
            "studentId": sid,
            "displayName": name_by_id.get(sid, ""),
            "status": "ABSENT",
            "reason": mark.reason or "",
        }
        for sid, mark in session.absent_marks().items()
    ]
    if not rows:
        return 0
    new_file = not os.path.exists(path) or os.path.getsize(path) == 0
    pd.DataFrame(rows, columns=ABSENCE_COLUMNS).to_csv(path, mode="a", header=new_file, index=False)
    return len(rows)

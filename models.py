import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, List, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

AbsenceReason = Literal["excused", "unexcused"]
AttendanceStatus = Literal["present", "absent"]

DEFAULT_N = 5
DEFAULT_NEVER_SEEN_WEIGHT = 2.0
DEFAULT_COOLDOWN_WEIGHT = 0.5


def new_id() -> str:
    return str(uuid.uuid4())


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_iso(value: str) -> datetime:
    """Parse a stored ISO date; naive values are treated as UTC."""
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Entity(BaseModel):
    """Immutable snapshot stored as a plain JSON document"""

    model_config = ConfigDict(frozen=True, extra="ignore")

    def to_doc(self) -> Dict:
        return self.model_dump(exclude_none=True)


class ClassEntity(Entity):
    id: str
    name: str
    defaultN: int = DEFAULT_N
    csvPath: Optional[str] = None


class StudentEntity(Entity):
    id: str
    classId: str
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    displayName: str
    externalId: Optional[str] = None
    loginId: Optional[str] = None
    sisId: Optional[str] = None
    notes: Optional[str] = None
    absenceCount: int = 0

    @field_validator("absenceCount")
    @classmethod
    def validate_absence_count(cls, v):
        if v < 0:
            raise ValueError("absenceCount cannot be negative")
        return v


class Mark(Entity):
    status: AttendanceStatus
    reason: Optional[AbsenceReason] = None

    @model_validator(mode="before")
    @classmethod
    def drop_reason_when_present(cls, data):
        # Only absences carry a reason
        if isinstance(data, dict) and data.get("status") == "present":
            data = {k: v for k, v in data.items() if k != "reason"}
        if isinstance(data, dict) and data.get("reason") == "":
            data = {k: v for k, v in data.items() if k != "reason"}
        return data


class SessionEntity(Entity):
    id: str
    classId: str
    date: str
    savedAt: Optional[str] = None
    picks: List[str] = Field(default_factory=list)
    carryoverIds: List[str] = Field(default_factory=list)
    marks: Dict[str, Mark] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_carryovers(self):
        missing = [sid for sid in self.carryoverIds if sid not in self.picks]
        if missing:
            raise ValueError(f"carryoverIds not in picks: {missing}")
        return self

    def with_mark(self, student_id: str, mark: Mark) -> "SessionEntity":
        return self.model_copy(update={"marks": {**self.marks, student_id: mark}})

    def absent_marks(self) -> Dict[str, Mark]:
        return {sid: m for sid, m in self.marks.items() if m.status == "absent"}


class AbsenceLedgerItem(Entity):
    id: str
    classId: str
    studentId: str
    date: str
    sessionId: Optional[str] = None
    reason: Optional[AbsenceReason] = None
    notes: Optional[str] = None


class ClassSettings(Entity):
    classId: str
    defaultN: int = DEFAULT_N
    neverSeenWeight: float = DEFAULT_NEVER_SEEN_WEIGHT
    cooldownWeight: float = DEFAULT_COOLDOWN_WEIGHT
    csvPath: Optional[str] = None
    spreadsheetId: Optional[str] = None

    @field_validator("defaultN")
    @classmethod
    def validate_default_n(cls, v):
        if v < 1:
            raise ValueError("defaultN must be at least 1")
        return v

    @classmethod
    def defaults_for(cls, class_id: str, default_n: int = DEFAULT_N) -> "ClassSettings":
        return cls(classId=class_id, defaultN=default_n)

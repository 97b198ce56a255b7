from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional

from eligibility import draw_picks, plan_selection, sort_sessions_recent_first
from errors import ClassNotFoundError, NoClassSelectedError, NoProposedSessionError, PreconditionError
from models import (
    AbsenceLedgerItem,
    ClassEntity,
    ClassSettings,
    Mark,
    SessionEntity,
    StudentEntity,
    DEFAULT_N,
    new_id,
    utc_now_iso,
)
from roster_csv import append_absences_csv, parse_roster_csv, to_student_entities
from sampling import Seed, make_seed
from sync_manager import SyncManager

__all__ = ["Proposal", "SaveResult", "SessionManager", "derive_ledger_entries"]


@dataclass(frozen=True)
class Proposal:
    """A generated, not yet saved session plus what is needed to replay the draw"""

    session: SessionEntity
    n: int
    seed: Seed
    carryover_overflow: bool = False


@dataclass(frozen=True)
class SaveResult:
    session: SessionEntity
    ledger_entries: List[AbsenceLedgerItem] = field(default_factory=list)
    remote_mirrored: bool = False
    remote_error: Optional[str] = None


def derive_ledger_entries(session: SessionEntity) -> List[AbsenceLedgerItem]:
    """One ledger entry per absent mark, dated with the session's logical date"""
    return [
        AbsenceLedgerItem(
            id=new_id(),
            classId=session.classId,
            studentId=sid,
            date=session.date,
            sessionId=session.id,
            reason=mark.reason,
        )
        for sid, mark in session.absent_marks().items()
    ]


class SessionManager:
    """
    Owns the instructor's working state: the selected class, the pick count
    and at most one proposed session. Durable changes go through the store's
    atomic methods; the proposed session never touches storage until save().
    """

    def __init__(
        self,
        db,
        sync: Optional[SyncManager] = None,
        csv_side_channel: bool = True,
        clock: Callable[[], str] = utc_now_iso,
    ):
        self.db = db
        self.sync = sync
        self.csv_side_channel = csv_side_channel
        self.clock = clock

        self.selected_class_id: Optional[str] = None
        self.current_n: int = DEFAULT_N
        self.proposal: Optional[Proposal] = None

    @property
    def current_session(self) -> Optional[SessionEntity]:
        return self.proposal.session if self.proposal else None

    def _require_class(self) -> str:
        if not self.selected_class_id:
            raise NoClassSelectedError()
        return self.selected_class_id

    def _target_class(self, class_id: Optional[str] = None) -> str:
        """The given class (which must exist) or the selected one; selection is left untouched"""
        if class_id is None:
            return self._require_class()
        if not self.db.get_class(class_id):
            raise ClassNotFoundError(class_id)
        return class_id

    def _require_proposal(self) -> Proposal:
        if self.proposal is None:
            raise NoProposedSessionError()
        return self.proposal

    def _require_sync(self) -> SyncManager:
        if self.sync is None:
            raise PreconditionError("Remote sync is not configured")
        return self.sync

    # ==================== CLASSES ====================

    def load_classes(self) -> List[ClassEntity]:
        return self.db.get_all_classes()

    def create_class(self, name: str) -> ClassEntity:
        name = (name or "").strip()
        if not name:
            raise ValueError("Class name is required")
        return self.db.create_class(name)

    def select_class(self, class_id: str) -> ClassEntity:
        cls = self.db.get_class(class_id)
        if not cls:
            raise ClassNotFoundError(class_id)
        if self.selected_class_id != class_id:
            self.proposal = None
        self.selected_class_id = class_id
        self.current_n = cls.defaultN or DEFAULT_N
        return cls

    def get_settings(self, class_id: Optional[str] = None) -> ClassSettings:
        class_id = self._target_class(class_id)
        cls = self.db.get_class(class_id)
        return self.db.get_settings(class_id) or ClassSettings.defaults_for(class_id, cls.defaultN)

    def update_settings(
        self,
        default_n: Optional[int] = None,
        never_seen_weight: Optional[float] = None,
        cooldown_weight: Optional[float] = None,
        csv_path: Optional[str] = None,
        class_id: Optional[str] = None,
    ) -> ClassSettings:
        current = self.get_settings(class_id)
        updates = {
            "defaultN": default_n,
            "neverSeenWeight": never_seen_weight,
            "cooldownWeight": cooldown_weight,
            "csvPath": csv_path,
        }
        merged = ClassSettings.model_validate({
            **current.model_dump(),
            **{k: v for k, v in updates.items() if v is not None},
        })
        saved = self.db.save_settings(merged)
        if saved.classId == self.selected_class_id:
            self.current_n = saved.defaultN
        return saved

    # ==================== ROSTER & HISTORY ====================

    def get_students(self, class_id: Optional[str] = None) -> List[StudentEntity]:
        if class_id is None and not self.selected_class_id:
            return []
        return self.db.get_students(self._target_class(class_id))

    def import_roster(self, csv_text: str, class_id: Optional[str] = None) -> int:
        """Upsert students from roster CSV; returns how many distinct students were written"""
        class_id = self._target_class(class_id)
        students = to_student_entities(class_id, parse_roster_csv(csv_text))
        count = self.db.upsert_students(class_id, students)
        print(f"[ROSTER] ✅ Imported {count} student(s) into class {class_id}")
        return count

    def get_history(self, class_id: Optional[str] = None) -> List[SessionEntity]:
        """Saved sessions only, most recent first"""
        class_id = self._target_class(class_id)
        return sort_sessions_recent_first(self.db.get_sessions(class_id))

    def name_by_id(self, class_id: Optional[str] = None) -> Dict[str, str]:
        return {s.id: s.displayName for s in self.get_students(class_id)}

    # ==================== PROPOSED SESSION ====================

    def generate(self, n: Optional[int] = None, seed: Optional[Seed] = None) -> Proposal:
        """Draw a fresh proposed session for the selected class, replacing any current one"""
        class_id = self._require_class()
        n = self.current_n if n is None else n
        if n < 0:
            raise ValueError("Pick count cannot be negative")

        plan = plan_selection(
            self.db.get_students(class_id),
            self.db.get_sessions(class_id),
            self.db.get_ledger(class_id),
            self.db.get_settings(class_id),
        )
        seed = make_seed(seed)
        picks, carryover_ids = draw_picks(plan, n, seed=seed)

        session = SessionEntity(
            id=new_id(),
            classId=class_id,
            date=self.clock(),
            picks=picks,
            carryoverIds=carryover_ids,
            marks={},
        )
        self.proposal = Proposal(session=session, n=n, seed=seed, carryover_overflow=plan.exceeds(n))
        print(f"[SESSION] Proposed {len(picks)} pick(s) for class {class_id} ({len(carryover_ids)} carryover)")
        return self.proposal

    def redraw(self, seed: Optional[Seed] = None) -> Proposal:
        """Start over: a new draw with no marks"""
        n = self.proposal.n if self.proposal else None
        return self.generate(n=n, seed=seed)

    def annotate(self, student_id: str, mark: Mark) -> SessionEntity:
        proposal = self._require_proposal()
        if student_id not in proposal.session.picks:
            raise ValueError(f"Student {student_id} is not among this session's picks")
        self.proposal = replace(proposal, session=proposal.session.with_mark(student_id, mark))
        return self.proposal.session

    def discard(self) -> bool:
        had_proposal = self.proposal is not None
        self.proposal = None
        return had_proposal

    # ==================== DURABLE OPERATIONS ====================

    def save(self) -> SaveResult:
        """
        Commit the proposed session.

        Preconditions (class, proposal, remote guard) are checked before
        anything is written. The session, its ledger entries and the counter
        increments are committed as one unit. Remote mirroring and the CSV
        side channel run afterwards and cannot undo the commit.
        """
        class_id = self._require_class()
        proposal = self._require_proposal()
        if self.sync is not None:
            self.sync.before_save(class_id)

        saved = proposal.session.model_copy(update={"savedAt": self.clock()})
        entries = derive_ledger_entries(saved)
        self.db.commit_session(saved, entries)
        self.proposal = None

        mirrored = False
        remote_error = None
        if self.sync is not None and self.sync.mirrors_saves():
            try:
                mirrored = self.sync.mirror_session(class_id, saved, entries)
            except Exception as e:
                remote_error = str(e)
                print(f"[SESSION] ⚠️ Saved locally but remote mirror failed: {e}")

        if self.csv_side_channel:
            self._append_absences_csv(class_id, saved)

        return SaveResult(session=saved, ledger_entries=entries, remote_mirrored=mirrored, remote_error=remote_error)

    def _append_absences_csv(self, class_id: str, session: SessionEntity):
        try:
            settings = self.db.get_settings(class_id)
            path = settings.csvPath if settings else None
            if not path:
                return
            written = append_absences_csv(path, session, self.name_by_id(class_id))
            print(f"[SESSION] Appended {written} absence row(s) to {path}")
        except Exception as e:
            print(f"[SESSION] ⚠️ Absences CSV append failed (ignored): {e}")

    def delete_session(self, session_id: str, class_id: Optional[str] = None) -> List[AbsenceLedgerItem]:
        class_id = self._target_class(class_id)
        return self.db.remove_session(class_id, session_id)

    def clear_history(self, class_id: Optional[str] = None) -> Dict[str, int]:
        class_id = self._target_class(class_id)
        return self.db.clear_history(class_id)

    # ==================== REMOTE MIRROR ====================

    def configure_spreadsheet(self, raw: str, class_id: Optional[str] = None) -> ClassSettings:
        return self._require_sync().configure_spreadsheet(self._target_class(class_id), raw)

    def export_remote(self, class_id: Optional[str] = None):
        return self._require_sync().export_class(self._target_class(class_id))

    def import_remote(self, class_id: Optional[str] = None):
        class_id = self._target_class(class_id)
        result = self._require_sync().import_class(class_id)
        # The local roster and history were replaced underneath any draw for this class
        if class_id == self.selected_class_id:
            self.proposal = None
        return result

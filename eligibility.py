from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from models import (
    AbsenceLedgerItem,
    ClassSettings,
    SessionEntity,
    StudentEntity,
    DEFAULT_COOLDOWN_WEIGHT,
    DEFAULT_NEVER_SEEN_WEIGHT,
    parse_iso,
)
from sampling import Seed, WeightedItem, weighted_sample_without_replacement


@dataclass(frozen=True)
class SelectionPlan:
    """Who is forced in, and how the rest of the class is weighted for the draw"""

    carryover_ids: List[str]
    weighted: List[WeightedItem[str]]
    excluded_ids: Set[str] = field(default_factory=set)

    def exceeds(self, n: int) -> bool:
        return len(self.carryover_ids) > n


def sort_sessions_recent_first(sessions: Iterable[SessionEntity]) -> List[SessionEntity]:
    return sorted(sessions, key=lambda s: parse_iso(s.date), reverse=True)


def last_absent_dates(ledger: Iterable[AbsenceLedgerItem]) -> Dict[str, datetime]:
    latest: Dict[str, datetime] = {}
    for item in ledger:
        when = parse_iso(item.date)
        prev = latest.get(item.studentId)
        if prev is None or when > prev:
            latest[item.studentId] = when
    return latest


def last_present_dates(sessions: Iterable[SessionEntity]) -> Dict[str, datetime]:
    latest: Dict[str, datetime] = {}
    for s in sessions:
        when = parse_iso(s.date)
        for sid, mark in s.marks.items():
            if mark.status != "present":
                continue
            prev = latest.get(sid)
            if prev is None or when > prev:
                latest[sid] = when
    return latest


def compute_carryovers(
    students: Sequence[StudentEntity],
    absent_dates: Dict[str, datetime],
    present_dates: Dict[str, datetime],
) -> List[str]:
    """Students whose latest outcome is an absence not yet followed by a present mark"""
    carryovers = []
    for st in students:
        last_absent = absent_dates.get(st.id)
        if last_absent is None:
            continue
        last_present = present_dates.get(st.id)
        if last_present is None or last_present < last_absent:
            carryovers.append(st.id)
    return carryovers


def cooldown_ids(sessions_recent_first: Sequence[SessionEntity]) -> Set[str]:
    if len(sessions_recent_first) < 2:
        return set()
    s1, s2 = sessions_recent_first[0], sessions_recent_first[1]
    return set(s1.picks) & set(s2.picks)


def plan_selection(
    students: Sequence[StudentEntity],
    sessions: Sequence[SessionEntity],
    ledger: Sequence[AbsenceLedgerItem],
    settings: Optional[ClassSettings] = None,
) -> SelectionPlan:
    """
    Derive carryovers and draw weights from saved history.

    Anyone with at least one ledger entry is left out of the random pool for
    good; they only come back through the carryover path.
    """
    ordered = sort_sessions_recent_first(sessions)
    absent_dates = last_absent_dates(ledger)
    present_dates = last_present_dates(ordered)

    carryover_ids = compute_carryovers(students, absent_dates, present_dates)

    ever_absent = set(absent_dates)
    eligible = [st for st in students if st.id not in ever_absent]

    ever_marked: Set[str] = set()
    for s in ordered:
        ever_marked.update(s.marks.keys())

    damped = cooldown_ids(ordered)

    never_seen_weight = settings.neverSeenWeight if settings else DEFAULT_NEVER_SEEN_WEIGHT
    cooldown_weight = settings.cooldownWeight if settings else DEFAULT_COOLDOWN_WEIGHT

    weighted: List[WeightedItem[str]] = []
    for st in eligible:
        w = 1.0 if st.id in ever_marked else never_seen_weight
        if st.id in damped:
            w *= cooldown_weight
        weighted.append(WeightedItem(st.id, w))

    return SelectionPlan(carryover_ids=carryover_ids, weighted=weighted, excluded_ids=ever_absent)


def draw_picks(plan: SelectionPlan, n: int, seed: Seed = None) -> Tuple[List[str], List[str]]:
    """Return (picks, carryover_ids); picks is carryovers first, then the random draw"""
    random_ids = weighted_sample_without_replacement(plan.weighted, n, seed=seed)
    picks = list(dict.fromkeys([*plan.carryover_ids, *random_ids]))
    return picks, list(plan.carryover_ids)

from __future__ import annotations

import datetime
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

from schedule_model import ScheduleEntry, TimeValue, WeekWindow, parse_time

Key = Tuple[str, datetime.date]


@dataclass(frozen=True)
class SessionContext:
    """The signed-in user and the branch being viewed, passed explicitly to loads and saves."""

    current_user: Dict
    current_branch: Optional[str]

    @property
    def user_id(self) -> Optional[str]:
        return self.current_user.get("id") if self.current_user else None


class ScheduleStore:
    """In-memory planned intervals keyed by (employee id, date).

    Keys cleared by the user are remembered in ``pending_deletes`` until the
    next load so the caller can remove the persisted rows. Keys edited since
    the last load are dirty, and only dirty entries are flushed.
    """

    def __init__(self) -> None:
        self._entries: Dict[Key, ScheduleEntry] = {}
        self._pending_deletes: Set[Key] = set()
        self._temporary_ids: Set[str] = set()
        self._dirty: Set[Key] = set()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def entries(self) -> Iterator[ScheduleEntry]:
        return iter(list(self._entries.values()))

    def get(self, employee_id: str, date: datetime.date) -> Optional[ScheduleEntry]:
        return self._entries.get((employee_id, date))

    def mark_temporary(self, employee_id: str) -> None:
        self._temporary_ids.add(employee_id)

    def set_start(self, employee_id: str, date: datetime.date, value: TimeValue) -> Optional[ScheduleEntry]:
        return self._set_endpoint(employee_id, date, "start_time", parse_time(value))

    def set_end(self, employee_id: str, date: datetime.date, value: TimeValue) -> Optional[ScheduleEntry]:
        return self._set_endpoint(employee_id, date, "end_time", parse_time(value))

    def set_interval(
        self,
        employee_id: str,
        date: datetime.date,
        start: TimeValue,
        end: TimeValue,
    ) -> Optional[ScheduleEntry]:
        start_time = parse_time(start)
        end_time = parse_time(end)
        if start_time is None and end_time is None:
            self.clear(employee_id, date)
            return None
        key = (employee_id, date)
        entry = self._entries.get(key) or ScheduleEntry(employee_id=employee_id, date=date)
        entry.start_time = start_time
        entry.end_time = end_time
        self._entries[key] = entry
        self._pending_deletes.discard(key)
        self._dirty.add(key)
        return entry

    def _set_endpoint(
        self,
        employee_id: str,
        date: datetime.date,
        field_name: str,
        value: Optional[datetime.time],
    ) -> Optional[ScheduleEntry]:
        key = (employee_id, date)
        entry = self._entries.get(key)
        if entry is None:
            if value is None:
                return None
            entry = ScheduleEntry(employee_id=employee_id, date=date)
        setattr(entry, field_name, value)
        if entry.start_time is None and entry.end_time is None:
            self.clear(employee_id, date)
            return None
        self._entries[key] = entry
        self._pending_deletes.discard(key)
        self._dirty.add(key)
        return entry

    def clear(self, employee_id: str, date: datetime.date) -> None:
        key = (employee_id, date)
        self._entries.pop(key, None)
        self._dirty.discard(key)
        if employee_id not in self._temporary_ids:
            self._pending_deletes.add(key)

    def pending_deletes(self) -> List[Key]:
        return sorted(self._pending_deletes, key=lambda key: (key[1], key[0]))

    def acknowledge_delete(self, employee_id: str, date: datetime.date) -> None:
        self._pending_deletes.discard((employee_id, date))

    def load_week(self, week: WeekWindow, entries: Iterable[ScheduleEntry]) -> None:
        """Replace everything inside the week's padded fetch range with ``entries``."""
        first, last = week.fetch_range()
        for key in [key for key in self._entries if first <= key[1] <= last]:
            del self._entries[key]
        self._pending_deletes = {key for key in self._pending_deletes if not first <= key[1] <= last}
        self._dirty = {key for key in self._dirty if not first <= key[1] <= last}
        for entry in entries:
            if first <= entry.date <= last:
                self._entries[entry.key] = entry

    def is_dirty(self, employee_id: str, date: datetime.date) -> bool:
        return (employee_id, date) in self._dirty

    def mark_clean(self, employee_id: str, date: datetime.date) -> None:
        self._dirty.discard((employee_id, date))

    def flush(self) -> List[Tuple[Key, ScheduleEntry]]:
        """Complete entries edited since the last load, excluding temporary staff."""
        ready = [
            (key, entry)
            for key, entry in self._entries.items()
            if key in self._dirty and entry.is_complete and key[0] not in self._temporary_ids
        ]
        return sorted(ready, key=lambda item: (item[0][1], item[0][0]))

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from biosync.data.models import AttendanceRecord, EmployeeDeviceMapping

logger = logging.getLogger(__name__)

RESOLVED = "resolved"
UNMAPPED = "unmapped"
MALFORMED = "malformed"


@dataclass
class Resolution:
    resolved: List[Tuple[AttendanceRecord, int]] = field(default_factory=list)
    unmapped: List[AttendanceRecord] = field(default_factory=list)
    malformed: List[AttendanceRecord] = field(default_factory=list)
    unmapped_ids: Set[str] = field(default_factory=set)
    conflicting_ids: Set[str] = field(default_factory=set)

    @property
    def skipped(self) -> int:
        return len(self.unmapped) + len(self.malformed)


class IdentityMap:
    """Device user id -> employee id lookup for one terminal.

    Built once per sync from a single bulk read of the mapping table. A mapping
    scoped to this device overrides a global one. If two employees claim the
    same id on the same scope the id is marked as conflicting and never
    resolved.
    """

    def __init__(self, mappings: Iterable[EmployeeDeviceMapping], device_id: int):
        self.device_id = device_id
        scoped: Dict[str, Set[int]] = {}
        global_: Dict[str, Set[int]] = {}
        for m in mappings:
            key = str(m.device_user_id).strip()
            if not key:
                continue
            if m.device_id is None:
                global_.setdefault(key, set()).add(m.employee_id)
            elif m.device_id == device_id:
                scoped.setdefault(key, set()).add(m.employee_id)
        self._lookup: Dict[str, int] = {}
        self.conflicts: Set[str] = set()
        for key in set(scoped) | set(global_):
            owners = scoped.get(key) or global_.get(key)
            if len(owners) > 1:
                self.conflicts.add(key)
                logger.warning("Device %s: user id %s is mapped to several employees %s",
                               device_id, key, sorted(owners))
                continue
            self._lookup[key] = next(iter(owners))

    def __len__(self) -> int:
        return len(self._lookup)

    def get(self, device_user_id: str) -> Optional[int]:
        return self._lookup.get(str(device_user_id).strip())

    def classify(self, record: AttendanceRecord) -> Tuple[str, Optional[int]]:
        key = str(record.user_id or "").strip()
        if not key or record.timestamp is None or key in self.conflicts:
            return MALFORMED, None
        employee_id = self.get(key)
        if employee_id is None:
            return UNMAPPED, None
        return RESOLVED, employee_id

    def resolve_all(self, records: Iterable[AttendanceRecord]) -> Resolution:
        out = Resolution()
        for record in records:
            kind, employee_id = self.classify(record)
            if kind == RESOLVED:
                out.resolved.append((record, employee_id))
            elif kind == UNMAPPED:
                out.unmapped.append(record)
                out.unmapped_ids.add(str(record.user_id).strip())
            else:
                out.malformed.append(record)
                key = str(record.user_id or "").strip()
                if key in self.conflicts:
                    out.conflicting_ids.add(key)
        return out

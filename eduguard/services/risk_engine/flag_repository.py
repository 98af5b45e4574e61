"""Risk flag persistence.

At most one active (OPEN or IN_PROGRESS) flag exists per
(student, domain). Every mutation is a single conditional write:
create succeeds only if no active flag exists, update and resolve
succeed only if the active flag still carries the version the caller
read. A failed condition comes back as CONFLICT instead of an error.

PostgreSQL table ``risk_flags``::

    flag_id TEXT PRIMARY KEY, student_id TEXT, school_id TEXT,
    domain TEXT, severity TEXT, reasons JSONB, status TEXT,
    detected_at TIMESTAMP, updated_at TIMESTAMP, resolved_at TIMESTAMP,
    version INTEGER

    CREATE UNIQUE INDEX risk_flags_one_active
        ON risk_flags (student_id, domain)
        WHERE status IN ('open', 'in_progress');
"""
import json
import logging
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from eduguard.shared.database import BaseRepository, ConnectionManager, NotFoundError
from eduguard.shared.models import (
    ACTIVE_FLAG_STATUSES,
    FlagStatus,
    RiskDomain,
    RiskFlag,
    RiskResult,
    Severity,
)

logger = logging.getLogger(__name__)

_COLUMNS = (
    "flag_id, student_id, school_id, domain, severity, reasons, status, "
    "detected_at, updated_at, resolved_at, version"
)
_ACTIVE = "status IN ('open', 'in_progress')"


class WriteOutcome(Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    RESOLVED = "resolved"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class WriteResult:
    """Outcome of a conditional flag write.

    ``flag`` is the flag after the write, or the competing active flag
    on CONFLICT (None if there is none).
    """
    outcome: WriteOutcome
    flag: Optional[RiskFlag] = None
    previous_severity: Optional[Severity] = None


class RiskFlagRepository(BaseRepository[RiskFlag]):
    """Flag storage with per-(student, domain) conditional writes."""

    id_column = "flag_id"

    def __init__(self, connection_manager: Optional[ConnectionManager] = None):
        super().__init__(connection_manager, "risk_flags")
        self._flags: Dict[str, RiskFlag] = {}
        self._active: Dict[Tuple[str, RiskDomain], str] = {}
        self._key_locks: Dict[Tuple[str, RiskDomain], threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _row_to_entity(self, row: tuple) -> RiskFlag:
        reasons = row[5] or []
        if isinstance(reasons, str):
            reasons = json.loads(reasons)
        return RiskFlag(
            flag_id=row[0],
            student_id=row[1],
            school_id=row[2],
            domain=RiskDomain(row[3]),
            severity=Severity(row[4]),
            reasons=tuple(reasons),
            status=FlagStatus(row[6]),
            detected_at=row[7],
            updated_at=row[8],
            resolved_at=row[9],
            version=row[10],
        )

    def _key_lock(self, key: Tuple[str, RiskDomain]) -> threading.Lock:
        with self._registry_lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    def _active_snapshot(self, key: Tuple[str, RiskDomain]) -> Optional[RiskFlag]:
        flag_id = self._active.get(key)
        if flag_id is None:
            return None
        return replace(self._flags[flag_id])

    # Reads

    def find_active(self, student_id: str, domain: RiskDomain) -> Optional[RiskFlag]:
        """Return the active flag for (student, domain), if any."""
        if self.uses_database:
            row = self._execute(
                f"SELECT {_COLUMNS} FROM {self.table_name} "
                f"WHERE student_id = %s AND domain = %s AND {_ACTIVE}",
                (student_id, domain.value),
                fetch="one",
            )
            return self._row_to_entity(row) if row else None

        key = (student_id, domain)
        with self._key_lock(key):
            return self._active_snapshot(key)

    def list_for_student(self, student_id: str, include_resolved: bool = False) -> List[RiskFlag]:
        """All flags for a student, oldest first."""
        if self.uses_database:
            clause = "student_id = %s" if include_resolved else f"student_id = %s AND {_ACTIVE}"
            rows = self._execute(
                f"SELECT {_COLUMNS} FROM {self.table_name} WHERE {clause} ORDER BY detected_at",
                (student_id,),
                fetch="all",
            )
            return [self._row_to_entity(row) for row in rows or []]

        with self._registry_lock:
            flags = [
                replace(f) for f in self._flags.values()
                if f.student_id == student_id and (include_resolved or f.is_active)
            ]
        return sorted(flags, key=lambda f: f.detected_at)

    def list_active_for_student(self, student_id: str) -> List[RiskFlag]:
        return self.list_for_student(student_id, include_resolved=False)

    # Conditional writes

    def write_active(
        self,
        student_id: str,
        domain: RiskDomain,
        expected_version: Optional[int],
        result: Optional[RiskResult],
        school_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> WriteResult:
        """Apply one evaluation result to the active flag of a domain.

        ``expected_version`` is the version of the active flag the caller
        read, or None if it saw no active flag. A None ``result`` resolves.

        Returns:
            WriteResult; CONFLICT when the stored state no longer matches
            ``expected_version``
        """
        now = now or datetime.utcnow()

        if result is None:
            if expected_version is None:
                return WriteResult(WriteOutcome.UNCHANGED)
            return self.resolve_active(student_id, domain, expected_version, now)

        if result.domain is not domain:
            raise ValueError(f"Result for {result.domain.value} written to {domain.value}")

        if expected_version is None:
            return self.create_active(student_id, school_id, result, now)
        return self.update_active(student_id, result, expected_version, now)

    def create_active(
        self,
        student_id: str,
        school_id: Optional[str],
        result: RiskResult,
        now: datetime,
    ) -> WriteResult:
        """Open a flag, provided no active flag exists for the domain."""
        flag = RiskFlag(
            flag_id=str(uuid.uuid4()),
            student_id=student_id,
            school_id=school_id,
            domain=result.domain,
            severity=result.severity,
            reasons=tuple(result.reasons),
            status=FlagStatus.OPEN,
            detected_at=now,
            updated_at=now,
        )

        if self.uses_database:
            row = self._execute(
                f"""
                INSERT INTO {self.table_name} ({_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (student_id, domain) WHERE {_ACTIVE} DO NOTHING
                RETURNING {_COLUMNS}
                """,
                (
                    flag.flag_id, flag.student_id, flag.school_id, flag.domain.value,
                    flag.severity.value, json.dumps(list(flag.reasons)), flag.status.value,
                    flag.detected_at, flag.updated_at, None, flag.version,
                ),
                fetch="one",
            )
            if row is None:
                return WriteResult(WriteOutcome.CONFLICT, self.find_active(student_id, result.domain))
            return WriteResult(WriteOutcome.CREATED, self._row_to_entity(row))

        key = (student_id, result.domain)
        with self._key_lock(key):
            if key in self._active:
                return WriteResult(WriteOutcome.CONFLICT, self._active_snapshot(key))
            with self._registry_lock:
                self._flags[flag.flag_id] = flag
            self._active[key] = flag.flag_id
            return WriteResult(WriteOutcome.CREATED, replace(flag))

    def update_active(
        self,
        student_id: str,
        result: RiskResult,
        expected_version: int,
        now: datetime,
    ) -> WriteResult:
        """Rewrite severity and reasons of the active flag at ``expected_version``."""
        if self.uses_database:
            row = self._execute(
                f"""
                WITH previous AS (
                    SELECT flag_id, severity FROM {self.table_name}
                    WHERE student_id = %s AND domain = %s AND {_ACTIVE} AND version = %s
                )
                UPDATE {self.table_name} AS f
                SET severity = %s, reasons = %s, updated_at = %s, version = f.version + 1
                FROM previous
                WHERE f.flag_id = previous.flag_id AND f.version = %s
                RETURNING {', '.join('f.' + c for c in _COLUMNS.split(', '))}, previous.severity
                """,
                (
                    student_id, result.domain.value, expected_version,
                    result.severity.value, json.dumps(list(result.reasons)), now,
                    expected_version,
                ),
                fetch="one",
            )
            if row is None:
                return WriteResult(WriteOutcome.CONFLICT, self.find_active(student_id, result.domain))
            return WriteResult(WriteOutcome.UPDATED, self._row_to_entity(row[:11]), Severity(row[11]))

        key = (student_id, result.domain)
        with self._key_lock(key):
            current = self._active_snapshot(key)
            if current is None or current.version != expected_version:
                return WriteResult(WriteOutcome.CONFLICT, current)
            updated = replace(
                current,
                severity=result.severity,
                reasons=tuple(result.reasons),
                updated_at=now,
                version=current.version + 1,
            )
            with self._registry_lock:
                self._flags[updated.flag_id] = updated
            return WriteResult(WriteOutcome.UPDATED, replace(updated), current.severity)

    def resolve_active(
        self,
        student_id: str,
        domain: RiskDomain,
        expected_version: int,
        now: datetime,
    ) -> WriteResult:
        """Resolve the active flag at ``expected_version``."""
        if self.uses_database:
            row = self._execute(
                f"""
                UPDATE {self.table_name}
                SET status = %s, resolved_at = %s, updated_at = %s, version = version + 1
                WHERE student_id = %s AND domain = %s AND {_ACTIVE} AND version = %s
                RETURNING {_COLUMNS}
                """,
                (
                    FlagStatus.RESOLVED.value, now, now,
                    student_id, domain.value, expected_version,
                ),
                fetch="one",
            )
            if row is None:
                return WriteResult(WriteOutcome.CONFLICT, self.find_active(student_id, domain))
            return WriteResult(WriteOutcome.RESOLVED, self._row_to_entity(row))

        key = (student_id, domain)
        with self._key_lock(key):
            current = self._active_snapshot(key)
            if current is None or current.version != expected_version:
                return WriteResult(WriteOutcome.CONFLICT, current)
            resolved = replace(
                current,
                status=FlagStatus.RESOLVED,
                resolved_at=now,
                updated_at=now,
                version=current.version + 1,
            )
            with self._registry_lock:
                self._flags[resolved.flag_id] = resolved
            del self._active[key]
            return WriteResult(WriteOutcome.RESOLVED, replace(resolved), current.severity)

    def mark_in_progress(self, flag_id: str, now: Optional[datetime] = None) -> RiskFlag:
        """Move an OPEN flag to IN_PROGRESS when staff pick it up.

        Raises:
            NotFoundError: If no active flag has this id
        """
        now = now or datetime.utcnow()

        if self.uses_database:
            row = self._execute(
                f"""
                UPDATE {self.table_name}
                SET status = %s, updated_at = %s, version = version + 1
                WHERE flag_id = %s AND {_ACTIVE}
                RETURNING {_COLUMNS}
                """,
                (FlagStatus.IN_PROGRESS.value, now, flag_id),
                fetch="one",
            )
            if row is None:
                raise NotFoundError(f"No active risk flag {flag_id}")
            flag = self._row_to_entity(row)
        else:
            with self._registry_lock:
                existing = self._flags.get(flag_id)
            if existing is None or existing.status not in ACTIVE_FLAG_STATUSES:
                raise NotFoundError(f"No active risk flag {flag_id}")

            key = (existing.student_id, existing.domain)
            with self._key_lock(key):
                with self._registry_lock:
                    current = self._flags[flag_id]
                    if current.status not in ACTIVE_FLAG_STATUSES:
                        raise NotFoundError(f"No active risk flag {flag_id}")
                    flag = replace(
                        current,
                        status=FlagStatus.IN_PROGRESS,
                        updated_at=now,
                        version=current.version + 1,
                    )
                    self._flags[flag_id] = flag
            flag = replace(flag)

        logger.info(
            "RISK_FLAG_IN_PROGRESS",
            extra={"flag_id": flag_id, "domain": flag.domain.value}
        )
        return flag

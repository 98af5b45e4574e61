"""Flag reconciliation.

Brings persisted flags in line with one detection run's results:

- result, no active flag      -> create
- result differs from flag    -> update severity and reasons
- result matches flag         -> nothing
- no result, active flag      -> resolve
- no result, no flag          -> nothing

Every write is conditional on the state that was read. If another
detector won the race, the read-modify-write is retried once; after a
second loss the winner's state is accepted as is.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from eduguard.shared.models import RiskDomain, RiskFlag, RiskResult, Severity
from .flag_repository import RiskFlagRepository, WriteOutcome, WriteResult

logger = logging.getLogger(__name__)

_MAX_ATTEMPTS = 2


@dataclass(frozen=True)
class FlagChange:
    """What reconciliation did to one domain."""
    domain: RiskDomain
    outcome: WriteOutcome
    flag: Optional[RiskFlag] = None
    previous_severity: Optional[Severity] = None

    @property
    def escalated(self) -> bool:
        """New flag, or an existing flag whose severity went up."""
        if self.flag is None:
            return False
        if self.outcome is WriteOutcome.CREATED:
            return True
        return (
            self.outcome is WriteOutcome.UPDATED
            and self.previous_severity is not None
            and self.flag.severity > self.previous_severity
        )


@dataclass
class ReconciliationReport:
    student_id: str
    changes: List[FlagChange] = field(default_factory=list)

    def count(self, outcome: WriteOutcome) -> int:
        return sum(1 for c in self.changes if c.outcome is outcome)

    @property
    def escalations(self) -> List[FlagChange]:
        return [c for c in self.changes if c.escalated]


class RiskFlagReconciler:
    """Applies detection results to the flag repository."""

    def __init__(
        self,
        repository: RiskFlagRepository,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.repository = repository
        self._clock = clock

    def reconcile(
        self,
        student_id: str,
        school_id: Optional[str],
        results: Iterable[RiskResult],
        domains: Iterable[RiskDomain] = tuple(RiskDomain),
    ) -> ReconciliationReport:
        """Reconcile the given domains against ``results``.

        Domains not listed are left untouched, so disabling a domain
        does not resolve its existing flags.
        """
        by_domain = {r.domain: r for r in results}
        report = ReconciliationReport(student_id=student_id)

        for domain in domains:
            change = self._reconcile_domain(student_id, school_id, domain, by_domain.get(domain))
            report.changes.append(change)

        return report

    def _reconcile_domain(
        self,
        student_id: str,
        school_id: Optional[str],
        domain: RiskDomain,
        result: Optional[RiskResult],
    ) -> FlagChange:
        for attempt in range(1, _MAX_ATTEMPTS + 1):
            current = self.repository.find_active(student_id, domain)
            written = self._write(student_id, school_id, domain, result, current)

            if written.outcome is not WriteOutcome.CONFLICT:
                self._log_change(student_id, domain, written)
                return FlagChange(domain, written.outcome, written.flag, written.previous_severity)

            logger.warning(
                "RISK_FLAG_WRITE_CONFLICT",
                extra={"student_id": student_id, "domain": domain.value, "attempt": attempt}
            )

        winner = self.repository.find_active(student_id, domain)
        logger.info(
            "RISK_FLAG_CONCURRENT_WRITE_ACCEPTED",
            extra={"student_id": student_id, "domain": domain.value}
        )
        return FlagChange(domain, WriteOutcome.CONFLICT, winner)

    def _write(
        self,
        student_id: str,
        school_id: Optional[str],
        domain: RiskDomain,
        result: Optional[RiskResult],
        current: Optional[RiskFlag],
    ) -> WriteResult:
        if current is not None and result is not None and current.matches(result):
            return WriteResult(WriteOutcome.UNCHANGED, current)

        return self.repository.write_active(
            student_id,
            domain,
            expected_version=current.version if current else None,
            result=result,
            school_id=school_id,
            now=self._clock(),
        )

    def _log_change(self, student_id: str, domain: RiskDomain, written: WriteResult) -> None:
        if written.outcome is WriteOutcome.UNCHANGED:
            return

        extra = {
            "student_id": student_id,
            "domain": domain.value,
            "outcome": written.outcome.value,
        }
        if written.flag is not None:
            extra["flag_id"] = written.flag.flag_id
            extra["severity"] = written.flag.severity.value
        if written.previous_severity is not None:
            extra["previous_severity"] = written.previous_severity.value

        if written.outcome is WriteOutcome.RESOLVED:
            logger.info("RISK_FLAG_RESOLVED", extra=extra)
        elif written.flag is not None and written.flag.severity is Severity.CRITICAL:
            logger.critical("RISK_FLAG_CRITICAL", extra=extra)
        else:
            logger.info("RISK_FLAG_WRITTEN", extra=extra)

"""Risk severity, domain and flag domain models.

Severity is a totally ordered enum so thresholds, escalation checks and
max-of-domains logic compare levels directly instead of matching strings.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Tuple


class Severity(Enum):
    """Ordered risk level: LOW < MEDIUM < HIGH < CRITICAL."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def __lt__(self, other):
        if other.__class__ is not self.__class__:
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if other.__class__ is not self.__class__:
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if other.__class__ is not self.__class__:
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if other.__class__ is not self.__class__:
            return NotImplemented
        return self.rank >= other.rank


_SEVERITY_RANK = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class RiskDomain(Enum):
    """Independent risk categories. Each is evaluated on its own."""
    ATTENDANCE = "attendance"
    PERFORMANCE = "performance"
    SOCIOECONOMIC = "socioeconomic"
    DISTANCE = "distance"


class FlagStatus(Enum):
    """Lifecycle of a risk flag."""
    OPEN = "open"
    IN_PROGRESS = "in_progress"   # Picked up by staff for intervention
    RESOLVED = "resolved"


ACTIVE_FLAG_STATUSES = frozenset({FlagStatus.OPEN, FlagStatus.IN_PROGRESS})


@dataclass(frozen=True)
class RiskResult:
    """Output of a single domain evaluator.

    Immutable - evaluators are pure and their results are shared
    between the reconciler and the alert notifier.
    """
    domain: RiskDomain
    severity: Severity
    reasons: Tuple[str, ...] = ()
    metrics: Dict[str, float] = field(default_factory=dict)


@dataclass
class RiskFlag:
    """Persistent flag state for one (student, domain).

    Mutable record; every write bumps ``version`` so concurrent
    writers can detect that they raced.
    """
    flag_id: str
    student_id: str
    school_id: Optional[str]
    domain: RiskDomain
    severity: Severity
    reasons: Tuple[str, ...]
    status: FlagStatus
    detected_at: datetime
    updated_at: datetime
    resolved_at: Optional[datetime] = None
    version: int = 1

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_FLAG_STATUSES

    def matches(self, result: RiskResult) -> bool:
        """Check whether the flag already reflects an evaluation result."""
        return (
            self.severity == result.severity
            and tuple(self.reasons) == tuple(result.reasons)
        )

"""Per-school risk rule configuration and engine settings.

Defaults follow the thresholds the schools agreed on for the first
rollout: 8/10/12 absences in a 20 day window, 49/39/30 percent average
score, one or two socioeconomic factors, 3 km / 6 km travel distance.
"""
import os
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from .exceptions import InvalidConfigError


class WindowMode(Enum):
    """How the attendance window is measured.

    CALENDAR_DAYS: the last N calendar days; unmarked days count as present.
    RECORDED_DAYS: the last N days on which attendance was actually taken.
    """
    CALENDAR_DAYS = "calendar_days"
    RECORDED_DAYS = "recorded_days"


@dataclass(frozen=True)
class AttendanceRules:
    enabled: bool = True
    medium_absences: int = 8
    high_absences: int = 10
    critical_absences: int = 12
    window_days: int = 20
    min_records: int = 5
    window_mode: WindowMode = WindowMode.CALENDAR_DAYS


@dataclass(frozen=True)
class PerformanceRules:
    """Average-score thresholds, inclusive (average <= pct)."""
    enabled: bool = True
    medium_pct: float = 49.0
    high_pct: float = 39.0
    critical_pct: float = 30.0


@dataclass(frozen=True)
class SocioeconomicRules:
    enabled: bool = True
    medium_factor_count: int = 1
    high_factor_count: int = 2
    extreme_poverty_level: int = 1    # Ubudehe category at or below this is a factor
    sibling_cap: int = 5


@dataclass(frozen=True)
class DistanceRules:
    """Travel distance bands, exclusive (distance > km)."""
    enabled: bool = True
    threshold_km: float = 3.0
    high_threshold_km: float = 6.0


@dataclass(frozen=True)
class RiskRuleConfig:
    """Immutable rule set for one school.

    Fetched once per detection run and passed explicitly to every
    evaluator; an admin update produces a new value that the next run
    picks up.
    """
    school_id: str
    attendance: AttendanceRules = field(default_factory=AttendanceRules)
    performance: PerformanceRules = field(default_factory=PerformanceRules)
    socioeconomic: SocioeconomicRules = field(default_factory=SocioeconomicRules)
    distance: DistanceRules = field(default_factory=DistanceRules)
    default_language: str = "RW"
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        data = asdict(self)
        data["attendance"]["window_mode"] = self.attendance.window_mode.value
        data["updated_at"] = self.updated_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RiskRuleConfig":
        attendance = dict(data.get("attendance", {}))
        if "window_mode" in attendance:
            attendance["window_mode"] = WindowMode(attendance["window_mode"])
        updated_at = data.get("updated_at")
        return cls(
            school_id=data["school_id"],
            attendance=AttendanceRules(**attendance),
            performance=PerformanceRules(**data.get("performance", {})),
            socioeconomic=SocioeconomicRules(**data.get("socioeconomic", {})),
            distance=DistanceRules(**data.get("distance", {})),
            default_language=data.get("default_language", "RW"),
            updated_at=datetime.fromisoformat(updated_at) if updated_at else datetime.utcnow(),
        )


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _count(value: Any) -> Optional[int]:
    if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
        return value
    return None


def _positive(value: Any) -> Optional[int]:
    if isinstance(value, int) and not isinstance(value, bool) and value >= 1:
        return value
    return None


def _percentage(value: Any) -> Optional[float]:
    if _is_number(value) and 0 <= value <= 100:
        return float(value)
    return None


def _kilometres(value: Any) -> Optional[float]:
    if _is_number(value) and value >= 0:
        return float(value)
    return None


def _flag(value: Any) -> Optional[bool]:
    return value if isinstance(value, bool) else None


def _window_mode(value: Any) -> Optional[WindowMode]:
    if isinstance(value, WindowMode):
        return value
    try:
        return WindowMode(value)
    except ValueError:
        return None


# Each validator returns the coerced value, or None when the value is invalid
_RULE_FIELDS: Dict[str, Dict[str, Callable[[Any], Any]]] = {
    "attendance": {
        "enabled": _flag,
        "medium_absences": _count,
        "high_absences": _count,
        "critical_absences": _count,
        "window_days": _positive,
        "min_records": _positive,
        "window_mode": _window_mode,
    },
    "performance": {
        "enabled": _flag,
        "medium_pct": _percentage,
        "high_pct": _percentage,
        "critical_pct": _percentage,
    },
    "socioeconomic": {
        "enabled": _flag,
        "medium_factor_count": _count,
        "high_factor_count": _count,
        "extreme_poverty_level": _count,
        "sibling_cap": _count,
    },
    "distance": {
        "enabled": _flag,
        "threshold_km": _kilometres,
        "high_threshold_km": _kilometres,
    },
}


def apply_update(
    config: RiskRuleConfig,
    partial: Mapping[str, Any],
    now: Optional[datetime] = None,
) -> RiskRuleConfig:
    """Return a copy of ``config`` with ``partial`` applied.

    Every field is validated on its own and all failures are reported
    together; nothing is applied unless every field is valid.

    Args:
        config: Current configuration
        partial: Nested mapping, e.g. {"attendance": {"window_days": 30}}
        now: Timestamp for updated_at

    Raises:
        InvalidConfigError: Listing every offending field
    """
    invalid: List[str] = []
    blocks: Dict[str, Dict[str, Any]] = {}
    changes: Dict[str, Any] = {}

    for block_name, values in partial.items():
        if block_name == "default_language":
            if isinstance(values, str) and values.strip():
                changes["default_language"] = values.strip().upper()
            else:
                invalid.append("default_language")
            continue

        validators = _RULE_FIELDS.get(block_name)
        if validators is None or not isinstance(values, Mapping):
            invalid.append(block_name)
            continue

        for field_name, value in values.items():
            path = f"{block_name}.{field_name}"
            validator = validators.get(field_name)
            coerced = validator(value) if validator else None
            if coerced is None:
                invalid.append(path)
            else:
                blocks.setdefault(block_name, {})[field_name] = coerced

    if invalid:
        raise InvalidConfigError(invalid)

    for block_name, values in blocks.items():
        changes[block_name] = replace(getattr(config, block_name), **values)

    return replace(config, updated_at=now or datetime.utcnow(), **changes)


@dataclass(frozen=True)
class DetectionConfig:
    """Process-level settings for detection sweeps."""
    max_workers: int = 4
    queue_size: int = 16

    @classmethod
    def from_env(cls) -> "DetectionConfig":
        """Environment variables:
            DETECTION_MAX_WORKERS: Sweep worker threads (default 4)
            DETECTION_QUEUE_SIZE: Students queued beyond the workers (default 16)
        """
        return cls(
            max_workers=int(os.getenv("DETECTION_MAX_WORKERS", "4")),
            queue_size=int(os.getenv("DETECTION_QUEUE_SIZE", "16")),
        )

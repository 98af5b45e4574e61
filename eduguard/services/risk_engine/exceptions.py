"""Risk engine exceptions.

Insufficient data is deliberately absent here: evaluators return None
when there is not enough signal, it is never an error.
"""
from typing import Iterable


class RiskEngineError(Exception):
    """Base exception for the risk engine."""
    pass


class InvalidConfigError(RiskEngineError):
    """Rejected rule configuration update.

    ``fields`` lists every offending field as a dotted path
    (e.g. ``attendance.window_days``).
    """

    def __init__(self, fields: Iterable[str]):
        self.fields = sorted(fields)
        super().__init__(f"Invalid risk rule configuration: {', '.join(self.fields)}")


class StudentNotFoundError(RiskEngineError):
    """Detection requested for a student the record source does not know."""

    def __init__(self, student_id: str):
        self.student_id = student_id
        super().__init__(f"Student {student_id} not found")

"""
Error codes and exceptions for the planning API.

The engine modules never raise on well-typed input; they return tagged
results. The service layer turns rejected operations into ``PlanningError``
and the views render them with the matching HTTP status.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes surfaced in API responses."""
    SUCCESS = "SUCCESS"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    DEPENDENCY_GRAPH_INVALID = "DEPENDENCY_GRAPH_INVALID"
    INVALID_STATE = "INVALID_STATE"
    NOT_FOUND = "NOT_FOUND"
    NO_MEMBERS = "NO_MEMBERS"


class PlanningError(Exception):
    """A planning operation was rejected before anything was persisted."""

    def __init__(
        self,
        status: int,
        code: ErrorCode,
        message: str,
        details: Optional[Any] = None
    ):
        super().__init__(message)
        self.status = status
        self.code = code
        self.message = message
        self.details = details

    def to_dict(self) -> Dict:
        result = {
            'success': False,
            'error_code': self.code.value,
            'message': self.message
        }
        if self.details is not None:
            result['details'] = self.details
        return result

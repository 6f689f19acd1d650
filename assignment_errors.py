# assignment_errors.py
# Error taxonomy for the assignment attempt subsystem. Everything here is a
# Werkzeug HTTP exception so Flask maps it to a status code on its own; the
# assignments blueprint renders them as {"ok": false, "error": ...}.
from typing import Any, Dict, Optional

from werkzeug.exceptions import (
    BadRequest, Conflict, Forbidden, InternalServerError, NotFound
)


class AssignmentError(Exception):
    """Mixin: extra JSON fields carried to the error response."""

    def payload(self) -> Dict[str, Any]:
        return {}


class AssignmentNotFound(AssignmentError, NotFound):
    description = "Assignment not found or inactive"


class AttemptNotFound(AssignmentError, NotFound):
    description = "Attempt not found"


class SubmissionNotFound(AssignmentError, NotFound):
    description = "Submission not found"


class AttemptNotAllowed(AssignmentError, Forbidden):
    description = "Attempt not allowed"

    def __init__(self, reason: Optional[str] = None,
                 attempts_used: Optional[int] = None,
                 max_attempts: Optional[int] = None):
        super().__init__(description=reason or self.description)
        self.attempts_used = attempts_used
        self.max_attempts = max_attempts

    def payload(self) -> Dict[str, Any]:
        if self.max_attempts is None:
            return {}
        return {"attempts_used": self.attempts_used, "max_attempts": self.max_attempts}


class ReviewNotAllowed(AssignmentError, Forbidden):
    description = "Review not allowed for this assignment"


class ValidationFailure(AssignmentError, BadRequest):
    description = "Validation failed"

    def __init__(self, message: Optional[str] = None, field: Optional[str] = None):
        super().__init__(description=message or self.description)
        self.field = field

    def payload(self) -> Dict[str, Any]:
        return {"field": self.field} if self.field else {}


class AttemptConflict(AssignmentError, Conflict):
    """Two writers raced on the same (assignment, student) attempt slot."""
    description = "Attempt is being started concurrently, please retry"


class AttemptClosed(AssignmentError, Conflict):
    description = "Attempt already finalized"

    def __init__(self, status: Optional[str] = None, submission_id: Optional[int] = None):
        super().__init__()
        self.status = status
        self.submission_id = submission_id

    def payload(self) -> Dict[str, Any]:
        return {"status": self.status, "submission_id": self.submission_id}


class AnswerKeyError(AssignmentError, InternalServerError):
    """A stored question breaks the option/answer-key invariants."""
    description = "Assignment answer key is invalid"

    def __init__(self, question_id: Any = None, detail: str = ""):
        super().__init__()
        self.question_id = question_id
        self.detail = detail

    def __str__(self) -> str:
        return f"question {self.question_id}: {self.detail}"

    def payload(self) -> Dict[str, Any]:
        return {"question_id": self.question_id}

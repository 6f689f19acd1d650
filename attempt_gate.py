# attempt_gate.py
# Decides whether a student may start (or resume) an attempt. "No" is an
# ordinary answer here, returned as data; the start endpoint turns it into 403.
# Evaluated fresh on every request: two tabs may be racing.
from typing import Any, Dict

REASON_NOT_FOUND = "Assignment not found"
REASON_MAX_ATTEMPTS = "Maximum attempts reached"


class AttemptGate:

    def __init__(self, store):
        self.store = store

    def can_attempt(self, student_id: int, assignment_id: int) -> Dict[str, Any]:
        assignment = self.store.get_assignment(assignment_id)
        if not assignment:
            return {"canAttempt": False, "reason": REASON_NOT_FOUND}

        # Count submissions, not attempt status: a submission whose attempt row
        # never made it to a terminal state still uses up an attempt.
        used = self.store.count_submitted(student_id, assignment_id)
        max_attempts = int(assignment.get("max_attempts") or 0)
        if used >= max_attempts:
            return {
                "canAttempt": False,
                "reason": REASON_MAX_ATTEMPTS,
                "attemptsUsed": used,
                "maxAttempts": max_attempts,
            }

        active = self.store.get_active_attempt(student_id, assignment_id)
        if active:
            return {
                "canAttempt": True,
                "hasActiveAttempt": True,
                "attemptId": active["attempt_id"],
                "attemptNumber": active["attempt_number"],
                "attemptsUsed": used,
                "maxAttempts": max_attempts,
            }

        return {
            "canAttempt": True,
            "hasActiveAttempt": False,
            "nextAttempt": used + 1,
            "attemptsUsed": used,
            "maxAttempts": max_attempts,
        }

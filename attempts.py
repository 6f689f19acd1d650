# attempts.py
# -----------------------------------------------------------------------------
# Attempt lifecycle for timed MCQ assignments.
#   in_progress -> completed | timed_out   (both terminal, nothing goes back)
# - New attempt numbers come from the store (max+1 under a unique index);
#   a collision is absorbed by re-running the gate, which then resumes
# - Question order is drawn once at start and stored on the attempt
# - Client-reported time is advisory; with the server timer on, the effective
#   remaining time is min(client value, limit - elapsed)
# - Every way an attempt ends (submit, auto-save time-up, resume of an
#   expired attempt, sweep) goes through finalize(): score, then one
#   transaction for attempt status + submission + results summary
# -----------------------------------------------------------------------------
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from assignment_errors import (
    AssignmentNotFound, AttemptClosed, AttemptConflict, AttemptNotAllowed,
    AttemptNotFound
)
from attempt_gate import REASON_NOT_FOUND
from question_bank import Question
from results import is_passing

SERVER_TIMER       = os.getenv("ASSIGNMENT_SERVER_TIMER", "1").lower() in ("1", "true", "yes")
TIME_GRACE_SECONDS = int(os.getenv("ASSIGNMENT_TIME_GRACE_SECONDS") or 30)
START_RETRIES      = int(os.getenv("ASSIGNMENT_START_RETRIES") or 3)
SWEEP_LIMIT        = int(os.getenv("ASSIGNMENT_SWEEP_LIMIT") or 500)

IN_PROGRESS = "in_progress"
COMPLETED   = "completed"
TIMED_OUT   = "timed_out"
TERMINAL_STATUSES = (COMPLETED, TIMED_OUT)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def time_limit_seconds(assignment: Mapping[str, Any]) -> int:
    return int(assignment.get("time_limit_minutes") or 0) * 60


def merge_answers(saved: Optional[Mapping[str, Any]], fresh: Optional[Mapping[Any, Any]]) -> Dict[str, Any]:
    out = {str(k): v for k, v in (saved or {}).items()}
    for k, v in (fresh or {}).items():
        out[str(k)] = v
    return out


class AttemptManager:

    def __init__(self, store, bank, scorer, results, gate,
                 clock: Optional[Callable[[], datetime]] = None,
                 on_passed: Optional[Callable[[int, int], Any]] = None,
                 server_timer: bool = SERVER_TIMER,
                 grace_seconds: int = TIME_GRACE_SECONDS,
                 start_retries: int = START_RETRIES):
        self.store = store
        self.bank = bank
        self.scorer = scorer
        self.results = results
        self.gate = gate
        self.clock = clock or _utcnow
        self.on_passed = on_passed
        self.server_timer = server_timer
        self.grace_seconds = int(grace_seconds)
        self.start_retries = max(1, int(start_retries))

    # ------------------------------- time ------------------------------------
    def elapsed_seconds(self, attempt: Mapping[str, Any], now: Optional[datetime] = None) -> int:
        start = _aware(attempt.get("start_time"))
        if start is None:
            return 0
        return max(0, int(((now or self.clock()) - start).total_seconds()))

    def remaining_seconds(self, attempt: Mapping[str, Any], assignment: Mapping[str, Any],
                          now: Optional[datetime] = None) -> int:
        limit = time_limit_seconds(assignment)
        reported = attempt.get("time_remaining_seconds")
        remaining = limit if reported is None else int(reported)
        if self.server_timer:
            remaining = min(remaining, limit - self.elapsed_seconds(attempt, now))
        return max(0, min(remaining, limit))

    def server_expired(self, attempt: Mapping[str, Any], assignment: Mapping[str, Any],
                       now: Optional[datetime] = None) -> bool:
        limit = time_limit_seconds(assignment)
        return self.elapsed_seconds(attempt, now) > limit + self.grace_seconds

    # ------------------------------ loading ----------------------------------
    def load(self, student_id: int, attempt_id: int):
        """(attempt, assignment) owned by student_id, or AttemptNotFound."""
        attempt = self.store.get_attempt(attempt_id, student_id)
        if not attempt:
            raise AttemptNotFound()
        assignment = self.store.get_assignment(attempt["assignment_id"], active_only=False)
        if not assignment:
            raise AssignmentNotFound()
        return attempt, assignment

    def _require_open(self, attempt: Mapping[str, Any]):
        if attempt.get("status") != IN_PROGRESS:
            existing = self.store.get_submission_for_attempt(
                attempt["student_id"], attempt["assignment_id"], attempt["attempt_number"])
            raise AttemptClosed(attempt.get("status"), (existing or {}).get("submission_id"))

    def questions_for(self, attempt: Mapping[str, Any]) -> List[Question]:
        return self.bank.get_questions(attempt["assignment_id"], order=attempt.get("question_order"))

    # ------------------------------ start ------------------------------------
    def start_or_resume(self, student_id: int, assignment: Mapping[str, Any]) -> Dict[str, Any]:
        """Gate, then resume the live attempt or open a new one."""
        assignment_id = assignment["assignment_id"]
        for _ in range(self.start_retries):
            verdict = self.gate.can_attempt(student_id, assignment_id)
            if not verdict.get("canAttempt"):
                if verdict.get("reason") == REASON_NOT_FOUND:
                    raise AssignmentNotFound()
                raise AttemptNotAllowed(verdict.get("reason"),
                                        verdict.get("attemptsUsed"), verdict.get("maxAttempts"))

            if verdict.get("hasActiveAttempt"):
                active = self.store.get_attempt(verdict["attemptId"], student_id)
                if active is None or active.get("status") != IN_PROGRESS:
                    continue
                if self._settle_stale(active, assignment):
                    continue
                return self.resume(active, assignment)

            try:
                return self.start_attempt(student_id, assignment)
            except AttemptConflict:
                print(f"[attempts] start collision student={student_id} assignment={assignment_id}; retrying",
                      flush=True)
                continue
        raise AttemptConflict()

    def start_attempt(self, student_id: int, assignment: Mapping[str, Any]) -> Dict[str, Any]:
        """Open a fresh attempt. Call only after the gate approved a new one."""
        assignment_id = assignment["assignment_id"]
        order = self.bank.draw_order(assignment_id, bool(assignment.get("shuffle_questions")))
        attempt = self.store.create_attempt(student_id, assignment_id,
                                            time_limit_seconds(assignment), order)
        print(f"[attempts] started attempt={attempt['attempt_id']} #{attempt['attempt_number']} "
              f"student={student_id} assignment={assignment_id}", flush=True)
        return {
            "assignment": assignment,
            "attempt": attempt,
            "questions": self.questions_for(attempt),
            "resumed": False,
        }

    def resume(self, attempt: Dict[str, Any], assignment: Mapping[str, Any]) -> Dict[str, Any]:
        attempt = dict(attempt)
        attempt["time_remaining_seconds"] = self.remaining_seconds(attempt, assignment)
        return {
            "assignment": assignment,
            "attempt": attempt,
            "questions": self.questions_for(attempt),
            "resumed": True,
        }

    def _settle_stale(self, attempt: Mapping[str, Any], assignment: Mapping[str, Any]) -> bool:
        """Close a live attempt that cannot be resumed. True if it was closed."""
        existing = self.store.get_submission_for_attempt(
            attempt["student_id"], attempt["assignment_id"], attempt["attempt_number"])
        if existing:
            # scored before a crash, status never flipped
            self.store.complete_attempt(attempt["attempt_id"], COMPLETED)
            return True
        if self.server_timer and self.server_expired(attempt, assignment):
            try:
                self.finalize(attempt, assignment, attempt.get("saved_answers") or {},
                              TIMED_OUT, finalized_by="timeout")
            except AttemptClosed:
                pass  # a concurrent request closed it first
            return True
        return False

    # ----------------------------- heartbeat ---------------------------------
    def update_time(self, student_id: int, attempt_id: int, time_remaining: int,
                    answers: Optional[Mapping[Any, Any]] = None) -> Dict[str, Any]:
        """Advisory heartbeat. Only ever lowers the stored time; never scores."""
        # timeRemaining <= 0 is stored as 0 here; auto_save is the path that finalizes
        attempt, assignment = self.load(student_id, attempt_id)
        self._require_open(attempt)
        updated = self.store.update_attempt_time(attempt_id, int(time_remaining))
        if updated is None:
            attempt = self.store.get_attempt(attempt_id, student_id) or attempt
            self._require_open(attempt)
            updated = attempt
        if answers:
            saved = self.store.save_attempt_answers(
                attempt_id, merge_answers(updated.get("saved_answers"), answers))
            updated = saved or updated
        return {
            "attempt": updated,
            "assignment": assignment,
            "time_remaining_seconds": self.remaining_seconds(updated, assignment),
        }

    def auto_save(self, student_id: int, attempt_id: int, time_remaining: int,
                  answers: Optional[Mapping[Any, Any]] = None,
                  meta: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """Heartbeat that also enforces the time limit: when time is up the
        attempt is scored with its last-known answers and closed timed_out.
        An attempt some other path already timed out answers the same way."""
        try:
            beat = self.update_time(student_id, attempt_id, time_remaining, answers)
            attempt, assignment = beat["attempt"], beat["assignment"]
            expired = int(time_remaining) <= 0 or (self.server_timer and self.server_expired(attempt, assignment))
            if not expired:
                return {"timed_out": False, "time_remaining_seconds": beat["time_remaining_seconds"]}

            outcome = self.finalize(attempt, assignment, attempt.get("saved_answers") or {},
                                    TIMED_OUT, finalized_by="timeout", meta=meta)
        except AttemptClosed as closed:
            if closed.status != TIMED_OUT:
                raise
            outcome = self._timed_out_outcome(student_id, attempt_id, closed)
        return {"timed_out": True, "time_remaining_seconds": 0, "submission": outcome}

    def _timed_out_outcome(self, student_id: int, attempt_id: int, closed: AttemptClosed) -> Dict[str, Any]:
        attempt, assignment = self.load(student_id, attempt_id)
        existing = self.store.get_submission_for_attempt(
            attempt["student_id"], attempt["assignment_id"], attempt["attempt_number"])
        if not existing:
            raise closed
        return self.outcome_of(existing, attempt, assignment)

    def outcome_of(self, submission: Mapping[str, Any], attempt: Mapping[str, Any],
                   assignment: Mapping[str, Any]) -> Dict[str, Any]:
        """Rebuild a finalize() result from a stored submission."""
        passing_marks = assignment.get("passing_marks")
        return {
            "submission_id": submission["submission_id"],
            "status": attempt.get("status"),
            "timed_out": attempt.get("status") == TIMED_OUT,
            "score": submission.get("score"),
            "total_marks": submission.get("total_marks"),
            "percentage": submission.get("percentage"),
            "passed": is_passing(submission.get("percentage") or 0, passing_marks),
            "passing_marks": passing_marks,
            "time_taken_seconds": submission.get("time_taken_seconds"),
            "review_data": submission.get("review_data") or [],
            "show_results": bool(assignment.get("show_results_immediately", True)),
            "results_summary": self.results.summary(attempt["student_id"], attempt["assignment_id"]),
        }

    # ------------------------------ submit -----------------------------------
    def submit(self, student_id: int, attempt_id: int, answers: Mapping[Any, Any],
               meta: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        attempt, assignment = self.load(student_id, attempt_id)
        self._require_open(attempt)
        late = self.server_timer and self.server_expired(attempt, assignment)
        return self.finalize(attempt, assignment, answers,
                             TIMED_OUT if late else COMPLETED,
                             finalized_by="timeout" if late else "student", meta=meta)

    def finalize(self, attempt: Mapping[str, Any], assignment: Mapping[str, Any],
                 answers: Mapping[Any, Any], status: str, finalized_by: str = "student",
                 meta: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """Score answers and close the attempt: status flip, submission row and
        results upsert commit together or not at all."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"not a terminal status: {status!r}")
        meta = meta or {}
        answers = {str(k): v for k, v in (answers or {}).items()}

        # score first: a bad answer key rejects the submission before any write
        scored = self.scorer.calculate_score(attempt["assignment_id"], answers)

        limit = time_limit_seconds(assignment)
        remaining = 0 if status == TIMED_OUT else self.remaining_seconds(attempt, assignment)
        time_taken = max(0, min(limit, limit - remaining))
        passing_marks = assignment.get("passing_marks")

        try:
            with self.store.atomic():
                closed = self.store.complete_attempt(attempt["attempt_id"], status)
                if closed is None:
                    raise AttemptClosed()
                submission_id = self.store.insert_submission({
                    "assignment_id": attempt["assignment_id"],
                    "student_id": attempt["student_id"],
                    "attempt_number": attempt["attempt_number"],
                    "answers": answers,
                    "score": scored["score"],
                    "total_marks": scored["total_marks"],
                    "percentage": scored["percentage"],
                    "time_taken_seconds": time_taken,
                    "review_data": scored["review_data"],
                    "finalized_by": finalized_by,
                    "ip_address": meta.get("ip_address"),
                    "user_agent": meta.get("user_agent"),
                })
                summary = self.results.upsert(attempt["assignment_id"], attempt["student_id"],
                                              scored["score"], scored["percentage"], passing_marks)
        except AttemptClosed:
            current = self.store.get_attempt(attempt["attempt_id"]) or attempt
            existing = self.store.get_submission_for_attempt(
                attempt["student_id"], attempt["assignment_id"], attempt["attempt_number"])
            raise AttemptClosed(current.get("status"), (existing or {}).get("submission_id")) from None

        passed = is_passing(scored["percentage"], passing_marks)
        print(f"[attempts] attempt={attempt['attempt_id']} {status} by {finalized_by}: "
              f"{scored['score']}/{scored['total_marks']} ({scored['percentage']}%) "
              f"submission={submission_id}", flush=True)

        if passed and self.on_passed is not None:
            try:
                self.on_passed(attempt["student_id"], assignment.get("part_id"))
            except Exception as e:
                print(f"[sink] mark-completed failed for student={attempt['student_id']}: {e}", flush=True)

        return {
            "submission_id": submission_id,
            "status": status,
            "timed_out": status == TIMED_OUT,
            "score": scored["score"],
            "total_marks": scored["total_marks"],
            "percentage": scored["percentage"],
            "passed": passed,
            "passing_marks": passing_marks,
            "time_taken_seconds": time_taken,
            "review_data": scored["review_data"],
            "show_results": bool(assignment.get("show_results_immediately", True)),
            "results_summary": summary,
        }

    # ------------------------------- sweep -----------------------------------
    def sweep_expired(self, limit: int = SWEEP_LIMIT) -> List[int]:
        """Close abandoned attempts past limit + grace using their saved answers."""
        closed: List[int] = []
        now = self.clock()
        for row in self.store.list_open_attempts(limit):
            assignment = self.store.get_assignment(row["assignment_id"], active_only=False)
            if not assignment or not self.server_expired(row, assignment, now):
                continue
            try:
                self.finalize(row, assignment, row.get("saved_answers") or {},
                              TIMED_OUT, finalized_by="sweep")
            except AttemptClosed:
                continue
            closed.append(row["attempt_id"])
        return closed

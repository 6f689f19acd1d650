import copy
import sys
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from assignment_errors import AttemptClosed, AttemptConflict  # noqa: E402
from attempt_gate import AttemptGate  # noqa: E402
from attempts import AttemptManager  # noqa: E402
from question_bank import QuestionBank  # noqa: E402
from results import ResultsAggregator  # noqa: E402
from scoring import ScoringEngine  # noqa: E402


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


class InMemoryStore:
    """Same interface as PgAssignmentStore. One RLock stands in for the
    database: each call is atomic, atomic() blocks roll back on error, and
    the unique indexes are enforced the way Postgres would."""

    def __init__(self, clock=None):
        self.clock = clock or FakeClock()
        self._lock = threading.RLock()
        self._depth = 0
        self.assignments = {}
        self.questions = []
        self.attempts = {}
        self.submissions = {}
        self.results = {}
        self._ids = {"assignment": 0, "question": 0, "attempt": 0, "submission": 0}
        self.calls = []

    # ------------------------------ test helpers ------------------------------
    def _next_id(self, kind):
        self._ids[kind] += 1
        return self._ids[kind]

    def add_assignment(self, **kw):
        aid = self._next_id("assignment")
        row = {
            "assignment_id": aid,
            "part_id": kw.pop("part_id", 100 + aid),
            "title": kw.pop("title", f"Assignment {aid}"),
            "description": None,
            "total_marks": 0,
            "passing_marks": 50.0,
            "time_limit_minutes": 10,
            "max_attempts": 3,
            "shuffle_questions": False,
            "show_results_immediately": True,
            "allow_review": True,
            "is_active": True,
        }
        row.update(kw)
        self.assignments[aid] = row
        return dict(row)

    def add_question(self, assignment_id, correct_answers, **kw):
        qid = self._next_id("question")
        row = {
            "question_id": qid,
            "assignment_id": assignment_id,
            "question_text": f"Question {qid}?",
            "question_type": "single",
            "option_a": "alpha",
            "option_b": "beta",
            "option_c": "gamma",
            "option_d": "delta",
            "option_e": None,
            "correct_answers": correct_answers,
            "marks": 1,
            "explanation": f"because {correct_answers}",
            "difficulty_level": "medium",
            "question_order": len([q for q in self.questions if q["assignment_id"] == assignment_id]) + 1,
            "is_active": True,
        }
        row.update(kw)
        self.questions.append(row)
        return dict(row)

    # -------------------------------- plumbing --------------------------------
    @contextmanager
    def atomic(self):
        with self._lock:
            outer = self._depth == 0
            snapshot = None
            if outer:
                snapshot = copy.deepcopy((self.attempts, self.submissions, self.results, self._ids))
            self._depth += 1
            try:
                yield self
            except BaseException:
                if outer:
                    self.attempts, self.submissions, self.results, self._ids = snapshot
                raise
            finally:
                self._depth -= 1

    def ensure_schema(self):
        self.calls.append("ensure_schema")

    # ------------------------------ assignments -------------------------------
    def get_assignment(self, assignment_id, active_only=True):
        with self._lock:
            row = self.assignments.get(assignment_id)
            if row is None or (active_only and not row["is_active"]):
                return None
            return dict(row)

    def get_assignment_by_part(self, part_id):
        with self._lock:
            rows = [a for a in self.assignments.values() if a["part_id"] == part_id and a["is_active"]]
            if not rows:
                return None
            return dict(max(rows, key=lambda a: a["assignment_id"]))

    def get_questions(self, assignment_id):
        with self._lock:
            rows = [dict(q) for q in self.questions
                    if q["assignment_id"] == assignment_id and q["is_active"]]
            return sorted(rows, key=lambda q: (q["question_order"], q["question_id"]))

    # -------------------------------- attempts --------------------------------
    def count_submitted(self, student_id, assignment_id):
        with self._lock:
            return len([s for s in self.submissions.values()
                        if s["student_id"] == student_id and s["assignment_id"] == assignment_id
                        and s["status"] == "submitted"])

    def get_active_attempt(self, student_id, assignment_id):
        with self._lock:
            rows = [a for a in self.attempts.values()
                    if a["student_id"] == student_id and a["assignment_id"] == assignment_id
                    and a["status"] == "in_progress"]
            if not rows:
                return None
            return copy.deepcopy(max(rows, key=lambda a: a["attempt_number"]))

    def create_attempt(self, student_id, assignment_id, time_remaining_seconds, question_order):
        with self._lock:
            mine = [a for a in self.attempts.values()
                    if a["student_id"] == student_id and a["assignment_id"] == assignment_id]
            if any(a["status"] == "in_progress" for a in mine):
                raise AttemptConflict()
            number = max([a["attempt_number"] for a in mine] or [0]) + 1
            attempt_id = self._next_id("attempt")
            row = {
                "attempt_id": attempt_id,
                "assignment_id": assignment_id,
                "student_id": student_id,
                "attempt_number": number,
                "status": "in_progress",
                "time_remaining_seconds": int(time_remaining_seconds),
                "question_order": list(question_order),
                "saved_answers": {},
                "start_time": self.clock(),
                "end_time": None,
            }
            self.attempts[attempt_id] = row
            return copy.deepcopy(row)

    def get_attempt(self, attempt_id, student_id=None):
        with self._lock:
            row = self.attempts.get(attempt_id)
            if row is None or (student_id is not None and row["student_id"] != student_id):
                return None
            return copy.deepcopy(row)

    def list_attempts(self, student_id, assignment_id):
        with self._lock:
            out = []
            for a in self.attempts.values():
                if a["student_id"] != student_id or a["assignment_id"] != assignment_id:
                    continue
                sub = self._submission_for(student_id, assignment_id, a["attempt_number"]) or {}
                row = {k: a[k] for k in ("attempt_id", "assignment_id", "student_id", "attempt_number",
                                         "status", "time_remaining_seconds", "start_time", "end_time")}
                row.update({
                    "submission_id": sub.get("submission_id"),
                    "score": sub.get("score"),
                    "percentage": sub.get("percentage"),
                    "submitted_at": sub.get("submitted_at"),
                    "submission_status": sub.get("status"),
                })
                out.append(row)
            return sorted(out, key=lambda r: -r["attempt_number"])

    def list_open_attempts(self, limit=500):
        with self._lock:
            now = self.clock()
            rows = [a for a in self.attempts.values()
                    if a["status"] == "in_progress"
                    and a["start_time"] + timedelta(minutes=self.assignments[a["assignment_id"]]["time_limit_minutes"]) < now]
            rows.sort(key=lambda a: a["start_time"])
            out = []
            for a in rows[:limit]:
                row = copy.deepcopy(a)
                row["time_limit_minutes"] = self.assignments[a["assignment_id"]]["time_limit_minutes"]
                out.append(row)
            return out

    def update_attempt_time(self, attempt_id, time_remaining_seconds):
        with self._lock:
            row = self.attempts.get(attempt_id)
            if row is None or row["status"] != "in_progress":
                return None
            row["time_remaining_seconds"] = min(row["time_remaining_seconds"], max(int(time_remaining_seconds), 0))
            return copy.deepcopy(row)

    def save_attempt_answers(self, attempt_id, answers):
        with self._lock:
            row = self.attempts.get(attempt_id)
            if row is None or row["status"] != "in_progress":
                return None
            row["saved_answers"] = copy.deepcopy(answers)
            return copy.deepcopy(row)

    def complete_attempt(self, attempt_id, status):
        with self._lock:
            row = self.attempts.get(attempt_id)
            if row is None or row["status"] != "in_progress":
                return None
            row["status"] = status
            row["end_time"] = self.clock()
            return copy.deepcopy(row)

    # ------------------------------- submissions ------------------------------
    def _submission_for(self, student_id, assignment_id, attempt_number):
        for s in self.submissions.values():
            if (s["student_id"], s["assignment_id"], s["attempt_number"]) == (student_id, assignment_id, attempt_number):
                return s
        return None

    def insert_submission(self, data):
        with self._lock:
            if self._submission_for(data["student_id"], data["assignment_id"], data["attempt_number"]):
                raise AttemptClosed(status="submitted")
            sid = self._next_id("submission")
            self.submissions[sid] = {
                "submission_id": sid,
                "assignment_id": data["assignment_id"],
                "student_id": data["student_id"],
                "attempt_number": data["attempt_number"],
                "answers_json": copy.deepcopy(data.get("answers") or {}),
                "score": data["score"],
                "total_marks": data["total_marks"],
                "percentage": data["percentage"],
                "time_taken_seconds": data["time_taken_seconds"],
                "review_data": copy.deepcopy(data.get("review_data") or []),
                "status": "submitted",
                "finalized_by": data.get("finalized_by") or "student",
                "ip_address": data.get("ip_address"),
                "user_agent": data.get("user_agent"),
                "submitted_at": self.clock(),
            }
            return sid

    def get_submission_for_attempt(self, student_id, assignment_id, attempt_number):
        with self._lock:
            row = self._submission_for(student_id, assignment_id, attempt_number)
            return copy.deepcopy(row) if row else None

    def get_submission(self, submission_id, student_id):
        with self._lock:
            row = self.submissions.get(submission_id)
            if row is None or row["student_id"] != student_id:
                return None
            attempt = next((x for x in self.attempts.values()
                            if x["student_id"] == student_id
                            and x["assignment_id"] == row["assignment_id"]
                            and x["attempt_number"] == row["attempt_number"]), {})
            a = self.assignments[row["assignment_id"]]
            out = copy.deepcopy(row)
            out.update({
                "assignment_title": a["title"],
                "show_results_immediately": a["show_results_immediately"],
                "allow_review": a["allow_review"],
                "passing_marks": a["passing_marks"],
                "question_order": copy.deepcopy(attempt.get("question_order")),
            })
            return out

    def list_submissions(self, student_id, assignment_id):
        with self._lock:
            rows = [copy.deepcopy(s) for s in self.submissions.values()
                    if s["student_id"] == student_id and s["assignment_id"] == assignment_id]
            for r in rows:
                r["assignment_title"] = self.assignments[assignment_id]["title"]
            return sorted(rows, key=lambda r: -r["attempt_number"])

    # --------------------------------- results --------------------------------
    def upsert_result(self, assignment_id, student_id, score, percentage, passed):
        with self._lock:
            key = (assignment_id, student_id)
            row = self.results.get(key)
            if row is None:
                row = {
                    "assignment_id": assignment_id,
                    "student_id": student_id,
                    "best_score": score,
                    "best_percentage": percentage,
                    "attempts_used": 1,
                    "passed": bool(passed),
                    "last_attempt_at": self.clock(),
                }
                self.results[key] = row
            else:
                row["attempts_used"] += 1
                row["best_score"] = max(row["best_score"], score)
                row["best_percentage"] = max(row["best_percentage"], percentage)
                row["passed"] = row["passed"] or bool(passed)
                row["last_attempt_at"] = self.clock()
            return dict(row)

    def get_result(self, student_id, assignment_id):
        with self._lock:
            row = self.results.get((assignment_id, student_id))
            if row is None:
                return None
            a = self.assignments[assignment_id]
            out = dict(row)
            out.update({
                "assignment_title": a["title"],
                "total_marks": a["total_marks"],
                "passing_marks": a["passing_marks"],
                "max_attempts": a["max_attempts"],
            })
            return out

    def list_student_assignments(self, student_id):
        with self._lock:
            out = []
            for a in self.assignments.values():
                if not a["is_active"]:
                    continue
                r = self.results.get((a["assignment_id"], student_id)) or {}
                row = dict(a)
                row.update({k: r.get(k) for k in ("best_score", "best_percentage", "passed",
                                                   "attempts_used", "last_attempt_at")})
                out.append(row)
            return out


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryStore(clock)


@pytest.fixture
def two_question_assignment(store):
    """Q1 single (5 marks, A); Q2 multiple (5 marks, A+C); pass at 50%."""
    a = store.add_assignment(part_id=7, title="Vectors quiz", passing_marks=50.0,
                             time_limit_minutes=10, max_attempts=3, total_marks=10)
    q1 = store.add_question(a["assignment_id"], "A", marks=5)
    q2 = store.add_question(a["assignment_id"], "A,C", question_type="multiple", marks=5)
    return SimpleNamespace(assignment=a, q1=q1["question_id"], q2=q2["question_id"])


@pytest.fixture
def completed_parts():
    return []


@pytest.fixture
def components(store, clock, completed_parts):
    bank = QuestionBank(store)
    scorer = ScoringEngine(bank)
    results = ResultsAggregator(store)
    gate = AttemptGate(store)

    def on_passed(student_id, part_id):
        completed_parts.append((student_id, part_id))

    manager = AttemptManager(store, bank, scorer, results, gate, clock=clock,
                             on_passed=on_passed, server_timer=True,
                             grace_seconds=30, start_retries=3)
    return SimpleNamespace(store=store, bank=bank, scorer=scorer, results=results,
                           gate=gate, manager=manager)

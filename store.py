# store.py
# -----------------------------------------------------------------------------
# PostgreSQL storage for the assignment attempt subsystem (psycopg 3).
# - One class, injected into every component; tests swap in an in-memory twin
# - Hand-written SQL; dict rows; NUMERIC columns come back as float
# - atomic(): every store call inside the block shares one connection/transaction
# - Unique violations are translated into AttemptConflict / AttemptClosed
# -----------------------------------------------------------------------------
import json
import threading
from contextlib import contextmanager
from decimal import Decimal
from typing import Any, Callable, Dict, Iterator, List, Optional

from psycopg import errors as pg_errors
from psycopg.rows import dict_row

from assignment_errors import AttemptClosed, AttemptConflict

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS assignments (
        assignment_id            BIGSERIAL PRIMARY KEY,
        part_id                  BIGINT NOT NULL,
        title                    TEXT NOT NULL,
        description              TEXT,
        total_marks              INTEGER NOT NULL DEFAULT 0,
        passing_marks            NUMERIC(5,2) NOT NULL DEFAULT 50,
        time_limit_minutes       INTEGER NOT NULL DEFAULT 30 CHECK (time_limit_minutes > 0),
        max_attempts             INTEGER NOT NULL DEFAULT 3 CHECK (max_attempts > 0),
        shuffle_questions        BOOLEAN NOT NULL DEFAULT FALSE,
        show_results_immediately BOOLEAN NOT NULL DEFAULT TRUE,
        allow_review             BOOLEAN NOT NULL DEFAULT TRUE,
        is_active                BOOLEAN NOT NULL DEFAULT TRUE,
        created_at               TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE INDEX IF NOT EXISTS assignments_part_idx ON assignments (part_id);
    """,
    """
    CREATE TABLE IF NOT EXISTS questions (
        question_id      BIGSERIAL PRIMARY KEY,
        assignment_id    BIGINT NOT NULL REFERENCES assignments (assignment_id) ON DELETE CASCADE,
        question_text    TEXT NOT NULL,
        question_type    TEXT NOT NULL DEFAULT 'single' CHECK (question_type IN ('single', 'multiple')),
        option_a         TEXT NOT NULL,
        option_b         TEXT NOT NULL,
        option_c         TEXT,
        option_d         TEXT,
        option_e         TEXT,
        correct_answers  TEXT NOT NULL,
        marks            INTEGER NOT NULL DEFAULT 1 CHECK (marks > 0),
        explanation      TEXT,
        difficulty_level TEXT DEFAULT 'medium',
        question_order   INTEGER NOT NULL DEFAULT 1,
        is_active        BOOLEAN NOT NULL DEFAULT TRUE
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS assignment_attempts (
        attempt_id             BIGSERIAL PRIMARY KEY,
        assignment_id          BIGINT NOT NULL REFERENCES assignments (assignment_id),
        student_id             BIGINT NOT NULL,
        attempt_number         INTEGER NOT NULL CHECK (attempt_number > 0),
        status                 TEXT NOT NULL DEFAULT 'in_progress'
                               CHECK (status IN ('in_progress', 'completed', 'timed_out')),
        time_remaining_seconds INTEGER NOT NULL,
        question_order         JSONB NOT NULL DEFAULT '[]'::jsonb,
        saved_answers          JSONB NOT NULL DEFAULT '{}'::jsonb,
        start_time             TIMESTAMPTZ NOT NULL DEFAULT now(),
        end_time               TIMESTAMPTZ,
        UNIQUE (assignment_id, student_id, attempt_number)
    );
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS assignment_attempts_one_active
        ON assignment_attempts (assignment_id, student_id)
        WHERE status = 'in_progress';
    """,
    """
    CREATE TABLE IF NOT EXISTS submissions (
        submission_id      BIGSERIAL PRIMARY KEY,
        assignment_id      BIGINT NOT NULL REFERENCES assignments (assignment_id),
        student_id         BIGINT NOT NULL,
        attempt_number     INTEGER NOT NULL,
        answers_json       JSONB NOT NULL DEFAULT '{}'::jsonb,
        score              INTEGER NOT NULL,
        total_marks        INTEGER NOT NULL,
        percentage         NUMERIC(5,2) NOT NULL,
        time_taken_seconds INTEGER NOT NULL,
        review_data        JSONB NOT NULL DEFAULT '[]'::jsonb,
        status             TEXT NOT NULL DEFAULT 'submitted',
        finalized_by       TEXT NOT NULL DEFAULT 'student',
        ip_address         TEXT,
        user_agent         TEXT,
        submitted_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (assignment_id, student_id, attempt_number)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS assignment_results (
        assignment_id   BIGINT NOT NULL REFERENCES assignments (assignment_id),
        student_id      BIGINT NOT NULL,
        best_score      INTEGER NOT NULL DEFAULT 0,
        best_percentage NUMERIC(5,2) NOT NULL DEFAULT 0,
        attempts_used   INTEGER NOT NULL DEFAULT 0,
        passed          BOOLEAN NOT NULL DEFAULT FALSE,
        last_attempt_at TIMESTAMPTZ,
        PRIMARY KEY (assignment_id, student_id)
    );
    """,
)

_ASSIGNMENT_COLUMNS = """
    a.assignment_id, a.part_id, a.title, a.description, a.total_marks,
    a.passing_marks, a.time_limit_minutes, a.max_attempts, a.shuffle_questions,
    a.show_results_immediately, a.allow_review, a.is_active
"""


def _plain(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    return {k: (float(v) if isinstance(v, Decimal) else v) for k, v in row.items()}


class PgAssignmentStore:
    """
    deps:
      - get_conn(): context manager yielding a psycopg connection (pooled)
    """

    def __init__(self, get_conn: Callable[[], Any]):
        self._get_conn = get_conn
        self._local = threading.local()
        self._schema_ready = False

    # ------------------------------ plumbing ---------------------------------
    @contextmanager
    def atomic(self) -> Iterator["PgAssignmentStore"]:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            # nested block joins the outer transaction
            yield self
            return
        with self._get_conn() as conn:
            with conn.transaction():
                self._local.conn = conn
                try:
                    yield self
                finally:
                    self._local.conn = None

    def _run(self, q: str, params=None, fetch: str = "all"):
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            return self._cursor_run(conn, q, params, fetch)
        with self._get_conn() as conn:
            try:
                out = self._cursor_run(conn, q, params, fetch)
            except Exception:
                conn.rollback()
                raise
            conn.commit()
            return out

    @staticmethod
    def _cursor_run(conn, q: str, params, fetch: str):
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            if fetch == "none":
                return None
            rows = cur.fetchall()
        if fetch == "one":
            return _plain(rows[0]) if rows else None
        return [_plain(r) for r in rows]

    def ensure_schema(self):
        if self._schema_ready:
            return
        with self.atomic():
            for stmt in SCHEMA_STATEMENTS:
                self._run(stmt, fetch="none")
        self._schema_ready = True

    # ----------------------------- assignments -------------------------------
    def get_assignment(self, assignment_id: int, active_only: bool = True) -> Optional[Dict[str, Any]]:
        return self._run(f"""
            SELECT {_ASSIGNMENT_COLUMNS}
              FROM assignments a
             WHERE a.assignment_id = %s
               AND (a.is_active OR NOT %s);
        """, (assignment_id, active_only), fetch="one")

    def get_assignment_by_part(self, part_id: int) -> Optional[Dict[str, Any]]:
        return self._run(f"""
            SELECT {_ASSIGNMENT_COLUMNS}
              FROM assignments a
             WHERE a.part_id = %s AND a.is_active = TRUE
             ORDER BY a.assignment_id DESC
             LIMIT 1;
        """, (part_id,), fetch="one")

    def get_questions(self, assignment_id: int) -> List[Dict[str, Any]]:
        return self._run("""
            SELECT question_id, assignment_id, question_text, question_type,
                   option_a, option_b, option_c, option_d, option_e,
                   correct_answers, marks, explanation, difficulty_level, question_order
              FROM questions
             WHERE assignment_id = %s AND is_active = TRUE
             ORDER BY question_order, question_id;
        """, (assignment_id,))

    # ------------------------------- attempts --------------------------------
    def count_submitted(self, student_id: int, assignment_id: int) -> int:
        row = self._run("""
            SELECT COUNT(*) AS n
              FROM submissions
             WHERE student_id = %s AND assignment_id = %s AND status = 'submitted';
        """, (student_id, assignment_id), fetch="one")
        return int((row or {}).get("n") or 0)

    def get_active_attempt(self, student_id: int, assignment_id: int) -> Optional[Dict[str, Any]]:
        return self._run("""
            SELECT *
              FROM assignment_attempts
             WHERE assignment_id = %s AND student_id = %s AND status = 'in_progress'
             ORDER BY attempt_number DESC
             LIMIT 1;
        """, (assignment_id, student_id), fetch="one")

    def create_attempt(self, student_id: int, assignment_id: int,
                       time_remaining_seconds: int, question_order: List[int]) -> Dict[str, Any]:
        """Allocate max(attempt_number)+1 and insert in one statement. A racing
        writer trips one of the unique indexes and gets AttemptConflict."""
        try:
            return self._run("""
                INSERT INTO assignment_attempts
                    (assignment_id, student_id, attempt_number, status,
                     time_remaining_seconds, question_order, saved_answers, start_time)
                SELECT %s, %s, COALESCE(MAX(attempt_number), 0) + 1, 'in_progress',
                       %s, %s::jsonb, '{}'::jsonb, now()
                  FROM assignment_attempts
                 WHERE assignment_id = %s AND student_id = %s
                RETURNING *;
            """, (assignment_id, student_id, int(time_remaining_seconds),
                  json.dumps(list(question_order)), assignment_id, student_id), fetch="one")
        except pg_errors.UniqueViolation as e:
            raise AttemptConflict() from e

    def get_attempt(self, attempt_id: int, student_id: Optional[int] = None) -> Optional[Dict[str, Any]]:
        return self._run("""
            SELECT *
              FROM assignment_attempts
             WHERE attempt_id = %s
               AND (%s::bigint IS NULL OR student_id = %s::bigint);
        """, (attempt_id, student_id, student_id), fetch="one")

    def list_attempts(self, student_id: int, assignment_id: int) -> List[Dict[str, Any]]:
        return self._run("""
            SELECT aa.attempt_id, aa.assignment_id, aa.student_id, aa.attempt_number,
                   aa.status, aa.time_remaining_seconds, aa.start_time, aa.end_time,
                   s.submission_id, s.score, s.percentage, s.submitted_at,
                   s.status AS submission_status
              FROM assignment_attempts aa
              LEFT JOIN submissions s
                ON s.assignment_id = aa.assignment_id
               AND s.student_id = aa.student_id
               AND s.attempt_number = aa.attempt_number
             WHERE aa.assignment_id = %s AND aa.student_id = %s
             ORDER BY aa.attempt_number DESC;
        """, (assignment_id, student_id))

    def list_open_attempts(self, limit: int = 500) -> List[Dict[str, Any]]:
        # expired by the clock alone; the grace period is checked by the caller
        return self._run("""
            SELECT aa.*, a.time_limit_minutes
              FROM assignment_attempts aa
              JOIN assignments a ON a.assignment_id = aa.assignment_id
             WHERE aa.status = 'in_progress'
               AND aa.start_time + make_interval(mins => a.time_limit_minutes) < now()
             ORDER BY aa.start_time
             LIMIT %s;
        """, (int(limit),))

    def update_attempt_time(self, attempt_id: int, time_remaining_seconds: int) -> Optional[Dict[str, Any]]:
        # never moves the clock backwards
        return self._run("""
            UPDATE assignment_attempts
               SET time_remaining_seconds = LEAST(time_remaining_seconds, GREATEST(%s, 0))
             WHERE attempt_id = %s AND status = 'in_progress'
            RETURNING *;
        """, (int(time_remaining_seconds), attempt_id), fetch="one")

    def save_attempt_answers(self, attempt_id: int, answers: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return self._run("""
            UPDATE assignment_attempts
               SET saved_answers = %s::jsonb
             WHERE attempt_id = %s AND status = 'in_progress'
            RETURNING *;
        """, (json.dumps(answers), attempt_id), fetch="one")

    def complete_attempt(self, attempt_id: int, status: str) -> Optional[Dict[str, Any]]:
        """in_progress -> completed|timed_out. None when the attempt was already terminal."""
        return self._run("""
            UPDATE assignment_attempts
               SET status = %s, end_time = now()
             WHERE attempt_id = %s AND status = 'in_progress'
            RETURNING *;
        """, (status, attempt_id), fetch="one")

    # ------------------------------ submissions ------------------------------
    def insert_submission(self, data: Dict[str, Any]) -> int:
        try:
            row = self._run("""
                INSERT INTO submissions
                    (assignment_id, student_id, attempt_number, answers_json, score,
                     total_marks, percentage, time_taken_seconds, review_data,
                     status, finalized_by, ip_address, user_agent, submitted_at)
                VALUES (%s, %s, %s, %s::jsonb, %s, %s, %s, %s, %s::jsonb,
                        'submitted', %s, %s, %s, now())
                RETURNING submission_id;
            """, (
                data["assignment_id"], data["student_id"], data["attempt_number"],
                json.dumps(data.get("answers") or {}), data["score"], data["total_marks"],
                data["percentage"], data["time_taken_seconds"],
                json.dumps(data.get("review_data") or []),
                data.get("finalized_by") or "student",
                data.get("ip_address"), data.get("user_agent"),
            ), fetch="one")
        except pg_errors.UniqueViolation as e:
            raise AttemptClosed(status="submitted") from e
        return int(row["submission_id"])

    def get_submission_for_attempt(self, student_id: int, assignment_id: int,
                                   attempt_number: int) -> Optional[Dict[str, Any]]:
        return self._run("""
            SELECT *
              FROM submissions
             WHERE student_id = %s AND assignment_id = %s AND attempt_number = %s;
        """, (student_id, assignment_id, attempt_number), fetch="one")

    def get_submission(self, submission_id: int, student_id: int) -> Optional[Dict[str, Any]]:
        return self._run("""
            SELECT s.*,
                   a.title AS assignment_title,
                   a.show_results_immediately,
                   a.allow_review,
                   a.passing_marks,
                   aa.question_order
              FROM submissions s
              JOIN assignments a ON a.assignment_id = s.assignment_id
              LEFT JOIN assignment_attempts aa
                ON aa.assignment_id = s.assignment_id
               AND aa.student_id = s.student_id
               AND aa.attempt_number = s.attempt_number
             WHERE s.submission_id = %s AND s.student_id = %s;
        """, (submission_id, student_id), fetch="one")

    def list_submissions(self, student_id: int, assignment_id: int) -> List[Dict[str, Any]]:
        return self._run("""
            SELECT s.*, a.title AS assignment_title
              FROM submissions s
              JOIN assignments a ON a.assignment_id = s.assignment_id
             WHERE s.student_id = %s AND s.assignment_id = %s
             ORDER BY s.attempt_number DESC;
        """, (student_id, assignment_id))

    # -------------------------------- results --------------------------------
    def upsert_result(self, assignment_id: int, student_id: int, score: int,
                      percentage: float, passed: bool) -> Dict[str, Any]:
        """Single-statement upsert: best-of scores, OR-ed pass flag, +1 attempts."""
        return self._run("""
            INSERT INTO assignment_results AS r
                (assignment_id, student_id, best_score, best_percentage,
                 attempts_used, passed, last_attempt_at)
            VALUES (%s, %s, %s, %s, 1, %s, now())
            ON CONFLICT (assignment_id, student_id) DO UPDATE SET
                attempts_used   = r.attempts_used + 1,
                best_score      = GREATEST(r.best_score, EXCLUDED.best_score),
                best_percentage = GREATEST(r.best_percentage, EXCLUDED.best_percentage),
                passed          = r.passed OR EXCLUDED.passed,
                last_attempt_at = EXCLUDED.last_attempt_at
            RETURNING *;
        """, (assignment_id, student_id, score, percentage, bool(passed)), fetch="one")

    def get_result(self, student_id: int, assignment_id: int) -> Optional[Dict[str, Any]]:
        return self._run("""
            SELECT r.*,
                   a.title AS assignment_title,
                   a.total_marks,
                   a.passing_marks,
                   a.max_attempts
              FROM assignment_results r
              JOIN assignments a ON a.assignment_id = r.assignment_id
             WHERE r.assignment_id = %s AND r.student_id = %s;
        """, (assignment_id, student_id), fetch="one")

    def list_student_assignments(self, student_id: int) -> List[Dict[str, Any]]:
        # learning_parts / units / modules are owned by the LMS content tables
        return self._run(f"""
            SELECT {_ASSIGNMENT_COLUMNS},
                   lp.title AS part_title, lp.display_order,
                   u.unit_name, m.module_name,
                   r.best_score, r.best_percentage, r.passed,
                   r.attempts_used, r.last_attempt_at
              FROM assignments a
              JOIN learning_parts lp ON lp.part_id = a.part_id
              JOIN units u ON u.unit_id = lp.unit_id
              JOIN modules m ON m.module_id = u.module_id
              LEFT JOIN assignment_results r
                ON r.assignment_id = a.assignment_id AND r.student_id = %s
             WHERE a.is_active = TRUE AND m.is_published = TRUE
             ORDER BY m.module_name, u.unit_order, lp.display_order;
        """, (student_id,))

# assignments.py
# -----------------------------------------------------------------------------
# Timed MCQ assignments: JSON endpoints consumed by the assignment player.
# - Mounted at <base_path>/assignments; every route needs g.user_id (401 otherwise)
# - Questions leave the server answer-free; review is gated by allow_review
# - Errors from assignment_errors render as {"ok": false, "error": ..., ...extra}
# -----------------------------------------------------------------------------
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Optional

from flask import Blueprint, current_app, g, jsonify, request
from werkzeug.exceptions import HTTPException

from assignment_errors import (
    AnswerKeyError, AssignmentError, AssignmentNotFound, ReviewNotAllowed,
    SubmissionNotFound, ValidationFailure
)


def _iso(v: Any) -> Any:
    if isinstance(v, datetime):
        if v.tzinfo is not None:
            v = v.astimezone(timezone.utc)
        return v.replace(microsecond=0, tzinfo=None).isoformat() + "Z"
    if isinstance(v, date):
        return v.isoformat()
    return v


def _jsonable(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    return {k: _iso(v) for k, v in row.items()}


def _int_field(data: Dict[str, Any], *names: str) -> int:
    for n in names:
        if data.get(n) is not None:
            try:
                return int(data[n])
            except (TypeError, ValueError):
                raise ValidationFailure(f"{n} must be an integer", field=n) from None
    raise ValidationFailure(f"{names[0]} is required", field=names[0])


def _answers_field(data: Dict[str, Any], required: bool) -> Optional[Dict[str, Any]]:
    answers = data.get("answers")
    if answers is None:
        if required:
            raise ValidationFailure("answers is required", field="answers")
        return None
    if not isinstance(answers, dict):
        raise ValidationFailure("answers must be an object keyed by question_id", field="answers")
    return answers


def _request_meta() -> Dict[str, Optional[str]]:
    fwd = (request.headers.get("X-Forwarded-For") or "").split(",")[0].strip()
    return {
        "ip_address": fwd or request.remote_addr,
        "user_agent": request.headers.get("User-Agent"),
    }


def create_assignment_blueprint(base_path: str, deps: Dict[str, Any], name: str = "assignments") -> Blueprint:
    """
    Factory that returns a Blueprint mounted at <base_path>/assignments.
    Required deps: store, bank, gate, manager, results
    Optional deps: log_access(user_id, part_id, action, user_agent, ip) -- fire-and-forget
    """
    url_prefix = (base_path or "").rstrip("/") + "/assignments"
    bp = Blueprint(name, __name__, url_prefix=url_prefix)

    store   = deps["store"]
    bank    = deps["bank"]
    gate    = deps["gate"]
    manager = deps["manager"]
    results = deps["results"]
    log_access: Optional[Callable] = deps.get("log_access")

    # --------------------------------- guards ---------------------------------
    @bp.before_request
    def _require_user():
        if not getattr(g, "user_id", None):
            return jsonify({"ok": False, "error": "unauthorized"}), 401
        return None

    @bp.errorhandler(HTTPException)
    def _http_error(e: HTTPException):
        body: Dict[str, Any] = {"ok": False, "error": e.description}
        if isinstance(e, AssignmentError):
            body.update(e.payload())
        if isinstance(e, AnswerKeyError):
            print(f"[assignments] answer key error: {e}", flush=True)
        return jsonify(body), e.code or 500

    @bp.errorhandler(Exception)
    def _unexpected(e: Exception):
        print(f"[assignments] {request.method} {request.path} failed: {e!r}", flush=True)
        body: Dict[str, Any] = {"ok": False, "error": "internal error"}
        if current_app.debug:
            body["detail"] = str(e)
        return jsonify(body), 500

    def _assignment_for_part(part_id: int) -> Dict[str, Any]:
        assignment = store.get_assignment_by_part(part_id)
        if not assignment:
            raise AssignmentNotFound()
        return assignment

    def _submission_body(outcome: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "submission_id": outcome["submission_id"],
            "status": outcome["status"],
            "score": outcome["score"],
            "total_marks": outcome["total_marks"],
            "percentage": outcome["percentage"],
            "passed": outcome["passed"],
            "passing_marks": outcome["passing_marks"],
            "time_taken_seconds": outcome["time_taken_seconds"],
            "review_data": outcome["review_data"] if outcome["show_results"] else None,
            "results_summary": _jsonable(outcome["results_summary"]),
        }

    # --------------------------------- routes ---------------------------------
    @bp.get("/<int:part_id>/details")
    def assignment_details(part_id: int):
        assignment = _assignment_for_part(part_id)
        aid = assignment["assignment_id"]
        verdict = gate.can_attempt(g.user_id, aid)
        attempts = [_jsonable(r) for r in store.list_attempts(g.user_id, aid)]
        summary = results.summary(g.user_id, aid)

        if log_access is not None:
            meta = _request_meta()
            try:
                log_access(g.user_id, part_id, "view", meta["user_agent"], meta["ip_address"])
            except Exception as e:
                print(f"[sink] content access log failed: {e}", flush=True)

        return jsonify({
            "ok": True,
            "assignment": _jsonable(assignment),
            "can_attempt": verdict,
            "attempts": attempts,
            "results": _jsonable(summary),
        })

    @bp.post("/<int:part_id>/start")
    def assignment_start(part_id: int):
        assignment = _assignment_for_part(part_id)
        out = manager.start_or_resume(g.user_id, assignment)
        attempt = out["attempt"]
        questions = bank.client_questions(out["questions"])
        print(f"[assignments] {'resumed' if out['resumed'] else 'started'} attempt={attempt['attempt_id']} "
              f"user={g.user_id} part={part_id}", flush=True)
        return jsonify({
            "ok": True,
            "resumed": out["resumed"],
            "assignment": _jsonable(assignment),
            "attempt": _jsonable(attempt),
            "questions": questions,
            "total_questions": len(questions),
            "time_limit_seconds": int(assignment.get("time_limit_minutes") or 0) * 60,
        })

    @bp.post("/attempt/<int:attempt_id>/progress")
    def attempt_progress(attempt_id: int):
        data = request.get_json(silent=True) or {}
        remaining = _int_field(data, "timeRemaining", "time_remaining_seconds")
        answers = _answers_field(data, required=False)
        beat = manager.update_time(g.user_id, attempt_id, remaining, answers)
        return jsonify({
            "ok": True,
            "message": "Progress saved",
            "time_remaining_seconds": beat["time_remaining_seconds"],
        })

    @bp.post("/attempt/<int:attempt_id>/auto-save")
    def attempt_auto_save(attempt_id: int):
        data = request.get_json(silent=True) or {}
        remaining = _int_field(data, "timeRemaining", "time_remaining_seconds")
        answers = _answers_field(data, required=False)
        out = manager.auto_save(g.user_id, attempt_id, remaining, answers, meta=_request_meta())
        if not out["timed_out"]:
            return jsonify({
                "ok": True,
                "timed_out": False,
                "time_remaining_seconds": out["time_remaining_seconds"],
            })

        body = {"ok": True, "timed_out": True, "message": "Assignment auto-submitted due to time limit"}
        body.update(_submission_body(out["submission"]))
        return jsonify(body)

    @bp.post("/attempt/<int:attempt_id>/submit")
    def attempt_submit(attempt_id: int):
        data = request.get_json(silent=True) or {}
        answers = _answers_field(data, required=True)
        outcome = manager.submit(g.user_id, attempt_id, answers, meta=_request_meta())
        body = {"ok": True, "timed_out": outcome["timed_out"]}
        body.update(_submission_body(outcome))
        return jsonify(body)

    @bp.get("/submission/<int:submission_id>/review")
    def submission_review(submission_id: int):
        submission = store.get_submission(submission_id, g.user_id)
        if not submission:
            raise SubmissionNotFound()
        if not submission.get("allow_review") and submission.get("status") == "submitted":
            raise ReviewNotAllowed()
        return jsonify({
            "ok": True,
            "submission": _jsonable(submission),
            "questions": bank.review_questions(submission["assignment_id"],
                                              order=submission.get("question_order")),
        })

    @bp.get("/<int:assignment_id>/history")
    def assignment_history(assignment_id: int):
        rows = store.list_submissions(g.user_id, assignment_id)
        return jsonify({"ok": True, "history": [_jsonable(r) for r in rows]})

    @bp.get("/student/all")
    def student_assignments():
        rows = store.list_student_assignments(g.user_id)
        return jsonify({"ok": True, "assignments": [_jsonable(r) for r in rows]})

    return bp

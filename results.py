# results.py
# Best-of summary per (student, assignment). The store applies the update in a
# single conditional statement, so concurrent submissions can neither lose an
# attempt count nor lower a best score.
from typing import Any, Dict, Optional


def is_passing(percentage: Any, passing_marks: Any) -> bool:
    """passing_marks is a percentage threshold."""
    try:
        return float(percentage) >= float(passing_marks or 0)
    except (TypeError, ValueError):
        return False


class ResultsAggregator:

    def __init__(self, store):
        self.store = store

    def upsert(self, assignment_id: int, student_id: int, score: int,
               percentage: float, passing_marks: Any) -> Dict[str, Any]:
        """
        First submission inserts {best=score, attempts_used=1}; later ones bump
        attempts_used, keep the max score/percentage and OR the pass flag.
        """
        passed = is_passing(percentage, passing_marks)
        return self.store.upsert_result(assignment_id, student_id, score, percentage, passed)

    def summary(self, student_id: int, assignment_id: int) -> Optional[Dict[str, Any]]:
        return self.store.get_result(student_id, assignment_id)

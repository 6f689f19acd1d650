# scoring.py
# Auto-scoring of MCQ answers. calculate_score() is pure: questions + answers in,
# score/percentage/review out. A broken answer key raises before any question
# is scored, so a submission is either fully scored or rejected.
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence

from question_bank import Letter, Question, parse_letter


def _lookup_answer(answers: Mapping[Any, Any], question_id: int) -> Any:
    # JSON bodies key by string; in-process callers may key by int
    if str(question_id) in answers:
        return answers[str(question_id)]
    return answers.get(question_id)


def _selected_letters(raw: Any) -> Optional[FrozenSet[Letter]]:
    """Normalize a multiple-choice answer. None when it cannot be read as a
    set of letters (an unknown letter spoils the whole selection)."""
    if raw is None:
        return None
    if isinstance(raw, str):
        raw = [t for t in raw.split(",") if t.strip()]
    if not isinstance(raw, (list, tuple, set, frozenset)):
        return None
    out = set()
    for item in raw:
        letter = parse_letter(item)
        if letter is None:
            return None
        out.add(letter)
    return frozenset(out)


def _single_letter(raw: Any) -> Optional[Letter]:
    if isinstance(raw, (list, tuple)) and len(raw) == 1:
        raw = raw[0]
    return parse_letter(raw)


def is_correct(question: Question, raw_answer: Any) -> bool:
    if question.qtype == "single":
        letter = _single_letter(raw_answer)
        return letter is not None and letter in question.correct_answers
    selected = _selected_letters(raw_answer)
    if not selected:
        return False
    return selected == frozenset(question.correct_answers)


def percentage_of(score: float, total_marks: float) -> float:
    if not total_marks:
        return 0.0
    return round(float(score) / float(total_marks) * 100.0, 2)


def calculate_score(questions: Sequence[Question], answers: Optional[Mapping[Any, Any]]) -> Dict[str, Any]:
    """
    Score a full answer map against the questions, in question order.
    Returns {score, total_marks, percentage, review_data[]}; every question
    appears in review_data, answered or not.
    """
    answers = answers or {}
    score = 0
    total_marks = 0
    review: List[Dict[str, Any]] = []

    for q in questions:
        total_marks += q.marks
        student_answer = _lookup_answer(answers, q.question_id)
        correct = is_correct(q, student_answer)
        obtained = q.marks if correct else 0
        score += obtained
        review.append({
            "question_id": q.question_id,
            "correct": correct,
            "student_answer": student_answer,
            "correct_answers": q.answer_key,
            "marks_obtained": obtained,
            "total_marks": q.marks,
            "explanation": q.explanation,
        })

    return {
        "score": score,
        "total_marks": total_marks,
        "percentage": percentage_of(score, total_marks),
        "review_data": review,
    }


class ScoringEngine:
    """Binds calculate_score to the question bank (reads only)."""

    def __init__(self, bank):
        self.bank = bank

    def calculate_score(self, assignment_id: int, answers: Optional[Mapping[Any, Any]]) -> Dict[str, Any]:
        questions = self.bank.get_questions(assignment_id, shuffle=False)
        return calculate_score(questions, answers)

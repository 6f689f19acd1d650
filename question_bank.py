# question_bank.py
# -----------------------------------------------------------------------------
# Question Bank: the questions of one assignment.
# - Answer keys are parsed ONCE here into an ordered tuple of Letter values
# - Option/answer-key invariants checked at the boundary (AnswerKeyError)
# - Client projection never carries correct_answers or explanation
# - Shuffle is fixed per attempt: the order is drawn once and stored on the attempt
# -----------------------------------------------------------------------------
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from assignment_errors import AnswerKeyError


class Letter(str, Enum):
    A = "A"
    B = "B"
    C = "C"
    D = "D"
    E = "E"


OPTION_LETTERS: Tuple[Letter, ...] = tuple(Letter)
QUESTION_TYPES = ("single", "multiple")


def parse_letter(value: Any) -> Optional[Letter]:
    """'a' / ' A ' / Letter.A -> Letter.A; anything else -> None."""
    if isinstance(value, Letter):
        return value
    if not isinstance(value, str):
        return None
    try:
        return Letter(value.strip().upper())
    except ValueError:
        return None


def parse_answer_key(raw: Any, available: Iterable[Letter], question_id: Any = None) -> Tuple[Letter, ...]:
    """Decode the comma-encoded key ("A,C") into an ordered, de-duplicated tuple.

    Every letter must name an option that is actually present on the question.
    """
    if isinstance(raw, (list, tuple)):
        tokens = [str(t) for t in raw]
    else:
        tokens = str(raw or "").split(",")
    avail = set(available)
    out: List[Letter] = []
    for tok in tokens:
        if not tok.strip():
            continue
        letter = parse_letter(tok)
        if letter is None:
            raise AnswerKeyError(question_id, f"unknown option letter {tok.strip()!r}")
        if letter not in avail:
            raise AnswerKeyError(question_id, f"answer {letter.value} points at an empty option")
        if letter not in out:
            out.append(letter)
    if not out:
        raise AnswerKeyError(question_id, "no correct answer recorded")
    return tuple(out)


@dataclass(frozen=True)
class Question:
    question_id: int
    assignment_id: int
    text: str
    qtype: str
    options: Tuple[Tuple[Letter, str], ...]
    correct_answers: Tuple[Letter, ...]
    marks: int
    explanation: Optional[str]
    order: int
    difficulty: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Question":
        qid = row.get("question_id")
        options: List[Tuple[Letter, str]] = []
        for letter in OPTION_LETTERS:
            val = row.get(f"option_{letter.value.lower()}")
            if val is not None and str(val).strip() != "":
                options.append((letter, str(val)))
        present = {l for l, _ in options}
        if Letter.A not in present or Letter.B not in present:
            raise AnswerKeyError(qid, "options A and B are required")

        qtype = (row.get("question_type") or "single").strip().lower()
        if qtype not in QUESTION_TYPES:
            raise AnswerKeyError(qid, f"unknown question type {qtype!r}")

        # a single-choice question may accept more than one letter
        key = parse_answer_key(row.get("correct_answers"), present, qid)

        try:
            marks = int(row.get("marks") if row.get("marks") is not None else 1)
        except (TypeError, ValueError):
            raise AnswerKeyError(qid, f"marks is not a number: {row.get('marks')!r}") from None
        if marks <= 0:
            raise AnswerKeyError(qid, "marks must be positive")

        return cls(
            question_id=int(qid),
            assignment_id=int(row.get("assignment_id") or 0),
            text=str(row.get("question_text") or ""),
            qtype=qtype,
            options=tuple(options),
            correct_answers=key,
            marks=marks,
            explanation=row.get("explanation"),
            order=int(row.get("question_order") or 0),
            difficulty=row.get("difficulty_level"),
        )

    @property
    def answer_key(self) -> List[str]:
        return [l.value for l in self.correct_answers]


def client_view(q: Question, render: Optional[Callable[[str], Any]] = None) -> Dict[str, Any]:
    """Wire shape sent to a student: no answer key, no explanation."""
    out: Dict[str, Any] = {
        "question_id": q.question_id,
        "question_text": q.text,
        "question_type": q.qtype,
        "marks": q.marks,
        "difficulty_level": q.difficulty,
        "question_order": q.order,
    }
    for letter in OPTION_LETTERS:
        out[f"option_{letter.value.lower()}"] = None
    for letter, text in q.options:
        out[f"option_{letter.value.lower()}"] = text
    if render is not None:
        out["question_html"] = str(render(q.text))
    return out


def review_view(q: Question, render: Optional[Callable[[str], Any]] = None) -> Dict[str, Any]:
    """Post-submission shape: the client view plus key and explanation."""
    out = client_view(q, render)
    out["correct_answers"] = q.answer_key
    out["explanation"] = q.explanation
    if render is not None and q.explanation:
        out["explanation_html"] = str(render(q.explanation))
    return out


def shuffled_ids(question_ids: Sequence[int], rng: Optional[random.Random] = None) -> List[int]:
    ids = list(question_ids)
    (rng or random.SystemRandom()).shuffle(ids)
    return ids


def apply_order(questions: Sequence[Question], order: Optional[Sequence[Any]]) -> List[Question]:
    """Arrange questions by a stored id order. Ids missing from the order keep
    their bank position at the end; stale ids in the order are skipped."""
    if not order:
        return list(questions)
    by_id = {q.question_id: q for q in questions}
    out: List[Question] = []
    seen = set()
    for raw in order:
        try:
            qid = int(raw)
        except (TypeError, ValueError):
            continue
        q = by_id.get(qid)
        if q is not None and qid not in seen:
            out.append(q)
            seen.add(qid)
    out.extend(q for q in questions if q.question_id not in seen)
    return out


class QuestionBank:
    """Read-only access to an assignment's active questions."""

    def __init__(self, store, render: Optional[Callable[[str], Any]] = None,
                 rng: Optional[random.Random] = None):
        self.store = store
        self.render = render
        self.rng = rng

    def get_questions(self, assignment_id: int, shuffle: bool = False,
                      order: Optional[Sequence[Any]] = None) -> List[Question]:
        rows = self.store.get_questions(assignment_id)
        questions = [Question.from_row(r) for r in rows]
        if order:
            return apply_order(questions, order)
        if shuffle:
            by_id = {q.question_id: q for q in questions}
            return [by_id[i] for i in shuffled_ids(list(by_id), self.rng)]
        return questions

    def draw_order(self, assignment_id: int, shuffle: bool) -> List[int]:
        """The order a new attempt will keep for its whole life."""
        return [q.question_id for q in self.get_questions(assignment_id, shuffle=shuffle)]

    def client_questions(self, questions: Sequence[Question]) -> List[Dict[str, Any]]:
        return [client_view(q, self.render) for q in questions]

    def review_questions(self, assignment_id: int,
                         order: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        """Questions with keys, in the order the attempt showed them."""
        return [review_view(q, self.render) for q in self.get_questions(assignment_id, order=order)]

import random
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from assignment_errors import AnswerKeyError  # noqa: E402
from question_bank import (  # noqa: E402
    Letter, Question, QuestionBank, apply_order, client_view, parse_answer_key
)


def _row(**kw):
    row = {
        "question_id": 1,
        "assignment_id": 9,
        "question_text": "Pick one",
        "question_type": "single",
        "option_a": "x", "option_b": "y", "option_c": None, "option_d": "",
        "correct_answers": "B",
        "marks": 2,
        "explanation": "y is right",
        "question_order": 1,
    }
    row.update(kw)
    return row


def test_answer_key_parsed_once_into_letters():
    q = Question.from_row(_row(correct_answers=" b "))
    assert q.correct_answers == (Letter.B,)
    assert q.answer_key == ["B"]


def test_multiple_key_is_ordered_and_deduplicated():
    key = parse_answer_key("c, A ,c", {Letter.A, Letter.B, Letter.C})
    assert key == (Letter.C, Letter.A)


@pytest.mark.parametrize("overrides", [
    {"correct_answers": "C"},              # empty option
    {"correct_answers": "F"},              # not a letter we know
    {"correct_answers": ""},               # nothing recorded
    {"option_b": None},                    # A and B are mandatory
    {"question_type": "essay"},
    {"marks": 0},
])
def test_broken_rows_raise_answer_key_error(overrides):
    with pytest.raises(AnswerKeyError):
        Question.from_row(_row(**overrides))


def test_client_view_never_carries_key_or_explanation():
    q = Question.from_row(_row())
    out = client_view(q, render=lambda s: f"<p>{s}</p>")
    assert "correct_answers" not in out
    assert "explanation" not in out
    assert out["option_a"] == "x"
    assert out["option_c"] is None
    assert out["option_d"] is None
    assert out["question_html"] == "<p>Pick one</p>"


def test_apply_order_skips_stale_and_appends_new():
    qs = [Question.from_row(_row(question_id=i, question_order=i)) for i in (1, 2, 3)]
    ordered = apply_order(qs, [3, 99, "1"])
    assert [q.question_id for q in ordered] == [3, 1, 2]


def test_bank_orders_by_question_order(store):
    a = store.add_assignment()
    aid = a["assignment_id"]
    store.add_question(aid, "A", question_order=2)
    store.add_question(aid, "B", question_order=1)
    store.add_question(aid, "C", question_order=3, is_active=False)
    bank = QuestionBank(store)
    assert [q.order for q in bank.get_questions(aid)] == [1, 2]


def test_shuffle_uses_rng_and_keeps_every_question(store):
    a = store.add_assignment()
    aid = a["assignment_id"]
    for _ in range(8):
        store.add_question(aid, "A")
    bank = QuestionBank(store, rng=random.Random(4))
    order = bank.draw_order(aid, shuffle=True)
    plain = bank.draw_order(aid, shuffle=False)
    assert sorted(order) == plain
    assert order != plain
    assert [q.question_id for q in bank.get_questions(aid, order=order)] == order


def test_review_questions_include_key(store):
    a = store.add_assignment()
    store.add_question(a["assignment_id"], "A,C", question_type="multiple")
    out = QuestionBank(store).review_questions(a["assignment_id"])
    assert out[0]["correct_answers"] == ["A", "C"]
    assert out[0]["explanation"] == "because A,C"


def test_review_questions_follow_attempt_order(store):
    a = store.add_assignment()
    ids = [store.add_question(a["assignment_id"], "A")["question_id"] for _ in range(3)]
    out = QuestionBank(store).review_questions(a["assignment_id"], order=list(reversed(ids)))
    assert [q["question_id"] for q in out] == list(reversed(ids))

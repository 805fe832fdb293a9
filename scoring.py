"""Point totals, scores and percentages.

Every place that shows a score relative to a test's total goes through these
helpers so the numbers agree between the attempt result, analytics and
history views.
"""
from records import AnswerRow

# Share of total points a score must reach to count as a pass.
PASS_THRESHOLD = 0.4


def total_points(questions):
    return sum(q.points for q in questions)


def percentage(score, total):
    """Exact percentage of ``score`` out of ``total``; 0 when total is 0."""
    if not total:
        return 0.0
    return score / total * 100


def rounded_percentage(score, total):
    """``percentage`` rounded half up to an integer, using integer math."""
    if not total:
        return 0
    return (200 * score + total) // (2 * total)


def is_pass(score, total, threshold):
    return total > 0 and score >= threshold * total


def grade(questions, answers, attempt_id=None):
    """Score ``answers`` (question id -> option id) against ``questions``.

    Returns ``(score, rows)`` where ``rows`` holds one AnswerRow per answered
    question. Answers for unknown questions are dropped; options that do not
    belong to the question are kept but marked incorrect.
    """
    by_id = {q.id: q for q in questions}
    score = 0
    rows = []
    for question_id, option_id in answers.items():
        question = by_id.get(question_id)
        if question is None:
            continue
        option = question.option(option_id)
        correct = bool(option is not None and option.is_correct)
        if correct:
            score += question.points
        rows.append(AnswerRow(
            test_attempt_id=attempt_id,
            question_id=question_id,
            selected_option_id=option_id,
            is_correct=correct,
        ))
    return score, rows

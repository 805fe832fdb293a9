"""Read-only summaries over completed attempts.

``summarize`` is a pure function of a test's questions and its attempts;
``AnalyticsService`` loads those from the store and calls it. Nothing here
writes.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from errors import NotFound
from scoring import PASS_THRESHOLD, is_pass, percentage, rounded_percentage, total_points

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttemptRow:
    attempt_id: int
    student_id: int
    student_name: str
    student_roll: str
    started_at: datetime
    completed_at: Optional[datetime]
    score: Optional[int]
    percentage: Optional[int]
    passed: Optional[bool]

    @property
    def in_progress(self):
        return self.completed_at is None

    def to_dict(self):
        return {
            'attempt_id': self.attempt_id,
            'student_id': self.student_id,
            'student_name': self.student_name,
            'student_roll': self.student_roll,
            'started_at': _iso(self.started_at),
            'completed_at': _iso(self.completed_at),
            'score': self.score,
            'percentage': self.percentage,
            'passed': self.passed,
        }


@dataclass(frozen=True)
class AnalyticsSummary:
    total_points: int
    total_attempts: int
    average_score: float
    highest_score: int
    lowest_score: int
    pass_rate: float
    pass_threshold: float
    test_id: Optional[int] = None
    title: Optional[str] = None
    attempts: tuple = ()

    @property
    def average_percentage(self):
        return percentage(self.average_score, self.total_points)

    @property
    def highest_percentage(self):
        return percentage(self.highest_score, self.total_points)

    @property
    def lowest_percentage(self):
        return percentage(self.lowest_score, self.total_points)

    def to_dict(self, as_percentages=False):
        """Serializable form, with scores either in points or in percent.

        Both forms are computed from the same raw scores; rounding happens
        only here, for display.
        """
        if as_percentages:
            scores = {
                'average_score': round(self.average_percentage, 2),
                'highest_score': round(self.highest_percentage, 2),
                'lowest_score': round(self.lowest_percentage, 2),
            }
        else:
            scores = {
                'average_score': round(self.average_score, 2),
                'highest_score': self.highest_score,
                'lowest_score': self.lowest_score,
            }
        return {
            'test_id': self.test_id,
            'title': self.title,
            'unit': 'percent' if as_percentages else 'points',
            'total_points': self.total_points,
            'total_attempts': self.total_attempts,
            **scores,
            'pass_rate': round(self.pass_rate, 2),
            'pass_threshold': self.pass_threshold,
            'attempts': [a.to_dict() for a in self.attempts],
        }


@dataclass(frozen=True)
class HistoryEntry:
    attempt_id: int
    test_id: int
    test_title: str
    started_at: datetime
    completed_at: Optional[datetime]
    score: Optional[int]
    total_points: int
    percentage: Optional[int]
    passed: Optional[bool]

    def to_dict(self):
        return {
            'attempt_id': self.attempt_id,
            'test_id': self.test_id,
            'test_title': self.test_title,
            'started_at': _iso(self.started_at),
            'completed_at': _iso(self.completed_at),
            'score': self.score,
            'total_points': self.total_points,
            'percentage': self.percentage,
            'passed': self.passed,
        }


def _iso(value):
    return value.isoformat() if value is not None else None


def _attempt_row(attempt, total, threshold):
    if attempt.completed_at is None or attempt.score is None:
        return AttemptRow(
            attempt.id, attempt.student_id, attempt.student_name, attempt.student_roll,
            attempt.started_at, None, None, None, None,
        )
    return AttemptRow(
        attempt.id, attempt.student_id, attempt.student_name, attempt.student_roll,
        attempt.started_at, attempt.completed_at, attempt.score,
        rounded_percentage(attempt.score, total),
        is_pass(attempt.score, total, threshold),
    )


def summarize(questions, attempts, pass_threshold=PASS_THRESHOLD, test=None):
    """Aggregate the completed attempts among ``attempts``.

    Attempts still in progress are listed in ``attempts`` of the result but
    do not count towards any statistic. Every statistic is 0 when there are
    no completed attempts.
    """
    total = total_points(questions)
    scores = [a.score for a in attempts if a.completed_at is not None and a.score is not None]
    if scores:
        passed = sum(1 for s in scores if is_pass(s, total, pass_threshold))
        average, highest, lowest = sum(scores) / len(scores), max(scores), min(scores)
        pass_rate = passed / len(scores) * 100
    else:
        average, highest, lowest, pass_rate = 0.0, 0, 0, 0.0
    return AnalyticsSummary(
        total_points=total,
        total_attempts=len(scores),
        average_score=average,
        highest_score=highest,
        lowest_score=lowest,
        pass_rate=pass_rate,
        pass_threshold=pass_threshold,
        test_id=test.id if test is not None else None,
        title=test.title if test is not None else None,
        attempts=tuple(_attempt_row(a, total, pass_threshold) for a in attempts),
    )


class AnalyticsService:

    def __init__(self, catalog, store, identity=None, pass_threshold=PASS_THRESHOLD):
        self.catalog = catalog
        self.store = store
        self.identity = identity
        self.pass_threshold = pass_threshold

    def _check_owner(self, test):
        if self.identity is None:
            return
        user = self.identity.current_user()
        if user.role != 'teacher' or (test.created_by is not None and test.created_by != user.id):
            raise NotFound('Test not found.')

    async def compute_analytics(self, test_id):
        test = await self.catalog.get_test(test_id)
        self._check_owner(test)
        questions = await self.catalog.get_questions_with_options(test_id)
        attempts = await self.store.list_attempts(test_id)
        summary = summarize(questions, attempts, self.pass_threshold, test=test)
        logger.debug('Analytics for test %s: %d completed attempts', test_id, summary.total_attempts)
        return summary

    async def attempt_history(self, student_id):
        """All attempts of a student, newest first, scored against current totals."""
        entries = []
        tests = {}
        for attempt in await self.store.list_student_attempts(student_id):
            if attempt.test_id not in tests:
                test = await self.catalog.get_test(attempt.test_id)
                questions = await self.catalog.get_questions_with_options(attempt.test_id)
                tests[attempt.test_id] = (test, total_points(questions))
            test, total = tests[attempt.test_id]
            done = attempt.completed_at is not None and attempt.score is not None
            entries.append(HistoryEntry(
                attempt_id=attempt.id,
                test_id=test.id,
                test_title=test.title,
                started_at=attempt.started_at,
                completed_at=attempt.completed_at,
                score=attempt.score,
                total_points=total,
                percentage=rounded_percentage(attempt.score, total) if done else None,
                passed=is_pass(attempt.score, total, self.pass_threshold) if done else None,
            ))
        return entries

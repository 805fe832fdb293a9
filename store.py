"""Data access for the catalog, attempts and identity.

The engine talks to storage only through the async methods here. Each call
runs on a worker thread in its own application context and its own database
transaction, so the event loop keeps running while the database works and a
call either fully happens or raises ``PersistenceError``.
"""
import asyncio
import logging
from contextlib import contextmanager

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

import records
from errors import Blocked, NotFound, PersistenceError
from models import db, Profile, Test, Question, TestAttempt, Answer

logger = logging.getLogger(__name__)


class _SQLStore:
    def __init__(self, app):
        self.app = app

    @contextmanager
    def _scope(self, action):
        with self.app.app_context():
            try:
                yield db.session
            except SQLAlchemyError as exc:
                db.session.rollback()
                logger.error('%s failed: %s', action, exc)
                raise PersistenceError(f'Could not {action}.') from exc

    def _call(self, action, work):
        with self._scope(action) as session:
            return work(session)

    async def _run(self, action, work):
        return await asyncio.to_thread(self._call, action, work)


# ---------------------------------------------------------------------------
# Test catalog
# ---------------------------------------------------------------------------

class Catalog(_SQLStore):
    """Read-only access to tests, questions and options."""

    async def get_test(self, test_id):
        def work(session):
            test = session.get(Test, test_id)
            if test is None:
                raise NotFound('Test not found.')
            return records.Test.model_validate(test)
        return await self._run('load test', work)

    async def get_published_test(self, test_id):
        def work(session):
            test = session.get(Test, test_id)
            if test is None or not test.is_published:
                raise NotFound('Test not found or not available.')
            return records.Test.model_validate(test)
        return await self._run('load test', work)

    async def get_questions_with_options(self, test_id):
        """Questions of a test, options included, in creation order."""
        def work(session):
            questions = Question.query.filter_by(test_id=test_id).order_by(Question.id).all()
            return [records.Question.model_validate(q) for q in questions]
        return await self._run('load questions', work)

    async def list_published_tests(self):
        def work(session):
            tests = Test.query.filter_by(is_published=True).order_by(Test.created_at.desc(), Test.id.desc()).all()
            return [records.Test.model_validate(t) for t in tests]
        return await self._run('list tests', work)


# ---------------------------------------------------------------------------
# Attempt store
# ---------------------------------------------------------------------------

def _attempts(rows):
    return [records.Attempt.model_validate(a) for a in rows]


def _live_or_completed():
    # Abandoned attempts that were never finished are left out of listings.
    return or_(TestAttempt.completed_at.isnot(None), TestAttempt.abandoned_at.is_(None))


class AttemptStore(_SQLStore):

    async def get_profile(self, student_id):
        def work(session):
            profile = session.get(Profile, student_id)
            return records.Profile.model_validate(profile) if profile is not None else None
        return await self._run('load profile', work)

    async def create_attempt(self, test_id, student_id, student_name, student_roll, started_at):
        def work(session):
            attempt = TestAttempt(
                test_id=test_id,
                student_id=student_id,
                student_name=student_name,
                student_roll=student_roll,
                started_at=started_at,
            )
            session.add(attempt)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                active = TestAttempt.query.filter_by(
                    test_id=test_id, student_id=student_id, completed_at=None, abandoned_at=None,
                ).first()
                if active is None:
                    raise
                raise Blocked(
                    Blocked.ATTEMPT_IN_PROGRESS,
                    'Another attempt on this test is already in progress.',
                ) from exc
            return records.Attempt.model_validate(attempt)
        return await self._run('create attempt', work)

    async def get_attempt(self, attempt_id):
        def work(session):
            attempt = session.get(TestAttempt, attempt_id)
            return records.Attempt.model_validate(attempt) if attempt is not None else None
        return await self._run('load attempt', work)

    async def find_active_attempt(self, test_id, student_id):
        """The unfinished, not abandoned attempt of a student on a test, if any."""
        def work(session):
            attempt = TestAttempt.query.filter_by(
                test_id=test_id, student_id=student_id, completed_at=None, abandoned_at=None,
            ).first()
            return records.Attempt.model_validate(attempt) if attempt is not None else None
        return await self._run('load active attempt', work)

    async def abandon_attempt(self, attempt_id, abandoned_at):
        """Flag an unfinished attempt as abandoned. Returns False if it was not live.

        The row and its id stay in place, so a session still holding it can
        complete it later.
        """
        def work(session):
            updated = TestAttempt.query.filter_by(
                id=attempt_id, completed_at=None, abandoned_at=None,
            ).update({'abandoned_at': abandoned_at})
            session.commit()
            return bool(updated)
        return await self._run('abandon attempt', work)

    async def update_attempt_on_completion(self, attempt_id, completed_at, score):
        """Mark an attempt completed.

        The update only applies to an attempt that is still in progress;
        returns True when this call completed it and False when it already was.
        """
        def work(session):
            updated = TestAttempt.query.filter_by(id=attempt_id, completed_at=None).update(
                {'completed_at': completed_at, 'score': score, 'abandoned_at': None},
            )
            session.commit()
            if updated:
                return True
            if session.get(TestAttempt, attempt_id) is None:
                raise PersistenceError(f'Attempt {attempt_id} no longer exists.')
            return False
        return await self._run('complete attempt', work)

    async def insert_answers(self, rows):
        if not rows:
            return

        def work(session):
            session.add_all([Answer(**r.model_dump()) for r in rows])
            session.commit()
        await self._run('save answers', work)

    async def list_answers(self, attempt_id):
        def work(session):
            answers = Answer.query.filter_by(test_attempt_id=attempt_id).order_by(Answer.id).all()
            return [records.AnswerRow.model_validate(a) for a in answers]
        return await self._run('load answers', work)

    async def list_completed_attempts(self, test_id, student_id):
        def work(session):
            return _attempts(TestAttempt.query.filter(
                TestAttempt.test_id == test_id,
                TestAttempt.student_id == student_id,
                TestAttempt.completed_at.isnot(None),
            ).all())
        return await self._run('load attempts', work)

    async def list_all_completed_attempts(self, test_id):
        def work(session):
            return _attempts(TestAttempt.query.filter(
                TestAttempt.test_id == test_id,
                TestAttempt.completed_at.isnot(None),
            ).order_by(TestAttempt.completed_at.desc()).all())
        return await self._run('load attempts', work)

    async def list_attempts(self, test_id):
        """Every attempt on a test, in-progress ones first, then newest completion first."""
        def work(session):
            return _attempts(TestAttempt.query.filter(
                TestAttempt.test_id == test_id, _live_or_completed(),
            ).order_by(
                TestAttempt.completed_at.isnot(None),
                TestAttempt.completed_at.desc(),
                TestAttempt.started_at.desc(),
            ).all())
        return await self._run('load attempts', work)

    async def list_student_attempts(self, student_id):
        def work(session):
            return _attempts(TestAttempt.query.filter(
                TestAttempt.student_id == student_id, _live_or_completed(),
            ).order_by(TestAttempt.started_at.desc(), TestAttempt.id.desc()).all())
        return await self._run('load attempts', work)


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------

class StaticIdentity:
    """Identity of a caller that is known up front (CLI, tests)."""

    def __init__(self, user_id, role='student'):
        self._user = records.User(id=user_id, role=role)

    def current_user(self):
        return self._user

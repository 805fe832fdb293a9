from collections import Counter
from types import SimpleNamespace

import pytest

from app import create_app
from config import TestConfig
from engine import AttemptEngine
from errors import PersistenceError
from models import db, Profile, Test, Question, Option
from store import AttemptStore, Catalog


class RecordingStore(AttemptStore):
    """AttemptStore that counts its writes and can be told to fail some of them."""

    def __init__(self, app):
        super().__init__(app)
        self.calls = Counter()
        self.failures = Counter()

    def _record(self, name):
        self.calls[name] += 1
        if self.failures[name] > 0:
            self.failures[name] -= 1
            raise PersistenceError(f'{name} unavailable')

    async def create_attempt(self, *args, **kwargs):
        self._record('create_attempt')
        return await super().create_attempt(*args, **kwargs)

    async def insert_answers(self, rows):
        self._record('insert_answers')
        return await super().insert_answers(rows)

    async def update_attempt_on_completion(self, attempt_id, completed_at, score):
        self._record('update_attempt_on_completion')
        return await super().update_attempt_on_completion(attempt_id, completed_at, score)


@pytest.fixture
def app():
    app = create_app(TestConfig)
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


def add_test(app, points=(1, 2), duration=30, published=True, unlimited=False, owner=None):
    """Create a test whose questions are worth ``points``, each with one right and one wrong option."""
    with app.app_context():
        test = Test(title='Fractions', description='Unit 3', duration_minutes=duration,
                    is_published=published, allow_unlimited_attempts=unlimited, created_by=owner)
        db.session.add(test)
        questions = []
        for number, value in enumerate(points, start=1):
            question = Question(test=test, text=f'Question {number}', explanation='Because.', points=value)
            right = Option(text='right', is_correct=True)
            wrong = Option(text='wrong', is_correct=False)
            question.options.extend([right, wrong])
            db.session.add(question)
            questions.append((question, right, wrong))
        db.session.commit()
        return SimpleNamespace(
            id=test.id,
            questions=[SimpleNamespace(id=q.id, right=r.id, wrong=w.id, points=q.points) for q, r, w in questions],
        )


@pytest.fixture
def teacher(app):
    with app.app_context():
        profile = Profile(name='Grace', role='teacher')
        db.session.add(profile)
        db.session.commit()
        return profile.id


@pytest.fixture
def student(app):
    with app.app_context():
        profile = Profile(name='Ada', roll_number='R-17', role='student')
        db.session.add(profile)
        db.session.commit()
        return profile.id


@pytest.fixture
def quiz(app, teacher):
    return add_test(app, owner=teacher)


@pytest.fixture
def catalog(app):
    return Catalog(app)


@pytest.fixture
def store(app):
    return RecordingStore(app)


@pytest.fixture
def engine(catalog, store):
    return AttemptEngine(catalog, store, tick_seconds=0.001)

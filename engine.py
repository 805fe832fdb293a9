"""Timed quiz attempts.

``AttemptEngine.start_attempt`` checks that a student may take a test, creates
the attempt row and hands back an ``AttemptSession``. The session keeps the
student's answers in memory, runs the countdown and scores and saves the
attempt exactly once, on timeout or on submit::

    async with await engine.start_attempt(test_id, student_id) as session:
        session.set_answer(question_id, option_id)
        result = await session.submit()

Leaving the ``async with`` block cancels the countdown whatever state the
session is in.
"""
import asyncio
import contextlib
import enum
import logging
import math
from dataclasses import dataclass
from datetime import timedelta

from countdown import Countdown
from errors import Blocked, InvalidStateError, NotFound, PersistenceError, RaceError, ValidationError
from models import utcnow
from scoring import PASS_THRESHOLD, grade, is_pass, percentage, rounded_percentage, total_points

logger = logging.getLogger(__name__)


class SessionState(enum.Enum):
    UNINITIALIZED = 'uninitialized'
    ELIGIBLE_CHECK = 'eligible_check'
    ACTIVE = 'active'
    FINALIZING = 'finalizing'
    COMPLETED = 'completed'
    BLOCKED = 'blocked'
    ERRORED = 'errored'
    # Left while still active, without submitting.
    CLOSED = 'closed'


_SETTLED = (SessionState.COMPLETED, SessionState.ERRORED, SessionState.BLOCKED, SessionState.CLOSED)


class LogNotifier:
    """Delivers user-facing notifications to the log."""

    LEVELS = {'success': logging.INFO, 'info': logging.INFO, 'warning': logging.WARNING, 'error': logging.ERROR}

    def notify(self, level, title, message=None):
        text = f'{title}: {message}' if message else title
        logger.log(self.LEVELS.get(level, logging.INFO), text)


@dataclass(frozen=True)
class AttemptResult:
    attempt_id: int
    score: int
    total_points: int
    passed: bool

    @property
    def percentage(self):
        return percentage(self.score, self.total_points)

    @property
    def rounded_percentage(self):
        return rounded_percentage(self.score, self.total_points)


class AttemptEngine:
    """Starts attempts. Holds the collaborators every session needs."""

    def __init__(self, catalog, store, identity=None, notifier=None, clock=utcnow,
                 tick_seconds=1.0, pass_threshold=PASS_THRESHOLD):
        self.catalog = catalog
        self.store = store
        self.identity = identity
        self.notifier = notifier or LogNotifier()
        self.clock = clock
        self.tick_seconds = tick_seconds
        self.pass_threshold = pass_threshold

    @classmethod
    def from_app(cls, app, catalog, store, **kwargs):
        kwargs.setdefault('tick_seconds', app.config['COUNTDOWN_TICK_SECONDS'])
        kwargs.setdefault('pass_threshold', app.config['PASS_THRESHOLD'])
        return cls(catalog, store, **kwargs)

    def _resolve_student(self, student_id):
        user = self.identity.current_user() if self.identity is not None else None
        if student_id is None:
            if user is None:
                raise ValidationError('No student given.')
            return user.id
        if user is not None and user.id != student_id:
            raise ValidationError('Cannot start an attempt for another student.')
        return student_id

    async def start_attempt(self, test_id, student_id=None, on_tick=None):
        """Start a timed attempt and return its running session.

        An unfinished attempt the student left earlier is resumed with the
        time it has left instead of starting over.

        Raises ``NotFound`` for a missing or unpublished test, ``Blocked``
        when the student may not start another attempt, ``ValidationError``
        for an incomplete student profile and ``PersistenceError`` when the
        store fails.
        """
        student_id = self._resolve_student(student_id)
        session = AttemptSession(self, test_id, student_id, on_tick=on_tick)
        await session._start()
        return session

    async def available_tests(self, student_id=None):
        """Published tests the student may start now."""
        student_id = self._resolve_student(student_id)
        available = []
        for test in await self.catalog.list_published_tests():
            if test.allow_unlimited_attempts or not await self.store.list_completed_attempts(test.id, student_id):
                available.append(test)
        return available


class AttemptSession:

    def __init__(self, engine, test_id, student_id, on_tick=None):
        self.engine = engine
        self.test_id = test_id
        self.student_id = student_id
        self.state = SessionState.UNINITIALIZED
        self.test = None
        self.attempt = None
        self.questions = []
        self.current_index = 0
        self.result = None
        self.error = None
        self._answers = {}
        self._on_tick = on_tick
        self._countdown = None
        self._finalizing = None
        self._settled = asyncio.Event()
        self._resources = contextlib.AsyncExitStack()

    def __repr__(self):
        return f'<AttemptSession test={self.test_id} student={self.student_id} {self.state.value}>'

    def _transition(self, state):
        logger.debug('%r -> %s', self, state.value)
        self.state = state
        if state in _SETTLED:
            self._settled.set()
        else:
            self._settled.clear()

    # -- start ---------------------------------------------------------------

    async def _start(self):
        engine = self.engine
        self._transition(SessionState.ELIGIBLE_CHECK)
        try:
            test = await engine.catalog.get_published_test(self.test_id)
            completed = await engine.store.list_completed_attempts(self.test_id, self.student_id)
            if completed and not test.allow_unlimited_attempts:
                raise Blocked(Blocked.ALREADY_ATTEMPTED, 'You have already attempted this test.')
            questions = await engine.catalog.get_questions_with_options(self.test_id)
            profile = await engine.store.get_profile(self.student_id)
            if profile is None:
                raise ValidationError('Student profile not found.')
            if not profile.name or not profile.roll_number:
                raise ValidationError('Student profile is missing a name or roll number.')
            attempt, seconds_left = await self._open_attempt(test, profile)
        except (Blocked, NotFound, ValidationError) as exc:
            self.error = exc
            self._transition(SessionState.BLOCKED)
            logger.info('Student %s cannot start test %s: %s', self.student_id, self.test_id, exc)
            engine.notifier.notify('error', 'Cannot start test', str(exc))
            raise
        except PersistenceError as exc:
            self.error = exc
            self._transition(SessionState.ERRORED)
            engine.notifier.notify('error', 'Cannot start test', str(exc))
            raise

        self.test = test
        self.questions = questions
        self.attempt = attempt
        self.current_index = 0
        self._answers = {}
        self._countdown = Countdown(
            seconds_left,
            on_expire=self._on_timeout,
            on_tick=self._on_tick,
            tick_seconds=engine.tick_seconds,
        )
        self._transition(SessionState.ACTIVE)
        await self._resources.enter_async_context(self._countdown)
        logger.info('Attempt %s running: test %s, student %s, %d questions, %d s left',
                    attempt.id, test.id, self.student_id, len(questions), seconds_left)

    async def _open_attempt(self, test, profile):
        """Resume the student's live attempt on ``test`` or create a new one.

        Returns the attempt and the whole seconds left on it. A live attempt
        whose time has run out is flagged abandoned, not deleted, so a session
        that still holds it can save it later.
        """
        store = self.engine.store
        now = self.engine.clock()
        active = await store.find_active_attempt(test.id, self.student_id)
        if active is not None:
            left = self._seconds_left(active, test, now)
            if left > 0:
                logger.info('Resuming attempt %s', active.id)
                return active, left
            if await store.abandon_attempt(active.id, now):
                logger.info('Abandoned expired unfinished attempt %s', active.id)
        try:
            attempt = await store.create_attempt(
                test_id=test.id,
                student_id=self.student_id,
                student_name=profile.name,
                student_roll=profile.roll_number,
                started_at=now,
            )
        except Blocked:
            # Another start created the attempt after the lookup above.
            active = await store.find_active_attempt(test.id, self.student_id)
            if active is None:
                raise
            return active, self._seconds_left(active, test, self.engine.clock())
        return attempt, test.duration_minutes * 60

    @staticmethod
    def _seconds_left(attempt, test, now):
        deadline = attempt.started_at + timedelta(minutes=test.duration_minutes)
        return max(0, math.ceil((deadline - now).total_seconds()))

    # -- answering and navigation ---------------------------------------------

    @property
    def answers(self):
        return dict(self._answers)

    @property
    def time_left(self):
        return self._countdown.remaining if self._countdown is not None else 0

    @property
    def total_points(self):
        return total_points(self.questions)

    @property
    def current_question(self):
        if not self.questions:
            return None
        return self.questions[self.current_index]

    def set_answer(self, question_id, option_id):
        if self.state is not SessionState.ACTIVE:
            raise InvalidStateError(f'Answers are not accepted while the attempt is {self.state.value}.')
        self._answers[question_id] = option_id

    def go_to(self, index):
        last = max(len(self.questions) - 1, 0)
        self.current_index = min(max(index, 0), last)
        return self.current_index

    def next(self):
        return self.go_to(self.current_index + 1)

    def previous(self):
        return self.go_to(self.current_index - 1)

    # -- finalization --------------------------------------------------------

    def _claim(self, trigger):
        """Claim the right to finalize. Only one finalization runs at a time."""
        if self._finalizing is not None and not self._finalizing.done():
            raise RaceError(f'Finalization already in progress ({trigger} ignored).')
        if self.state not in (SessionState.ACTIVE, SessionState.ERRORED):
            raise InvalidStateError(f'Cannot submit an attempt that is {self.state.value}.')
        self._finalizing = asyncio.get_running_loop().create_task(self._finalize(trigger))
        return self._finalizing

    async def submit(self):
        """Score and save the attempt. Safe to call again after a failure."""
        if self.state is SessionState.COMPLETED:
            return self.result
        try:
            task = self._claim('submit')
        except RaceError as exc:
            logger.debug('%r: %s', self, exc)
            task = self._finalizing
        return await asyncio.shield(task)

    def _on_timeout(self):
        if self.state is not SessionState.ACTIVE:
            return
        self.engine.notifier.notify('warning', "Time's up", 'Submitting your answers.')
        try:
            task = self._claim('timeout')
        except RaceError as exc:
            logger.debug('%r: %s', self, exc)
            return
        task.add_done_callback(self._finalized_in_background)

    def _finalized_in_background(self, task):
        if not task.cancelled() and task.exception() is not None:
            logger.warning('Automatic submission of attempt %s failed: %s', self.attempt.id, task.exception())

    async def _finalize(self, trigger):
        self._transition(SessionState.FINALIZING)
        await self._countdown.aclose()
        try:
            result = await self._persist()
        except Exception as exc:
            self.error = exc
            self._transition(SessionState.ERRORED)
            logger.error('Saving attempt %s (%s) failed: %s', self.attempt.id, trigger, exc)
            self.engine.notifier.notify('error', 'Error submitting test', str(exc))
            raise
        self.result = result
        self.error = None
        self._transition(SessionState.COMPLETED)
        logger.info('Attempt %s completed (%s): %d/%d', result.attempt_id, trigger, result.score, result.total_points)
        self.engine.notifier.notify('success', 'Test submitted successfully')
        return result

    async def _persist(self):
        engine = self.engine
        attempt_id = self.attempt.id
        # Correctness comes from the catalog as it is now, not as it was loaded.
        questions = await engine.catalog.get_questions_with_options(self.test_id)
        score, rows = grade(questions, self._answers, attempt_id)
        total = total_points(questions)

        stored = await engine.store.get_attempt(attempt_id)
        if stored is None:
            raise PersistenceError(f'Attempt {attempt_id} no longer exists.')
        if not stored.is_completed:
            saved = {a.question_id for a in await engine.store.list_answers(attempt_id)}
            await engine.store.insert_answers([r for r in rows if r.question_id not in saved])
            if not await engine.store.update_attempt_on_completion(attempt_id, engine.clock(), score):
                stored = await engine.store.get_attempt(attempt_id)
        if stored.is_completed:
            score = stored.score

        return AttemptResult(
            attempt_id=attempt_id,
            score=score,
            total_points=total,
            passed=is_pass(score, total, engine.pass_threshold),
        )

    # -- lifetime ------------------------------------------------------------

    async def wait(self):
        """Wait until the attempt is settled and return its result.

        Raises the finalization error if saving failed, or
        ``InvalidStateError`` if the session was closed without submitting.
        """
        await self._settled.wait()
        if self.state is SessionState.COMPLETED:
            return self.result
        if self.error is not None:
            raise self.error
        raise InvalidStateError(f'Attempt was {self.state.value} without a result.')

    async def close(self):
        """Leave the session. Stops the countdown; an in-flight save is awaited."""
        if self.state is SessionState.ACTIVE:
            self._transition(SessionState.CLOSED)
            logger.info('Attempt %s left without submitting', self.attempt.id)
        await self._resources.aclose()
        if self._finalizing is not None and not self._finalizing.done():
            await asyncio.wait([self._finalizing])

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

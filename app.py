import asyncio
import contextlib
import csv
import io
import logging
from functools import wraps

import click
from flask import Flask, Response, current_app, jsonify, request, session

from analytics import AnalyticsService
from config import Config
from engine import AttemptEngine, SessionState
from errors import Blocked, NotFound, PersistenceError, QuizError, ValidationError
from models import db, Profile, Test, Question, Option
from store import AttemptStore, Catalog, StaticIdentity

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    NotFound: 404,
    Blocked: 403,
    ValidationError: 400,
    PersistenceError: 503,
}

OPTION_KEYS = ('a', 'b', 'c', 'd')


def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)
    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    db.init_app(app)
    app.extensions['catalog'] = Catalog(app)
    app.extensions['attempt_store'] = AttemptStore(app)

    with app.app_context():
        db.create_all()

    app.register_error_handler(QuizError, _quiz_error)
    _register_student_routes(app)
    _register_teacher_routes(app)
    _register_commands(app)
    return app


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _catalog():
    return current_app.extensions['catalog']


def _store():
    return current_app.extensions['attempt_store']


def _analytics(identity=None):
    return AnalyticsService(_catalog(), _store(), identity=identity,
                            pass_threshold=current_app.config['PASS_THRESHOLD'])


def _run(coro):
    return asyncio.run(coro)


def _quiz_error(exc):
    status = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500)
    body = {'error': str(exc), 'kind': exc.kind}
    if isinstance(exc, Blocked):
        body['reason'] = exc.reason
    if isinstance(exc, PersistenceError):
        body['retryable'] = True
    return jsonify(body), status


def teacher_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        if not session.get('is_teacher'):
            return jsonify({'error': 'Teacher login required.'}), 401
        return f(*args, **kwargs)
    return decorated


def student_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        if not session.get('student_id'):
            return jsonify({'error': 'Student login required.'}), 401
        return f(*args, **kwargs)
    return decorated


def _form_data():
    """The JSON object or form fields of a request; None for any other JSON body."""
    data = request.get_json(silent=True)
    if data is None:
        return request.form
    return data if isinstance(data, dict) else None


def _test_dict(test):
    return {
        'id': test.id,
        'title': test.title,
        'description': test.description,
        'duration_minutes': test.duration_minutes,
        'allow_unlimited_attempts': test.allow_unlimited_attempts,
    }


# ---------------------------------------------------------------------------
# Student Routes
# ---------------------------------------------------------------------------

def _register_student_routes(app):

    @app.route('/student/login', methods=['POST'])
    def student_login():
        data = _form_data()
        if data is None:
            return jsonify({'error': 'Expected a JSON object or form fields.'}), 400
        try:
            student_id = int(data.get('student_id', ''))
        except (TypeError, ValueError):
            student_id = None
        profile = db.session.get(Profile, student_id) if student_id is not None else None
        if profile is None or profile.role != 'student':
            return jsonify({'error': 'Unknown student.'}), 400
        session['student_id'] = profile.id
        return jsonify({'id': profile.id, 'name': profile.name, 'roll_number': profile.roll_number})

    @app.route('/student/logout', methods=['POST'])
    def student_logout():
        session.pop('student_id', None)
        return jsonify({'ok': True})

    @app.route('/student/tests')
    @student_required
    def student_tests():
        engine = AttemptEngine.from_app(current_app, _catalog(), _store())
        tests = _run(engine.available_tests(session['student_id']))
        return jsonify([_test_dict(t) for t in tests])

    @app.route('/student/history')
    @student_required
    def student_history():
        entries = _run(_analytics().attempt_history(session['student_id']))
        return jsonify([e.to_dict() for e in entries])


# ---------------------------------------------------------------------------
# Teacher Routes
# ---------------------------------------------------------------------------

def _register_teacher_routes(app):

    @app.route('/teacher/login', methods=['POST'])
    def teacher_login():
        data = _form_data()
        if data is None:
            return jsonify({'error': 'Expected a JSON object or form fields.'}), 400
        if data.get('password', '') == current_app.config['TEACHER_PASSWORD']:
            session['is_teacher'] = True
            return jsonify({'ok': True})
        logger.warning('Failed teacher login from %s', request.remote_addr)
        return jsonify({'error': 'Incorrect password.'}), 401

    @app.route('/teacher/logout', methods=['POST'])
    def teacher_logout():
        session.pop('is_teacher', None)
        return jsonify({'ok': True})

    @app.route('/teacher/tests/<int:test_id>/analytics')
    @teacher_required
    def teacher_analytics(test_id):
        as_percentages = request.args.get('unit') == 'percent'
        summary = _run(_analytics().compute_analytics(test_id))
        return jsonify(summary.to_dict(as_percentages=as_percentages))

    @app.route('/teacher/tests/<int:test_id>/results.csv')
    @teacher_required
    def teacher_results_csv(test_id):
        summary = _run(_analytics().compute_analytics(test_id))
        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow(['name', 'roll', 'score', 'total', 'percentage', 'passed', 'started_at', 'completed_at'])
        for row in summary.attempts:
            if row.in_progress:
                continue
            writer.writerow([
                row.student_name, row.student_roll, row.score, summary.total_points,
                f'{row.percentage}%', 'YES' if row.passed else 'NO',
                row.started_at.strftime('%Y-%m-%d %H:%M'), row.completed_at.strftime('%Y-%m-%d %H:%M'),
            ])
        return Response(
            output.getvalue(),
            mimetype='text/csv',
            headers={'Content-Disposition': f'attachment; filename=results-{test_id}.csv'},
        )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def import_questions(test, stream):
    """Add the questions of a CSV stream to ``test``. Returns how many were added.

    Columns: text, explanation, points, option_a..option_d, correct (a-d).
    Rows with a missing question, fewer than two options, a correct letter
    that names no option or points below 1 are skipped.
    """
    count = 0
    for row in csv.DictReader(stream):
        text = (row.get('text') or '').strip()
        correct = (row.get('correct') or '').strip().lower()
        options = [(key, (row.get(f'option_{key}') or '').strip()) for key in OPTION_KEYS]
        options = [(key, value) for key, value in options if value]
        try:
            points = int((row.get('points') or '1').strip())
        except ValueError:
            continue
        if not text or len(options) < 2 or points < 1 or correct not in dict(options):
            continue
        question = Question(test=test, text=text, explanation=(row.get('explanation') or '').strip() or None,
                            points=points)
        for key, value in options:
            question.options.append(Option(text=value, is_correct=(key == correct)))
        db.session.add(question)
        count += 1
    return count


def _register_commands(app):

    @app.cli.command('init-db')
    def init_db():
        """Create the database tables."""
        db.create_all()
        click.echo('Database ready.')

    @app.cli.command('add-profile')
    @click.argument('name')
    @click.option('--roll', default=None, help='Roll number (students).')
    @click.option('--role', type=click.Choice(['student', 'teacher']), default='student')
    def add_profile(name, roll, role):
        """Create a student or teacher profile."""
        profile = Profile(name=name, roll_number=roll, role=role)
        db.session.add(profile)
        db.session.commit()
        click.echo(f'Profile {profile.id} created.')

    @app.cli.command('import-questions')
    @click.argument('csv_file', type=click.File('r', encoding='utf-8'))
    @click.option('--title', required=True)
    @click.option('--description', default=None)
    @click.option('--duration', type=click.IntRange(min=1), default=30, help='Minutes.')
    @click.option('--publish/--draft', default=False)
    @click.option('--unlimited/--single', default=False, help='Allow unlimited attempts.')
    @click.option('--owner', type=int, default=None, help='Teacher profile id.')
    def import_questions_command(csv_file, title, description, duration, publish, unlimited, owner):
        """Create a test from a CSV file of questions."""
        test = Test(title=title, description=description, duration_minutes=duration,
                    is_published=publish, allow_unlimited_attempts=unlimited, created_by=owner)
        db.session.add(test)
        count = import_questions(test, csv_file)
        db.session.commit()
        logger.info('Imported %d questions into test %s', count, test.id)
        click.echo(f'Test {test.id} created with {count} questions.')

    @app.cli.command('take-test')
    @click.argument('test_id', type=int)
    @click.argument('student_id', type=int)
    def take_test(test_id, student_id):
        """Take a test in the terminal against the clock."""
        engine = AttemptEngine.from_app(
            current_app, _catalog(), _store(), identity=StaticIdentity(student_id),
        )
        try:
            _run(_take_test(engine, test_id))
        except QuizError as exc:
            raise click.ClickException(str(exc)) from exc


def _show_question(session):
    question = session.current_question
    if question is None:
        click.echo('This test has no questions. Type "s" to submit.')
        return
    chosen = session.answers.get(question.id)
    click.echo(f'\nQuestion {session.current_index + 1}/{len(session.questions)} '
               f'({question.points} pt) - {session.time_left}s left')
    click.echo(question.text)
    for number, option in enumerate(question.options, start=1):
        marker = '*' if option.id == chosen else ' '
        click.echo(f' {marker}{number}. {option.text}')


async def _take_test(engine, test_id, read=input):
    """Run one attempt in the terminal. ``read(prompt)`` returns the next line typed."""
    loop = asyncio.get_running_loop()
    async with await engine.start_attempt(test_id) as attempt:
        click.echo(f'{attempt.test.title}: {len(attempt.questions)} questions, '
                   f'{attempt.test.duration_minutes} minutes.')
        click.echo('Type an option number, "n"/"p" to move, "s" to submit, "q" to quit.')
        reply = None
        while attempt.state in (SessionState.ACTIVE, SessionState.ERRORED):
            if attempt.state is SessionState.ACTIVE:
                _show_question(attempt)
            else:
                click.echo(f'Your answers could not be saved ({attempt.error}). Type "s" to try again.')
            if reply is None:
                reply = loop.run_in_executor(None, read, '> ')
            waiting = {reply}
            settled = None
            if attempt.state is SessionState.ACTIVE:
                settled = asyncio.ensure_future(attempt.wait())
                waiting.add(settled)
            done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
            if settled is not None:
                if settled in done:
                    # The countdown ran out and submitted the attempt.
                    if settled.exception() is None:
                        click.echo("\nTime's up, your answers were submitted.")
                    continue
                settled.cancel()

            try:
                command = reply.result().strip().lower()
            except EOFError:
                command = 'q'
            reply = None
            question = attempt.current_question
            if command == 'q':
                break
            elif command == 's':
                with contextlib.suppress(PersistenceError):
                    await attempt.submit()
            elif attempt.state is not SessionState.ACTIVE:
                click.echo('Unknown command.')
            elif command == 'n':
                attempt.next()
            elif command == 'p':
                attempt.previous()
            elif command.isdigit() and question is not None and 1 <= int(command) <= len(question.options):
                attempt.set_answer(question.id, question.options[int(command) - 1].id)
                attempt.next()
            else:
                click.echo('Unknown command.')

        if attempt.state is SessionState.COMPLETED:
            result = attempt.result
            click.echo(f'Score: {result.score}/{result.total_points} ({result.rounded_percentage}%) '
                       f'- {"passed" if result.passed else "not passed"}')
        else:
            click.echo('Left without submitting.')
        if reply is not None:
            click.echo('Press Enter to finish.')


if __name__ == '__main__':
    create_app().run(debug=True)

import asyncio
import io
import queue

import pytest

from app import _take_test, import_questions
from conftest import add_test
from engine import AttemptEngine
import models
from models import db
from store import StaticIdentity


@pytest.fixture
def client(app):
    return app.test_client()


def _login_teacher(client):
    return client.post('/teacher/login', json={'password': 'teacher123'})


def _finish(app, catalog, store, quiz, student, answers):
    engine = AttemptEngine.from_app(app, catalog, store)

    async def run():
        async with await engine.start_attempt(quiz.id, student) as session:
            for question_id, option_id in answers:
                session.set_answer(question_id, option_id)
            return await session.submit()

    return asyncio.run(run())


def test_analytics_requires_teacher(client, quiz):
    assert client.get(f'/teacher/tests/{quiz.id}/analytics').status_code == 401
    assert client.post('/teacher/login', json={'password': 'nope'}).status_code == 401
    assert client.get(f'/teacher/tests/{quiz.id}/analytics').status_code == 401


def test_analytics_in_points_and_percent(app, client, catalog, store, quiz, student):
    q1, q2 = quiz.questions
    _finish(app, catalog, store, quiz, student, [(q1.id, q1.right), (q2.id, q2.wrong)])
    _login_teacher(client)

    points = client.get(f'/teacher/tests/{quiz.id}/analytics').get_json()
    assert points['total_points'] == 3
    assert points['total_attempts'] == 1
    assert points['average_score'] == 1
    assert points['pass_threshold'] == 0.4
    assert points['attempts'][0]['student_name'] == 'Ada'

    percent = client.get(f'/teacher/tests/{quiz.id}/analytics?unit=percent').get_json()
    assert percent['average_score'] == 33.33
    assert percent['attempts'][0]['percentage'] == 33


def test_analytics_for_unknown_test_is_404(client):
    _login_teacher(client)
    response = client.get('/teacher/tests/999/analytics')
    assert response.status_code == 404
    assert response.get_json()['kind'] == 'not_found'


def test_results_csv(app, client, catalog, store, quiz, student):
    q1, q2 = quiz.questions
    _finish(app, catalog, store, quiz, student, [(q1.id, q1.right), (q2.id, q2.right)])
    _login_teacher(client)
    response = client.get(f'/teacher/tests/{quiz.id}/results.csv')
    assert response.mimetype == 'text/csv'
    lines = response.get_data(as_text=True).splitlines()
    assert lines[0] == 'name,roll,score,total,percentage,passed,started_at,completed_at'
    assert lines[1].startswith('Ada,R-17,3,3,100%,YES,')
    assert len(lines) == 2


def test_student_login_history_and_tests(app, client, catalog, store, quiz, student, teacher):
    assert client.get('/student/history').status_code == 401
    assert client.post('/student/login', json={'student_id': teacher}).status_code == 400
    assert client.post('/student/login', json={'student_id': 'x'}).status_code == 400

    response = client.post('/student/login', json={'student_id': student})
    assert response.get_json()['roll_number'] == 'R-17'
    assert [t['id'] for t in client.get('/student/tests').get_json()] == [quiz.id]
    assert client.get('/student/history').get_json() == []

    _finish(app, catalog, store, quiz, student, [])
    assert client.get('/student/tests').get_json() == []
    history = client.get('/student/history').get_json()
    assert [(h['test_id'], h['score'], h['percentage'], h['passed']) for h in history] == [(quiz.id, 0, 0, False)]


def test_import_questions_skips_bad_rows(app):
    data = io.StringIO(
        'text,explanation,points,option_a,option_b,option_c,option_d,correct\n'
        'Two plus two?,Basic sums,2,3,4,5,,b\n'
        'No options?,,1,only,,,,a\n'
        'Bad letter?,,1,x,y,,,d\n'
        'Bad points?,,zero,x,y,,,a\n'
        ',,1,x,y,,,a\n'
        'Capital?,,,Paris,Rome,,,A\n'
    )
    with app.app_context():
        test = models.Test(title='Imported', duration_minutes=10)
        db.session.add(test)
        assert import_questions(test, data) == 2
        db.session.commit()
        first, second = test.questions
        assert (first.text, first.points, first.explanation) == ('Two plus two?', 2, 'Basic sums')
        assert [(o.text, o.is_correct) for o in first.options] == [('3', False), ('4', True), ('5', False)]
        assert second.points == 1
        assert [o.is_correct for o in second.options] == [True, False]


def test_cli_creates_test_and_profile(app, tmp_path):
    source = tmp_path / 'questions.csv'
    source.write_text('text,points,option_a,option_b,correct\nPick a,1,a,b,a\n', encoding='utf-8')
    runner = app.test_cli_runner()

    result = runner.invoke(args=['add-profile', 'Ada', '--roll', 'R-1'])
    assert 'Profile 1 created.' in result.output
    result = runner.invoke(args=['import-questions', str(source), '--title', 'Quick', '--duration', '5', '--publish'])
    assert result.exit_code == 0, result.output
    assert 'created with 1 questions' in result.output
    with app.app_context():
        test = models.Test.query.filter_by(title='Quick').one()
        assert test.is_published and test.duration_minutes == 5


def test_login_rejects_a_json_array(client):
    assert client.post('/student/login', json=[1]).status_code == 400
    assert client.post('/teacher/login', json=['teacher123']).status_code == 400


def _typed(*lines, idle=1.0):
    """A terminal reader that returns ``lines`` in turn, then quits after ``idle`` seconds."""
    replies = queue.Queue()
    for line in lines:
        replies.put(line)

    def read(prompt):
        try:
            return replies.get(timeout=idle)
        except queue.Empty:
            return 'q'
    return read


def test_cli_take_test_prints_the_score(app, quiz, student):
    runner = app.test_cli_runner()
    result = runner.invoke(args=['take-test', str(quiz.id), str(student)], input='1\n1\ns\n')
    assert result.exit_code == 0, result.output
    assert 'Fractions: 2 questions, 30 minutes.' in result.output
    assert 'Score: 3/3 (100%) - passed' in result.output


def test_cli_take_test_quits_at_end_of_input(app, quiz, student):
    runner = app.test_cli_runner()
    result = runner.invoke(args=['take-test', str(quiz.id), str(student)], input='2\n')
    assert result.exit_code == 0, result.output
    assert 'Left without submitting.' in result.output


def test_cli_take_test_for_unknown_test_fails(app, student):
    result = app.test_cli_runner().invoke(args=['take-test', '999', str(student)])
    assert result.exit_code != 0
    assert 'Test not found' in result.output


def test_take_test_submits_when_time_runs_out(app, catalog, store, student, capsys):
    quiz = add_test(app, duration=1)
    engine = AttemptEngine(catalog, store, identity=StaticIdentity(student), tick_seconds=0.001)
    asyncio.run(_take_test(engine, quiz.id, read=_typed('1')))

    out = capsys.readouterr().out
    assert "Time's up, your answers were submitted." in out
    assert 'Score: 1/3 (33%) - not passed' in out
    assert 'Press Enter to finish.' in out


def test_take_test_offers_a_retry_after_a_failed_save(app, catalog, store, quiz, student, capsys):
    store.failures['update_attempt_on_completion'] = 1
    engine = AttemptEngine(catalog, store, identity=StaticIdentity(student), tick_seconds=60)
    asyncio.run(_take_test(engine, quiz.id, read=_typed('1', 's', 's')))

    out = capsys.readouterr().out
    assert 'Your answers could not be saved' in out
    assert 'Score: 1/3 (33%) - not passed' in out
    assert store.calls['update_attempt_on_completion'] == 2

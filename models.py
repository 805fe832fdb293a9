from datetime import datetime, timezone
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def utcnow():
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Profile(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    roll_number = db.Column(db.String(50), nullable=True)
    email = db.Column(db.String(200), nullable=True)
    role = db.Column(db.String(20), nullable=False, default='student')  # 'student' or 'teacher'
    created_at = db.Column(db.DateTime, default=utcnow)


class Test(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    duration_minutes = db.Column(db.Integer, nullable=False, default=30)
    is_published = db.Column(db.Boolean, nullable=False, default=False)
    allow_unlimited_attempts = db.Column(db.Boolean, nullable=False, default=False)
    created_by = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    questions = db.relationship(
        'Question', backref='test', lazy=True,
        cascade='all, delete-orphan', order_by='Question.id',
    )
    attempts = db.relationship('TestAttempt', backref='test', lazy=True, cascade='all, delete-orphan')

    __table_args__ = (
        db.CheckConstraint('duration_minutes > 0', name='ck_test_duration_positive'),
    )


class Question(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    test_id = db.Column(db.Integer, db.ForeignKey('test.id'), nullable=False)
    text = db.Column(db.Text, nullable=False)
    explanation = db.Column(db.Text, nullable=True)
    points = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime, default=utcnow)

    options = db.relationship(
        'Option', backref='question', lazy=True,
        cascade='all, delete-orphan', order_by='Option.id',
    )

    __table_args__ = (
        db.CheckConstraint('points >= 1', name='ck_question_points_positive'),
    )


class Option(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    question_id = db.Column(db.Integer, db.ForeignKey('question.id'), nullable=False)
    text = db.Column(db.String(500), nullable=False)
    is_correct = db.Column(db.Boolean, nullable=False, default=False)


class TestAttempt(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    test_id = db.Column(db.Integer, db.ForeignKey('test.id'), nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False)
    student_name = db.Column(db.String(150), nullable=False)
    student_roll = db.Column(db.String(50), nullable=False)
    started_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)
    score = db.Column(db.Integer, nullable=True)
    # Set when a later start finds the attempt out of time and unfinished.
    abandoned_at = db.Column(db.DateTime, nullable=True)

    answers = db.relationship('Answer', backref='attempt', lazy=True, cascade='all, delete-orphan')

    # One live attempt per student and test.
    __table_args__ = (
        db.Index(
            'uq_active_attempt', 'test_id', 'student_id', unique=True,
            sqlite_where=db.text('completed_at IS NULL AND abandoned_at IS NULL'),
            postgresql_where=db.text('completed_at IS NULL AND abandoned_at IS NULL'),
        ),
    )


class Answer(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    test_attempt_id = db.Column(db.Integer, db.ForeignKey('test_attempt.id'), nullable=False)
    question_id = db.Column(db.Integer, nullable=False)
    selected_option_id = db.Column(db.Integer, nullable=True)
    is_correct = db.Column(db.Boolean, nullable=False, default=False)

    __table_args__ = (
        db.UniqueConstraint('test_attempt_id', 'question_id', name='uq_answer_per_question'),
    )

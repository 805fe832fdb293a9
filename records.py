"""Plain, detached copies of catalog and attempt rows.

The store hands these out instead of ORM instances so that a running attempt
never holds on to a database session. Each is built straight from its row
with ``Model.model_validate(row)``.
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class Record(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)


class User(Record):
    id: Optional[int]
    role: str = 'student'


class Profile(Record):
    id: int
    name: str
    roll_number: Optional[str] = None
    role: str = 'student'


class Test(Record):
    id: int
    title: str
    description: Optional[str] = None
    duration_minutes: int
    is_published: bool
    allow_unlimited_attempts: bool
    created_by: Optional[int] = None


class Option(Record):
    id: int
    question_id: int
    text: str
    is_correct: bool


class Question(Record):
    id: int
    test_id: int
    text: str
    explanation: Optional[str] = None
    points: int
    options: tuple[Option, ...] = ()

    def option(self, option_id):
        for opt in self.options:
            if opt.id == option_id:
                return opt
        return None


class Attempt(Record):
    id: int
    test_id: int
    student_id: int
    student_name: str
    student_roll: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    score: Optional[int] = None
    abandoned_at: Optional[datetime] = None

    @property
    def is_completed(self):
        return self.completed_at is not None


class AnswerRow(Record):
    test_attempt_id: Optional[int] = None
    question_id: int
    selected_option_id: Optional[int] = None
    is_correct: bool

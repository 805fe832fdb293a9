import os
from dotenv import load_dotenv

import scoring

load_dotenv()


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'change-me-in-production')
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///quiz.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    TEACHER_PASSWORD = os.environ.get('TEACHER_PASSWORD', 'teacher123')
    PASS_THRESHOLD = float(os.environ.get('PASS_THRESHOLD', scoring.PASS_THRESHOLD))
    COUNTDOWN_TICK_SECONDS = float(os.environ.get('COUNTDOWN_TICK_SECONDS', '1.0'))
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = 'test'
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    COUNTDOWN_TICK_SECONDS = 0.01

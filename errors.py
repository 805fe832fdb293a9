class QuizError(Exception):
    """Base class for every failure the attempt lifecycle reports."""

    kind = 'error'


class NotFound(QuizError):
    kind = 'not_found'


class Blocked(QuizError):
    """The student may not start a new attempt on this test."""

    kind = 'blocked'

    ALREADY_ATTEMPTED = 'already_attempted'
    ATTEMPT_IN_PROGRESS = 'attempt_in_progress'

    def __init__(self, reason, message=None):
        self.reason = reason
        super().__init__(message or reason.replace('_', ' '))


class ValidationError(QuizError):
    kind = 'validation'


class InvalidStateError(ValidationError):
    """An operation was called in a lifecycle state that does not accept it."""

    kind = 'invalid_state'


class PersistenceError(QuizError):
    """A store read or write failed. Callers may retry."""

    kind = 'persistence'
    retryable = True


class RaceError(QuizError):
    """A second finalization was triggered while one had already been claimed."""

    kind = 'race'

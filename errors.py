"""Request failures reported to the app as JSON error bodies."""


class StrunError(Exception):
    status_code = 500
    message = 'Internal error'

    def __init__(self, message=None, **details):
        super().__init__(message or self.message)
        self.message = message or self.message
        self.details = details

    def to_dict(self):
        return {'error': self.message, **self.details}


class InvalidRequest(StrunError):
    status_code = 400
    message = 'Invalid request'


class Unauthorized(StrunError):
    status_code = 401
    message = 'Unauthorized'


class InvalidToken(StrunError):
    status_code = 400
    message = 'Invalid token format'


class TokenExpired(StrunError):
    status_code = 400
    message = 'Token expired'


class TaskNotFound(StrunError):
    status_code = 404
    message = 'Task not found'


class InvalidSignature(StrunError):
    status_code = 400
    message = 'Invalid signature'


class OutOfRange(StrunError):
    status_code = 400
    message = 'Out of range'


class AlreadyClaimed(StrunError):
    status_code = 400
    message = 'Task already claimed recently'


class TaskUnavailable(StrunError):
    status_code = 400
    message = 'Task is not available'


class DailyLimitReached(StrunError):
    status_code = 429
    message = 'Daily acceptance limit reached'


class ProofPersistenceFailed(StrunError):
    message = 'Failed to persist claim proof'


class ClaimPersistenceFailed(StrunError):
    message = 'Failed to record claim'


class PhotoVerificationFailed(StrunError):
    message = 'Verification failed. Please try again later.'

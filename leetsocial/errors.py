"""
Application error taxonomy.

Services raise these; the HTTP layer renders them through the exception
handlers and the realtime gateway turns them into ``error`` events.
"""
from typing import Any, Optional


class AppError(Exception):
    status_code = 500
    code = 'INTERNAL_SERVER_ERROR'
    message = 'Internal server error'

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None, details: Any = None):
        self.message = message or self.message
        self.code = code or self.code
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {'success': False, 'error': self.message, 'code': self.code}
        if self.details is not None:
            body['details'] = self.details
        return body


class Unauthorized(AppError):
    status_code = 401
    code = 'UNAUTHORIZED'
    message = 'Unauthorized'


class ValidationFailed(AppError):
    status_code = 400
    code = 'VALIDATION_ERROR'
    message = 'Validation failed'


class SelfFriendRequest(ValidationFailed):
    code = 'SELF_REQUEST'
    message = 'Cannot send friend request to yourself'


class Forbidden(AppError):
    status_code = 403
    code = 'FORBIDDEN'
    message = 'Forbidden'


class NotFound(AppError):
    status_code = 404
    code = 'NOT_FOUND'
    message = 'Resource not found'


class Conflict(AppError):
    status_code = 409
    code = 'CONFLICT'
    message = 'Conflict'


class RateLimited(AppError):
    status_code = 429
    code = 'RATE_LIMITED'
    message = 'Too many requests. Please try again later.'

    def __init__(self, retry_after: int = 0, **kwargs):
        super().__init__(**kwargs)
        self.retry_after = retry_after

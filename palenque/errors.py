# palenque/errors.py
"""
Service-layer errors.

Services raise these instead of returning HTTP responses; the app factory
registers a handler that renders them as JSON with the matching status code.
"""


class ServiceError(Exception):
    status_code = 400

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {'message': self.message, 'status_code': self.status_code}


class BadRequestError(ServiceError):
    status_code = 400


class ForbiddenError(ServiceError):
    status_code = 403


class NotFoundError(ServiceError):
    status_code = 404


class ConflictError(ServiceError):
    status_code = 409

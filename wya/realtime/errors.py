"""Error taxonomy shared by the realtime core and its transports.

Subclasses set ``code`` and ``status_code`` at the class level; callers
provide a human-readable ``message``. Store details never go into the
message.
"""


class RelayError(Exception):
    code = 'relay_error'
    status_code = 500

    def __init__(self, message, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self):
        body = {'code': self.code, 'message': self.message}
        body.update(self.extra)
        return body


class Unauthenticated(RelayError):
    code = 'unauthenticated'
    status_code = 401


class Forbidden(RelayError):
    code = 'forbidden'
    status_code = 403


class NotFound(RelayError):
    code = 'not_found'
    status_code = 404


class InvalidMessage(RelayError):
    code = 'invalid_message'
    status_code = 400


class InvalidSignal(RelayError):
    code = 'invalid_signal'
    status_code = 400


class InvalidPresence(RelayError):
    code = 'invalid_presence'
    status_code = 400


class Conflict(RelayError):
    code = 'conflict'
    status_code = 409


class RateLimited(RelayError):
    code = 'rate_limited'
    status_code = 429


class DeliveryFailed(RelayError):
    code = 'delivery_failed'
    status_code = 503

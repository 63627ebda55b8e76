"""Domain errors raised by lms services and translated to JSON by the views."""


class StratumError(Exception):
    code = "error"
    status = 400

    def __init__(self, code: str = "", message: str = ""):
        self.code = code or self.code
        self.message = message or self.code
        super().__init__(self.message)


class ValidationFailed(StratumError):
    code = "invalid_request"
    status = 400


class PermissionDenied(StratumError):
    code = "forbidden"
    status = 403


class NotFound(StratumError):
    code = "not_found"
    status = 404


class Conflict(StratumError):
    code = "conflict"
    status = 409

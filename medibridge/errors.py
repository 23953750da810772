class ApiError(Exception):
    """Error that maps straight onto a JSON response and status code."""

    status = 400

    def __init__(self, msg, status=None):
        super().__init__(msg)
        self.msg = msg
        if status is not None:
            self.status = status


class BadRequest(ApiError):
    status = 400


class Unauthorized(ApiError):
    status = 401


class Forbidden(ApiError):
    status = 403


class NotFound(ApiError):
    status = 404


class Conflict(ApiError):
    status = 409

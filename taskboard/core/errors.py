"""Domain errors raised by services and translated to the error envelope in main."""


class TaskboardError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None, field: str | None = None):
        self.message = message or self.default_message
        self.field = field
        super().__init__(self.message)


class InvalidInput(TaskboardError):
    status_code = 400
    default_message = "Invalid input"


class Unauthorized(TaskboardError):
    status_code = 401
    default_message = "Not authenticated"


class Forbidden(TaskboardError):
    status_code = 403
    default_message = "Forbidden"


class NotFound(TaskboardError):
    status_code = 404
    default_message = "Task not found"


class VersionConflict(TaskboardError):
    status_code = 409
    default_message = "Task version does not match"


class RateLimited(TaskboardError):
    status_code = 429
    default_message = "Too many requests, please try again later"


class StoreUnavailable(TaskboardError):
    status_code = 503
    default_message = "Ephemeral store unavailable"

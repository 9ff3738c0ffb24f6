from __future__ import annotations


class ApiError(Exception):
    def __init__(self, *, status_code: int, code: str, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class PlanLimitError(ApiError):
    """Raised when the user's plan does not allow the requested channel."""

    def __init__(self, message: str) -> None:
        super().__init__(status_code=403, code="PLAN_LIMIT_REACHED", message=message)


class NotFoundError(ApiError):
    def __init__(self, message: str) -> None:
        super().__init__(status_code=404, code="NOT_FOUND", message=message)

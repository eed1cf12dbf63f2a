from __future__ import annotations


class EvaluationError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class EvaluationNotFoundError(EvaluationError):
    status_code = 404


class PermissionDeniedError(EvaluationError):
    status_code = 403


class InvalidInputError(EvaluationError):
    status_code = 400


class InvalidTransitionError(EvaluationError):
    """The operation is illegal in the run's current state."""

    status_code = 409


class EvaluationTimeoutError(EvaluationError):
    def __init__(self, message: str = "Evaluation exceeded timeout limit"):
        super().__init__(message)


class ModelInvocationError(Exception):
    is_rate_limit = False

    def __init__(self, message: str, *, response_time_ms: int = 0, code: str = "ModelInvocationError"):
        super().__init__(message)
        self.message = message
        self.response_time_ms = response_time_ms
        self.code = code


class ModelRateLimitError(ModelInvocationError):
    is_rate_limit = True


_RATE_LIMIT_MARKERS = ("rate limit", "throttl", "too many requests")


def is_rate_limit_error(error: BaseException | None) -> bool:
    if error is None:
        return False
    if getattr(error, "is_rate_limit", False):
        return True
    text = str(error).lower()
    return any(marker in text for marker in _RATE_LIMIT_MARKERS)

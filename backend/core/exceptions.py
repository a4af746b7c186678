"""Custom exceptions for the todo plan engine.

Step-level errors fall into the categories the executor reacts to:

- validation (unknown action, missing parameter): fatal to the step, never retried
- safety violation (bulk guard): fatal to the step only
- action execution failure: eligible for one fallback attempt
"""


class PlanEngineError(Exception):
    """Base exception for the plan engine."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code.

        Args:
            message: Exception message
            status_code: HTTP status code
        """
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundError(PlanEngineError):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize NotFoundError with 404 status code."""
        super().__init__(message, 404)


class ConflictError(PlanEngineError):
    """Resource conflict exception."""

    def __init__(self, message: str = "Resource conflict"):
        """Initialize ConflictError with 409 status code."""
        super().__init__(message, 409)


class PlanValidationError(PlanEngineError):
    """The plan document could not be turned into an execution plan."""

    def __init__(self, message: str = "Invalid execution plan"):
        super().__init__(message, 422)


class StepValidationError(PlanEngineError):
    """A step cannot be dispatched as written (missing or bad parameters)."""

    def __init__(self, message: str = "Invalid step"):
        super().__init__(message, 422)


class UnknownActionError(StepValidationError):
    """The step names an action outside the known vocabulary."""

    def __init__(self, action: str):
        self.action = action
        super().__init__(f"Unknown action: {action}")


class SafetyViolationError(PlanEngineError):
    """The bulk safety guard refused the operation."""

    def __init__(self, message: str, item_count: int = 0, context_count: int = 0):
        self.item_count = item_count
        self.context_count = context_count
        super().__init__(message, 409)


class ActionExecutionError(PlanEngineError):
    """The action-execution service reported a failure."""

    def __init__(self, message: str, action: str = ""):
        self.action = action
        super().__init__(message, 502)


class InvalidTransitionError(PlanEngineError):
    """A step status change that would move backwards or sideways."""

    def __init__(self, step_id: str, current: str, target: str):
        self.step_id = step_id
        self.current = current
        self.target = target
        super().__init__(
            f"Step {step_id} cannot move from '{current}' to '{target}'", 409
        )


def is_step_fatal(error: BaseException) -> bool:
    """Errors that end the step without a fallback attempt."""
    return isinstance(error, (StepValidationError, SafetyViolationError))

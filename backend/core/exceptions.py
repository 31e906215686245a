"""Custom exceptions for the workflow execution engine."""

from typing import List, Optional


class EngineException(Exception):
    """Base exception for the workflow execution engine."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code.

        Args:
            message: Exception message
            status_code: HTTP status code reported by the control API
        """
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundError(EngineException):
    """Execution or batch not found."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize NotFoundError with 404 status code."""
        super().__init__(message, 404)


class WorkflowValidationError(EngineException):
    """The workflow graph is malformed and cannot be started."""

    def __init__(self, errors: List[str], message: Optional[str] = None):
        """Initialize with the full list of validation problems.

        Args:
            errors: Human-readable validation errors
            message: Optional summary; defaults to the joined errors
        """
        self.errors = list(errors)
        super().__init__(message or "Workflow validation failed: " + "; ".join(self.errors), 422)


class StepError(EngineException):
    """A step handler failed."""

    def __init__(self, message: str, node_id: Optional[str] = None):
        self.node_id = node_id
        super().__init__(message, 500)


class UnknownStepTypeError(StepError):
    """No handler is registered for a node type."""

    def __init__(self, node_type: str, node_id: Optional[str] = None):
        self.node_type = node_type
        super().__init__(f"No handler found for node type: {node_type}", node_id)


class RetryExhaustedError(StepError):
    """The retry budget was spent without success."""

    def __init__(
        self,
        message: str,
        last_error: Optional[BaseException] = None,
        detail: Optional[str] = None,
        attempts: int = 0,
    ):
        self.last_error = last_error
        self.detail = detail
        self.attempts = attempts
        super().__init__(message)


class WaitTimeoutError(StepError):
    """A pre/post step wait did not succeed."""

    def __init__(self, message: str, timing: Optional[str] = None):
        self.timing = timing
        super().__init__(message)


class StepCancelledError(EngineException):
    """An in-flight step observed a stop request."""

    def __init__(self, message: str = "Execution stopped by user"):
        super().__init__(message, 499)


class MutationRejectedError(EngineException):
    """A mid-run workflow update was refused.

    ``code`` distinguishes why: NOT_PAUSED, WAIT_PAUSE_NOT_EDITABLE,
    INVALID_WORKFLOW, PAUSED_NODE_MISSING or HISTORY_REWRITE.
    """

    NOT_PAUSED = "NOT_PAUSED"
    WAIT_PAUSE_NOT_EDITABLE = "WAIT_PAUSE_NOT_EDITABLE"
    INVALID_WORKFLOW = "INVALID_WORKFLOW"
    PAUSED_NODE_MISSING = "PAUSED_NODE_MISSING"
    HISTORY_REWRITE = "HISTORY_REWRITE"

    def __init__(self, message: str, code: str, errors: Optional[List[str]] = None):
        self.code = code
        self.errors = list(errors or [])
        super().__init__(message, 409)


class InvalidStateError(EngineException):
    """Control operation not allowed in the execution's current status."""

    def __init__(self, message: str = "Operation not allowed in current state"):
        super().__init__(message, 409)


class CleanupError(EngineException):
    """Best-effort resource release failed. Logged, never escalated."""

    def __init__(self, message: str, resource: Optional[str] = None):
        self.resource = resource
        super().__init__(message, 500)

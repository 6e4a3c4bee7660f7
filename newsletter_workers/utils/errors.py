"""
Error taxonomy for the issue assembly pipeline

    TransientError       - network / AI / datastore hiccup, retried by the step harness
    MalformedResponseError - AI answered with something unusable, retried the same way
    StepTimeoutError     - an attempt ran past its wall-clock budget, consumes one attempt
    StepCancelledError   - a timed-out attempt noticed it was abandoned and stopped early
    InvariantViolation   - caller or data error, never retried, maps to a 4xx response
"""


class PipelineError(Exception):
    """Base class for all issue assembly errors"""


class TransientError(PipelineError):
    """Failure worth retrying"""


class MalformedResponseError(TransientError):
    """AI returned non-JSON, missing fields, out-of-range values or a refusal"""

    def __init__(self, message: str, raw_response: str = ''):
        super().__init__(message)
        self.raw_response = raw_response[:500] if raw_response else ''


class StepTimeoutError(TransientError):
    """A workflow step exceeded its wall-clock budget"""


class StepCancelledError(TransientError):
    """A step attempt stopped at a checkpoint because it had been abandoned"""


class InvariantViolation(PipelineError):
    """Not retried. http_status is used by the trigger service."""
    http_status = 400


class IssueNotFoundError(InvariantViolation):
    http_status = 404

    def __init__(self, issue_id: str):
        super().__init__(f"Issue not found: {issue_id}")
        self.issue_id = issue_id


class ContentModuleNotFoundError(InvariantViolation):
    http_status = 404

    def __init__(self, module_id: str):
        super().__init__(f"Content module not found: {module_id}")
        self.module_id = module_id


class InvalidSelectionError(InvariantViolation):
    http_status = 400


class DuplicateIssueError(InvariantViolation):
    http_status = 409


class InvalidWorkflowStateError(InvariantViolation):
    http_status = 409

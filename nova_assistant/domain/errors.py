from typing import Optional


class AssistantError(Exception):
    """Base class for all assistant core errors"""


class DecodeRecoverable(AssistantError):
    """A malformed frame was found mid-stream; decoding continues"""

    def __init__(self, line: str, reason: str = "invalid JSON payload"):
        super().__init__(f"{reason}: {line[:80]!r}")
        self.line = line
        self.reason = reason


class TransportError(AssistantError):
    """The completion transport failed or rejected the request"""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class PersistenceError(AssistantError):
    """Saving or loading a conversation failed"""


class ClassificationError(AssistantError):
    """The intent classifier could not be reached or answered garbage"""


class SuggestionError(AssistantError):
    """The suggestion source could not produce suggestions"""


class UnknownWorkflowType(AssistantError):
    """A start command named a workflow that is not registered"""

    def __init__(self, workflow_type: str):
        super().__init__(f"Unknown workflow type: {workflow_type}")
        self.workflow_type = workflow_type


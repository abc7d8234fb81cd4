"""
Error taxonomy for the orchestration engine.

Every error carries a short ``code`` that is persisted on the Deployment
(``error_code``) next to the human readable message.
"""
from typing import List, Optional


class OrchestrationError(Exception):
    code = "OrchestrationError"
    status_code = 500

    def __init__(self, message: str, logs: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.logs = logs or []


class ToolUnavailable(OrchestrationError):
    code = "ToolUnavailable"
    status_code = 503


class ModuleNotFound(OrchestrationError):
    code = "ModuleNotFound"
    status_code = 404


class WorkspaceIOError(OrchestrationError):
    code = "WorkspaceIOError"
    status_code = 500


class PlanFailed(OrchestrationError):
    code = "PlanFailed"


class ApplyFailed(OrchestrationError):
    code = "ApplyFailed"


class CredentialsNotFound(OrchestrationError):
    code = "CredentialsNotFound"
    status_code = 400


class CredentialsInvalid(OrchestrationError):
    code = "CredentialsInvalid"
    status_code = 400


class OperationTimeout(OrchestrationError):
    code = "Timeout"
    status_code = 504


class Cancelled(OrchestrationError):
    code = "Cancelled"
    status_code = 409


class InvalidTransition(OrchestrationError):
    code = "InvalidTransition"
    status_code = 409


class ProviderAPIError(OrchestrationError):
    code = "ProviderAPIError"
    status_code = 502


class Interrupted(OrchestrationError):
    """Deployment was left non-terminal by a previous process."""
    code = "Interrupted"

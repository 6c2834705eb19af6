"""
Exceptions raised by the workflow session engine.
"""


class CodesweepError(Exception):
    """Base class for engine errors."""
    pass


class SessionNotFound(CodesweepError):
    """Raised when an operation targets an unknown or expired session id."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(
            f"Workflow session '{session_id}' not found. It may have expired or been cancelled."
        )


class WorkspaceNotBound(CodesweepError):
    """Raised when discovery or persistence runs before a workspace root is set."""

    def __init__(self, message: str = "Workspace root not set. Call bind_workspace() first."):
        super().__init__(message)


class UnknownWorkflowType(CodesweepError):
    """Raised when a workflow type is not present in the definition registry."""

    def __init__(self, workflow_type: str, available: list[str]):
        self.workflow_type = workflow_type
        self.available = available
        super().__init__(
            f"Unknown workflow type: '{workflow_type}'. "
            f"Available types: {', '.join(available) or '(none)'}"
        )


class DefinitionConflict(CodesweepError):
    """Raised when a custom definition would shadow a built-in type."""
    pass


class FileNotInSession(CodesweepError):
    """Raised when a progress report names a file outside the inventory."""

    def __init__(self, session_id: str, path: str):
        self.session_id = session_id
        self.path = path
        super().__init__(f"File '{path}' is not part of session '{session_id}'")


class ChecklistItemNotFound(CodesweepError):
    """Raised when a progress report names an unknown checklist item id."""

    def __init__(self, path: str, item_id: str):
        self.path = path
        self.item_id = item_id
        super().__init__(f"Checklist item '{item_id}' not found for file '{path}'")

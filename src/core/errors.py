"""
Exceptions raised by the workflow engine.

Anything derived from WorkflowError is fatal for the run that raised it; the
executor stores its message on the Run. Per-item failures are never raised
past the evaluator or drafter.
"""


class WorkflowError(Exception):
    """Base class for run-level failures."""


class DefinitionError(WorkflowError):
    """Workflow definition is missing, inactive or malformed."""


class CredentialError(WorkflowError):
    """Workspace credential is missing or could not be exchanged."""


class SourceError(WorkflowError):
    """Content source request failed."""


class WorkspaceContextError(WorkflowError):
    """Workspace brand context is missing or unusable."""


class RecordError(WorkflowError):
    """Processed posts could not be persisted."""


class RunCancelled(WorkflowError):
    """Run was cancelled between candidates."""

    def __init__(self, message: str = "Run cancelled"):
        super().__init__(message)

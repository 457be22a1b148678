"""Custom error classes for the workflow engine."""

from typing import Any, Optional


class WorkflowError(Exception):
    """
    Base class for every failure the workflow engine reports.

    Carries the node context (id and type) once the executor has bound it,
    plus the execution record of the run that failed.
    """

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        node_type: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.node_id = node_id
        self.node_type = node_type
        self.record: Optional[Any] = None

    def bind(self, node_id: str, node_type: str) -> "WorkflowError":
        """
        Attach the failing node to the error and prefix the message with it.

        Binding twice keeps the first node context.
        """
        if self.node_id is None and self.node_type is None:
            self.node_id = node_id
            self.node_type = node_type
            self.message = f"Workflow failed at node {node_type}: {self.message}"
            self.args = (self.message,)
        return self

    def to_dict(self) -> dict:
        return {
            "error_type": type(self).__name__,
            "node_id": self.node_id,
            "node_type": self.node_type,
            "message": self.message,
        }


class WorkflowValidationError(WorkflowError):
    """Raised when a workflow definition fails validation."""
    pass


class DispatchError(WorkflowError):
    """Raised when a node type is not registered with the dispatcher."""
    pass


class ValidationError(WorkflowError):
    """Required input fields are missing. Recorded, not raised, by the engine."""
    pass


class ProviderError(WorkflowError):
    """The generation provider failed or returned no usable content."""
    pass


class StorageError(WorkflowError):
    """Writing the final output to the execution store failed."""
    pass

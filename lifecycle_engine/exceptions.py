"""
Lifecycle Engine - Custom Exceptions

Exception hierarchy shared by the orchestrator, the instance store and the
directory adapters.
"""

from typing import List, Optional


class LifecycleEngineError(Exception):
    """Base exception for all engine errors."""

    pass


class ValidationError(LifecycleEngineError):
    """
    Raised when workflow input is malformed or incomplete.

    Never retried. Surfaces synchronously to the caller of ``start``.

    Attributes:
        errors: Individual validation messages
    """

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or [message]


class RetryableError(LifecycleEngineError):
    """Transient directory failure (timeout, throttling, transient 5xx)."""

    pass


class FatalError(LifecycleEngineError):
    """Directory operation that cannot succeed as requested."""

    pass


class WorkflowNotFoundError(LifecycleEngineError):
    """Raised when a workflow instance ID is unknown."""

    def __init__(self, instance_id: str):
        super().__init__(f"Workflow {instance_id} not found")
        self.instance_id = instance_id


class PersistenceError(LifecycleEngineError):
    """Raised when workflow state could not be read from or written to storage."""

    pass

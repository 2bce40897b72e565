"""
Workflow Engine Package.

This package provides the task catalog, the workflow instance store and the
orchestrator that drives workflow instances against a directory adapter.
"""

from .instance_store import WorkflowInstanceStore
from .orchestrator import WorkflowOrchestrator
from .retry import call_with_timeout, compute_backoff
from .task_catalog import DEFAULT_CATALOG, TaskCatalog

__all__ = [
    "DEFAULT_CATALOG",
    "TaskCatalog",
    "WorkflowInstanceStore",
    "WorkflowOrchestrator",
    "call_with_timeout",
    "compute_backoff",
]

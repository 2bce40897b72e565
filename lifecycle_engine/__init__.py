"""
Identity Lifecycle Workflow Engine

Drives employee onboarding and offboarding against Microsoft 365 / Entra ID
as durable, retryable workflows with per-task status and an audit trail.
"""

__version__ = "1.0.0"

from .engine.orchestrator import WorkflowOrchestrator
from .engine.instance_store import WorkflowInstanceStore
from .engine.task_catalog import TaskCatalog
from .workflows.onboarding import OnboardingWorkflow
from .workflows.offboarding import OffboardingWorkflow

__all__ = [
    "WorkflowOrchestrator",
    "WorkflowInstanceStore",
    "TaskCatalog",
    "OnboardingWorkflow",
    "OffboardingWorkflow",
]

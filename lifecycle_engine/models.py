"""
Core data models for the Lifecycle Engine.

This module defines the Pydantic models used throughout the system
for workflow instances, task executions, retry policy, and audit records.
"""

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, computed_field


def utcnow() -> datetime:
    """Timezone-aware current time used for every engine timestamp."""
    return datetime.now(timezone.utc)


class WorkflowKind(str, Enum):
    """Lifecycle events that a workflow instance can represent."""
    ONBOARDING = "ONBOARDING"
    OFFBOARDING = "OFFBOARDING"


class WorkflowStatus(str, Enum):
    """Aggregate status of a workflow instance."""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class TaskState(str, Enum):
    """Per-task execution state."""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


TERMINAL_TASK_STATES = frozenset({TaskState.COMPLETED, TaskState.FAILED, TaskState.SKIPPED})
SATISFIED_TASK_STATES = frozenset({TaskState.COMPLETED, TaskState.SKIPPED})
TERMINAL_WORKFLOW_STATUSES = frozenset(
    {WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED}
)


class TaskType(str, Enum):
    """Directory operations a task can perform."""
    # Onboarding
    CREATE_ACCOUNT = "CREATE_ACCOUNT"
    ASSIGN_LICENSE = "ASSIGN_LICENSE"
    ADD_GROUP_MEMBERSHIPS = "ADD_GROUP_MEMBERSHIPS"
    ASSIGN_APPLICATIONS = "ASSIGN_APPLICATIONS"
    ASSIGN_ASSETS = "ASSIGN_ASSETS"
    SEND_WELCOME_EMAIL = "SEND_WELCOME_EMAIL"
    # Offboarding
    DISABLE_ACCOUNT = "DISABLE_ACCOUNT"
    REVOKE_SESSIONS = "REVOKE_SESSIONS"
    REMOVE_MFA_METHODS = "REMOVE_MFA_METHODS"
    REMOVE_GROUP_MEMBERSHIPS = "REMOVE_GROUP_MEMBERSHIPS"
    CONFIGURE_MAIL_FORWARDING = "CONFIGURE_MAIL_FORWARDING"
    ARCHIVE_MAILBOX_AND_FILES = "ARCHIVE_MAILBOX_AND_FILES"
    RELEASE_ASSETS = "RELEASE_ASSETS"


class ErrorKind(str, Enum):
    """Classification of a task failure."""
    RETRYABLE = "RETRYABLE"
    FATAL = "FATAL"


class TaskTemplate(BaseModel):
    """Catalog entry describing one task of a workflow kind."""
    task_type: TaskType
    name: str = Field(..., description="Human-readable task label")
    mandatory: bool = Field(True, description="Whether failure fails the whole workflow")
    depends_on: List[TaskType] = Field(default_factory=list, description="Predecessor task types")
    enabled_by: Optional[str] = Field(
        None, description="Boolean parameter that switches the task on or off"
    )
    requires: Optional[str] = Field(
        None, description="Parameter that must be non-empty for the task to run"
    )


class TaskExecution(BaseModel):
    """Execution record of a single task within a workflow instance."""
    task_type: TaskType
    name: str
    mandatory: bool
    depends_on: List[TaskType] = Field(default_factory=list)
    enabled_by: Optional[str] = None
    requires: Optional[str] = None
    state: TaskState = TaskState.PENDING
    attempt: int = 0
    last_error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    result: Optional[Dict[str, Any]] = None
    skip_reason: Optional[str] = None

    @classmethod
    def from_template(cls, template: TaskTemplate) -> "TaskExecution":
        """Materialize a pending execution from a catalog entry."""
        return cls(
            task_type=template.task_type,
            name=template.name,
            mandatory=template.mandatory,
            depends_on=list(template.depends_on),
            enabled_by=template.enabled_by,
            requires=template.requires,
        )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_TASK_STATES


class WorkflowInstance(BaseModel):
    """
    Durable record of one onboarding or offboarding event.

    ``status`` and ``progress`` are derived from the task vector and are
    never assigned directly.
    """
    id: str = Field(..., description="Unique workflow instance ID")
    kind: WorkflowKind
    subject_identity: str = Field(..., description="Directory identity being acted on")
    parameters: Dict[str, Any] = Field(default_factory=dict)
    tasks: List[TaskExecution] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_requested_at: Optional[datetime] = Field(
        None, description="When a cancel was accepted; applied at the next task boundary"
    )

    @computed_field  # type: ignore[misc]
    @property
    def status(self) -> WorkflowStatus:
        if any(t.mandatory and t.state == TaskState.FAILED for t in self.tasks):
            return WorkflowStatus.FAILED
        if self.cancelled_at is not None:
            return WorkflowStatus.CANCELLED
        if self.tasks and all(t.is_terminal for t in self.tasks):
            return WorkflowStatus.COMPLETED
        if self.started_at is not None or any(
            t.state != TaskState.PENDING or t.attempt > 0 for t in self.tasks
        ):
            return WorkflowStatus.RUNNING
        return WorkflowStatus.PENDING

    @computed_field  # type: ignore[misc]
    @property
    def progress(self) -> int:
        if not self.tasks:
            return 0
        done = sum(1 for t in self.tasks if t.state in SATISFIED_TASK_STATES)
        return math.floor(done * 100 / len(self.tasks))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_WORKFLOW_STATUSES

    def get_task(self, task_type: TaskType) -> Optional[TaskExecution]:
        """Get the execution record for a task type."""
        for task in self.tasks:
            if task.task_type == task_type:
                return task
        return None


class RetryPolicy(BaseModel):
    """Retry, backoff and timeout policy for directory calls."""
    max_attempts: int = Field(3, ge=1)
    base_delay_seconds: float = Field(2.0, ge=0)
    max_delay_seconds: float = Field(60.0, ge=0)
    call_timeout_seconds: float = Field(30.0, gt=0)


class AuditRecord(BaseModel):
    """Audit record written for every task and workflow transition."""
    id: str = Field(..., description="Unique audit record ID")
    timestamp: datetime = Field(default_factory=utcnow)
    workflow_id: str
    kind: WorkflowKind
    subject_identity: str
    event_type: str = Field(..., description="Transition type (task_started, task_failed, etc.)")
    task_type: Optional[TaskType] = None
    from_state: Optional[str] = None
    to_state: Optional[str] = None
    attempt: int = 0
    success: bool = True
    error_message: Optional[str] = Field(None, description="Error details if failed")
    metadata: Dict[str, Any] = Field(default_factory=dict)

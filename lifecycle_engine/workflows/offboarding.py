"""
Offboarding Workflow for the Lifecycle Engine.

Handles departures: locks the account out, strips its access, preserves
its data for a delegate and releases its hardware for recovery.
"""

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, Field, field_validator

from ..connectors import AdapterResult, DirectoryAdapter, GroupAction
from ..models import TaskType, WorkflowInstance, WorkflowKind
from .base_workflow import BaseWorkflowDefinition, TaskOperation, WorkflowParameters
from .helpers import run_for_each

logger = logging.getLogger(__name__)


class OffboardingParameters(WorkflowParameters):
    """Inputs for a departure."""
    subject_identity: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("subject_identity", "subjectIdentity", "userId"),
        description="Directory user ID or UPN of the departing employee",
    )
    departure_date: Optional[date] = None
    reason: Optional[str] = None
    disable_account: bool = True
    revoke_sessions: bool = True
    remove_mfa: bool = True
    remove_groups: bool = True
    archive_data: bool = True
    forward_email: Optional[str] = None
    delegate_access_to: Optional[str] = Field(
        None, description="Who receives the archived mailbox and files"
    )
    group_ids: List[str] = Field(
        default_factory=list, description="Groups to leave; empty means every group"
    )
    asset_ids: List[str] = Field(default_factory=list)

    @field_validator("subject_identity")
    @classmethod
    def validate_subject_identity(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Subject identity is required")
        return v

    @field_validator("forward_email")
    @classmethod
    def validate_forward_email(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        if "@" not in v:
            raise ValueError("Invalid forwarding address format")
        return v.strip()


class OffboardingWorkflow(BaseWorkflowDefinition):
    """Workflow definition for employee offboarding."""

    kind = WorkflowKind.OFFBOARDING
    parameters_model = OffboardingParameters

    def subject_identity(self, parameters: Dict[str, Any]) -> str:
        return parameters["subject_identity"]

    def _operations(self) -> Dict[TaskType, TaskOperation]:
        return {
            TaskType.DISABLE_ACCOUNT: lambda a, i: a.disable_account(i.subject_identity),
            TaskType.REVOKE_SESSIONS: lambda a, i: a.revoke_sessions(i.subject_identity),
            TaskType.REMOVE_MFA_METHODS: lambda a, i: a.remove_mfa_methods(i.subject_identity),
            TaskType.REMOVE_GROUP_MEMBERSHIPS: self._remove_group_memberships,
            TaskType.CONFIGURE_MAIL_FORWARDING: lambda a, i: a.set_mail_forwarding(
                i.subject_identity, i.parameters["forward_email"]
            ),
            TaskType.ARCHIVE_MAILBOX_AND_FILES: lambda a, i: a.archive_mailbox_and_files(
                i.subject_identity, i.parameters.get("delegate_access_to")
            ),
            TaskType.RELEASE_ASSETS: self._release_assets,
        }

    @staticmethod
    def _remove_group_memberships(adapter: DirectoryAdapter, instance: WorkflowInstance) -> AdapterResult:
        return adapter.modify_group_membership(
            instance.subject_identity, instance.parameters.get("group_ids", []), GroupAction.REMOVE
        )

    @staticmethod
    def _release_assets(adapter: DirectoryAdapter, instance: WorkflowInstance) -> AdapterResult:
        return run_for_each(instance.parameters.get("asset_ids", []), adapter.release_asset)

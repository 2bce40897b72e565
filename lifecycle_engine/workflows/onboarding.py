"""
Onboarding Workflow for the Lifecycle Engine.

Handles new starters: creates the directory account, licenses it, adds it
to its groups and applications, assigns hardware and sends the welcome message.
"""

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, Field, field_validator, model_validator

from ..connectors import AdapterResult, DirectoryAdapter, GroupAction
from ..models import TaskType, WorkflowInstance, WorkflowKind
from .base_workflow import BaseWorkflowDefinition, TaskOperation, WorkflowParameters
from .helpers import run_for_each

logger = logging.getLogger(__name__)


class OnboardingParameters(WorkflowParameters):
    """Inputs for a new starter."""
    display_name: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("display_name", "displayName", "employeeName"),
        description="Full name shown in the directory",
    )
    user_principal_name: str = Field(
        ...,
        validation_alias=AliasChoices("user_principal_name", "userPrincipalName", "employeeEmail"),
        description="Sign-in name of the new account",
    )
    license_id: str = Field(..., min_length=1, description="License SKU to assign")
    given_name: Optional[str] = None
    surname: Optional[str] = None
    mail_nickname: Optional[str] = None
    department: Optional[str] = None
    job_title: Optional[str] = None
    employee_id: Optional[str] = None
    manager_id: Optional[str] = None
    usage_location: str = "US"
    start_date: Optional[date] = None
    office_location: Optional[str] = None
    mobile_phone: Optional[str] = None
    business_phone: Optional[str] = None
    company: Optional[str] = Field(None, validation_alias=AliasChoices("company", "companyName"))
    cost_center: Optional[str] = None
    street_address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    account_expiration: Optional[date] = Field(None, description="Last day the account may be used")
    force_password_change: bool = True
    group_ids: List[str] = Field(default_factory=list)
    application_ids: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("application_ids", "applicationIds", "selectedApps"),
        description="Enterprise applications (service principal IDs) to grant access to",
    )
    asset_ids: List[str] = Field(default_factory=list)
    send_welcome_email: bool = True
    welcome_recipient: Optional[str] = Field(None, description="Defaults to the new account")

    @field_validator("user_principal_name")
    @classmethod
    def validate_user_principal_name(cls, v: str) -> str:
        v = v.strip()
        if "@" not in v or v.startswith("@") or v.endswith("@"):
            raise ValueError("Invalid user principal name format")
        return v.lower()

    @model_validator(mode="after")
    def validate_account_expiration(self) -> "OnboardingParameters":
        if self.account_expiration and self.start_date and self.account_expiration < self.start_date:
            raise ValueError("account_expiration must not be before start_date")
        return self


class OnboardingWorkflow(BaseWorkflowDefinition):
    """Workflow definition for employee onboarding."""

    kind = WorkflowKind.ONBOARDING
    parameters_model = OnboardingParameters

    def subject_identity(self, parameters: Dict[str, Any]) -> str:
        return parameters["user_principal_name"]

    def _operations(self) -> Dict[TaskType, TaskOperation]:
        return {
            TaskType.CREATE_ACCOUNT: self._create_account,
            TaskType.ASSIGN_LICENSE: self._assign_license,
            TaskType.ADD_GROUP_MEMBERSHIPS: self._add_group_memberships,
            TaskType.ASSIGN_APPLICATIONS: self._assign_applications,
            TaskType.ASSIGN_ASSETS: self._assign_assets,
            TaskType.SEND_WELCOME_EMAIL: self._send_welcome_email,
        }

    @staticmethod
    def _create_account(adapter: DirectoryAdapter, instance: WorkflowInstance) -> AdapterResult:
        return adapter.create_account(instance.parameters)

    @staticmethod
    def _assign_license(adapter: DirectoryAdapter, instance: WorkflowInstance) -> AdapterResult:
        return adapter.assign_license(instance.subject_identity, instance.parameters["license_id"])

    @staticmethod
    def _add_group_memberships(adapter: DirectoryAdapter, instance: WorkflowInstance) -> AdapterResult:
        return adapter.modify_group_membership(
            instance.subject_identity, instance.parameters.get("group_ids", []), GroupAction.ADD
        )

    @staticmethod
    def _assign_applications(adapter: DirectoryAdapter, instance: WorkflowInstance) -> AdapterResult:
        return run_for_each(
            instance.parameters.get("application_ids", []),
            lambda app_id: adapter.assign_application(instance.subject_identity, app_id),
        )

    @staticmethod
    def _assign_assets(adapter: DirectoryAdapter, instance: WorkflowInstance) -> AdapterResult:
        return run_for_each(
            instance.parameters.get("asset_ids", []),
            lambda asset_id: adapter.assign_asset(instance.subject_identity, asset_id),
        )

    @staticmethod
    def _send_welcome_email(adapter: DirectoryAdapter, instance: WorkflowInstance) -> AdapterResult:
        return adapter.send_welcome_email(
            instance.subject_identity, instance.parameters.get("welcome_recipient")
        )

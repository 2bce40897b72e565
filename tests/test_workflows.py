"""
Tests for the onboarding and offboarding workflow definitions.

These exercise parameter validation and the task-to-adapter mapping in
isolation from the orchestrator.
"""

from datetime import date
from unittest.mock import Mock

import pytest

from lifecycle_engine.connectors import AdapterResult, GroupAction, OutcomeKind
from lifecycle_engine.exceptions import ValidationError
from lifecycle_engine.models import TaskExecution, TaskType, WorkflowInstance, WorkflowKind
from lifecycle_engine.workflows import (
    OffboardingWorkflow,
    OnboardingWorkflow,
    create_audit_summary,
    get_workflow_definition,
    parse_workflow_kind,
    run_for_each,
)


def make_task(task_type: TaskType, **kwargs) -> TaskExecution:
    return TaskExecution(task_type=task_type, name=task_type.value, mandatory=True, **kwargs)


def make_instance(kind: WorkflowKind, subject: str, parameters: dict) -> WorkflowInstance:
    return WorkflowInstance(id="wf-1", kind=kind, subject_identity=subject, parameters=parameters)


@pytest.fixture
def adapter():
    mock = Mock()
    for name in ("create_account", "assign_license", "modify_group_membership", "assign_application",
                 "assign_asset", "send_welcome_email", "disable_account", "revoke_sessions", "remove_mfa_methods",
                 "set_mail_forwarding", "archive_mailbox_and_files", "release_asset"):
        getattr(mock, name).return_value = AdapterResult.ok(name)
    return mock


class TestOnboardingParameters:
    """Onboarding input validation."""

    @pytest.fixture
    def workflow(self):
        return OnboardingWorkflow()

    def test_accepts_form_field_names(self, workflow):
        params = workflow.validate_parameters({
            "employeeName": "Ada Lovelace",
            "employeeEmail": "Ada@Corp.com",
            "licenseId": "E3",
            "startDate": "2024-07-01",
            "selectedGroups": "ignored",
            "groupIds": "grp-a, grp-b",
        })

        assert params["display_name"] == "Ada Lovelace"
        assert params["user_principal_name"] == "ada@corp.com"
        assert params["start_date"] == "2024-07-01"
        assert params["group_ids"] == ["grp-a", "grp-b"]
        assert params["usage_location"] == "US"
        assert params["send_welcome_email"] is True
        assert workflow.subject_identity(params) == "ada@corp.com"

    def test_accepts_snake_case(self, workflow):
        params = workflow.validate_parameters({
            "display_name": "Ada",
            "user_principal_name": "ada@corp.com",
            "license_id": "E3",
            "force_password_change": "false",
        })

        assert params["force_password_change"] is False

    def test_missing_license_is_rejected(self, workflow):
        with pytest.raises(ValidationError) as exc_info:
            workflow.validate_parameters({"displayName": "Ada", "userPrincipalName": "ada@corp.com"})

        assert any("license" in error.lower() for error in exc_info.value.errors)

    def test_invalid_upn_is_rejected(self, workflow):
        with pytest.raises(ValidationError, match="Invalid user principal name"):
            workflow.validate_parameters({
                "displayName": "Ada", "userPrincipalName": "ada", "licenseId": "E3",
            })

    def test_non_mapping_is_rejected(self, workflow):
        with pytest.raises(ValidationError):
            workflow.validate_parameters(["not", "a", "map"])

    def test_profile_and_application_fields(self, workflow):
        params = workflow.validate_parameters({
            "displayName": "Ada", "userPrincipalName": "ada@corp.com", "licenseId": "E3",
            "companyName": "Corp Ltd", "costCenter": "CC-42", "businessPhone": "+1 555 0100",
            "streetAddress": "1 Main St", "city": "Springfield", "state": "IL",
            "postalCode": "62701", "country": "US",
            "startDate": "2024-07-01", "accountExpiration": "2024-12-31",
            "selectedApps": "app-crm, app-hr",
        })

        assert params["company"] == "Corp Ltd"
        assert params["cost_center"] == "CC-42"
        assert params["business_phone"] == "+1 555 0100"
        assert params["street_address"] == "1 Main St"
        assert params["postal_code"] == "62701"
        assert params["account_expiration"] == "2024-12-31"
        assert params["application_ids"] == ["app-crm", "app-hr"]

    def test_expiration_before_start_is_rejected(self, workflow):
        with pytest.raises(ValidationError, match="account_expiration must not be before start_date"):
            workflow.validate_parameters({
                "displayName": "Ada", "userPrincipalName": "ada@corp.com", "licenseId": "E3",
                "startDate": "2024-07-01", "accountExpiration": "2024-06-30",
            })

    def test_no_applications_skips_assignment(self, workflow):
        params = workflow.validate_parameters({
            "displayName": "Ada", "userPrincipalName": "ada@corp.com", "licenseId": "E3",
        })
        task = make_task(TaskType.ASSIGN_APPLICATIONS, requires="application_ids")

        assert params["application_ids"] == []
        assert workflow.skip_reason(task, params) == "No application_ids provided"


class TestOffboardingParameters:
    """Offboarding input validation."""

    @pytest.fixture
    def workflow(self):
        return OffboardingWorkflow()

    def test_defaults(self, workflow):
        params = workflow.validate_parameters({"subjectIdentity": "u123", "departureDate": "2024-06-01"})

        assert params["subject_identity"] == "u123"
        assert params["departure_date"] == date(2024, 6, 1).isoformat()
        for toggle in ("disable_account", "revoke_sessions", "remove_mfa", "remove_groups", "archive_data"):
            assert params[toggle] is True
        assert params["forward_email"] is None
        assert params["asset_ids"] == []

    def test_user_id_alias(self, workflow):
        params = workflow.validate_parameters({"userId": "  u456  "})
        assert workflow.subject_identity(params) == "u456"

    @pytest.mark.parametrize("raw", [{}, {"subjectIdentity": ""}, {"subjectIdentity": "   "}])
    def test_subject_identity_required(self, workflow, raw):
        with pytest.raises(ValidationError):
            workflow.validate_parameters(raw)

    def test_blank_forward_email_means_none(self, workflow):
        params = workflow.validate_parameters({"userId": "u1", "forwardEmail": " "})
        assert params["forward_email"] is None

    def test_invalid_forward_email(self, workflow):
        with pytest.raises(ValidationError, match="forwarding address"):
            workflow.validate_parameters({"userId": "u1", "forwardEmail": "nobody"})


class TestSkipRules:
    """Toggle and optional-input evaluation."""

    def test_disabled_toggle(self):
        task = make_task(TaskType.ARCHIVE_MAILBOX_AND_FILES, enabled_by="archive_data")
        reason = OffboardingWorkflow().skip_reason(task, {"archive_data": False})
        assert reason == "Disabled by parameter archive_data"

    def test_missing_input(self):
        task = make_task(TaskType.RELEASE_ASSETS, requires="asset_ids")
        assert OffboardingWorkflow().skip_reason(task, {"asset_ids": []}) == "No asset_ids provided"

    def test_runs_when_enabled(self):
        task = make_task(TaskType.ARCHIVE_MAILBOX_AND_FILES, enabled_by="archive_data")
        assert OffboardingWorkflow().skip_reason(task, {"archive_data": True}) is None


class TestTaskMapping:
    """Task types map onto adapter calls."""

    def test_onboarding_calls(self, adapter):
        workflow = OnboardingWorkflow()
        params = workflow.validate_parameters({
            "displayName": "Ada", "userPrincipalName": "ada@corp.com", "licenseId": "E3",
            "groupIds": ["g1"], "selectedApps": ["app-1"], "assetIds": ["a1", "a2"],
            "welcomeRecipient": "hr@corp.com",
        })
        instance = make_instance(WorkflowKind.ONBOARDING, "ada@corp.com", params)

        for task_type in workflow.supported_task_types():
            assert workflow.invoke(adapter, make_task(task_type), instance).success

        adapter.create_account.assert_called_once_with(params)
        adapter.assign_license.assert_called_once_with("ada@corp.com", "E3")
        adapter.modify_group_membership.assert_called_once_with("ada@corp.com", ["g1"], GroupAction.ADD)
        adapter.assign_application.assert_called_once_with("ada@corp.com", "app-1")
        assert adapter.assign_asset.call_count == 2
        adapter.send_welcome_email.assert_called_once_with("ada@corp.com", "hr@corp.com")

    def test_offboarding_calls(self, adapter):
        workflow = OffboardingWorkflow()
        params = workflow.validate_parameters({
            "userId": "u123", "forwardEmail": "boss@corp.com", "delegateAccessTo": "boss@corp.com",
            "assetIds": "a1",
        })
        instance = make_instance(WorkflowKind.OFFBOARDING, "u123", params)

        for task_type in workflow.supported_task_types():
            workflow.invoke(adapter, make_task(task_type), instance)

        adapter.disable_account.assert_called_once_with("u123")
        adapter.revoke_sessions.assert_called_once_with("u123")
        adapter.remove_mfa_methods.assert_called_once_with("u123")
        adapter.modify_group_membership.assert_called_once_with("u123", [], GroupAction.REMOVE)
        adapter.set_mail_forwarding.assert_called_once_with("u123", "boss@corp.com")
        adapter.archive_mailbox_and_files.assert_called_once_with("u123", "boss@corp.com")
        adapter.release_asset.assert_called_once_with("a1")

    def test_unsupported_task_is_fatal(self, adapter):
        instance = make_instance(WorkflowKind.OFFBOARDING, "u123", {})
        result = OffboardingWorkflow().invoke(adapter, make_task(TaskType.CREATE_ACCOUNT), instance)

        assert result.outcome == OutcomeKind.FATAL


class TestHelpers:
    """Workflow helper functions."""

    def test_run_for_each_stops_at_first_failure(self):
        calls = []

        def call(item):
            calls.append(item)
            return AdapterResult.fatal("boom") if item == "b" else AdapterResult.ok(item)

        result = run_for_each(["a", "b", "c"], call)

        assert result.outcome == OutcomeKind.FATAL
        assert calls == ["a", "b"]

    def test_run_for_each_all_noop(self):
        result = run_for_each(["a", "b"], lambda item: AdapterResult.noop(item))
        assert result.outcome == OutcomeKind.NO_OP

    def test_run_for_each_mixed(self):
        outcomes = iter([AdapterResult.noop("a"), AdapterResult.ok("b")])
        result = run_for_each(["a", "b"], lambda item: next(outcomes))

        assert result.outcome == OutcomeKind.SUCCESS
        assert result.data == {"items": {"a": "NO_OP", "b": "SUCCESS"}}

    @pytest.mark.parametrize("value,expected", [
        ("onboarding", WorkflowKind.ONBOARDING),
        (" Offboarding ", WorkflowKind.OFFBOARDING),
        (WorkflowKind.ONBOARDING, WorkflowKind.ONBOARDING),
    ])
    def test_parse_workflow_kind(self, value, expected):
        assert parse_workflow_kind(value) == expected

    def test_get_workflow_definition(self):
        assert isinstance(get_workflow_definition("offboarding"), OffboardingWorkflow)
        with pytest.raises(ValidationError):
            get_workflow_definition("mover")

    def test_create_audit_summary(self):
        instance = make_instance(WorkflowKind.OFFBOARDING, "u123", {})
        instance.tasks = [
            make_task(TaskType.DISABLE_ACCOUNT, state="COMPLETED"),
            make_task(TaskType.REVOKE_SESSIONS, state="FAILED", last_error="denied"),
        ]

        summary = create_audit_summary(instance)

        assert summary["status"] == "FAILED"
        assert summary["progress"] == 50
        assert summary["task_counts"]["COMPLETED"] == 1
        assert summary["errors"] == [{"task_type": "REVOKE_SESSIONS", "error": "denied"}]

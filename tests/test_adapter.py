"""
Tests for the directory adapters.

Every mock directory operation is called twice with the same arguments; the
second call must leave the directory unchanged and report a no-op (or an
equivalent success for naturally idempotent operations).
"""

import pytest
import requests

from lifecycle_engine.connectors import (
    AdapterResult,
    GroupAction,
    MockDirectoryAdapter,
    OutcomeKind,
    get_adapter,
)


@pytest.fixture
def adapter():
    """Mock directory with one existing user and two assets."""
    mock = MockDirectoryAdapter()
    mock.add_user("u123", groups=["grp-sales", "grp-all"], mfa_methods=["phone", "fido2"], sessions=3)
    mock.add_asset("laptop-1", primary_user="u123")
    mock.add_asset("laptop-2")
    return mock


class TestAdapterResult:
    """AdapterResult helpers."""

    def test_noop_counts_as_success(self):
        assert AdapterResult.noop("already done").success
        assert AdapterResult.ok("done").success
        assert not AdapterResult.retryable("throttled").success
        assert not AdapterResult.fatal("missing").success

    def test_error_carried_on_failure(self):
        result = AdapterResult.fatal("User x not found")
        assert result.outcome == OutcomeKind.FATAL
        assert result.error == "User x not found"
        assert not result


class TestMockIdempotence:
    """Calling an operation twice never changes the outcome of calling it once."""

    def test_create_account(self, adapter):
        params = {"user_principal_name": "new@corp.com", "display_name": "New Starter"}

        first = adapter.create_account(params)
        state_after_first = dict(adapter.users["new@corp.com"])
        second = adapter.create_account(params)

        assert first.outcome == OutcomeKind.SUCCESS
        assert second.outcome == OutcomeKind.NO_OP
        assert second.data == {"id": "new@corp.com", "user_principal_name": "new@corp.com"}
        # The password is only handed out when the account is created
        assert first.data["temporary_password"] == adapter.users["new@corp.com"]["password"]
        assert "temporary_password" not in second.data
        assert adapter.users["new@corp.com"] == state_after_first
        assert adapter.calls_to("create_account") == 2

    def test_create_account_sets_missing_manager(self, adapter):
        adapter.create_account({"user_principal_name": "new@corp.com", "display_name": "New"})

        params = {"user_principal_name": "new@corp.com", "display_name": "New", "manager_id": "u123"}
        first = adapter.create_account(params)
        second = adapter.create_account(params)

        assert first.outcome == OutcomeKind.SUCCESS
        assert "set manager u123" in first.message
        assert second.outcome == OutcomeKind.NO_OP
        assert adapter.users["new@corp.com"]["manager"] == "u123"

    def test_assign_application(self, adapter):
        first = adapter.assign_application("u123", "app-crm")
        second = adapter.assign_application("u123", "app-crm")

        assert first.outcome == OutcomeKind.SUCCESS
        assert second.outcome == OutcomeKind.NO_OP
        assert adapter.users["u123"]["applications"] == ["app-crm"]

    def test_disable_account(self, adapter):
        first = adapter.disable_account("u123")
        second = adapter.disable_account("u123")

        assert first.outcome == OutcomeKind.SUCCESS
        assert second.outcome == OutcomeKind.NO_OP
        assert adapter.users["u123"]["enabled"] is False

    def test_assign_license(self, adapter):
        adapter.assign_license("u123", "E3")
        second = adapter.assign_license("u123", "E3")

        assert second.outcome == OutcomeKind.NO_OP
        assert adapter.users["u123"]["licenses"] == ["E3"]

    def test_add_group_membership(self, adapter):
        first = adapter.modify_group_membership("u123", ["grp-eng"], GroupAction.ADD)
        second = adapter.modify_group_membership("u123", ["grp-eng"], GroupAction.ADD)

        assert first.outcome == OutcomeKind.SUCCESS
        assert second.outcome == OutcomeKind.NO_OP
        assert adapter.groups["grp-eng"] == ["u123"]

    def test_remove_all_group_memberships(self, adapter):
        first = adapter.modify_group_membership("u123", [], GroupAction.REMOVE)
        second = adapter.modify_group_membership("u123", [], GroupAction.REMOVE)

        assert sorted(first.data["groups"]) == ["grp-all", "grp-sales"]
        assert second.outcome == OutcomeKind.NO_OP
        assert adapter.users["u123"]["groups"] == []
        assert adapter.groups["grp-sales"] == []

    def test_revoke_sessions(self, adapter):
        first = adapter.revoke_sessions("u123")
        second = adapter.revoke_sessions("u123")

        assert first.success and second.success
        assert adapter.users["u123"]["sessions"] == 0

    def test_remove_mfa_methods(self, adapter):
        first = adapter.remove_mfa_methods("u123")
        second = adapter.remove_mfa_methods("u123")

        assert first.data["removed"] == ["phone", "fido2"]
        assert second.outcome == OutcomeKind.NO_OP
        assert adapter.users["u123"]["mfa_methods"] == []

    def test_archive_mailbox_and_files(self, adapter):
        adapter.archive_mailbox_and_files("u123", "manager@corp.com")
        second = adapter.archive_mailbox_and_files("u123", "manager@corp.com")

        assert second.outcome == OutcomeKind.NO_OP
        assert adapter.archives == {"u123": "manager@corp.com"}

    def test_archive_default_destination(self):
        adapter = MockDirectoryAdapter({"default_archive_destination": "records@corp.com"},
                                       seed_users=["u1"])
        result = adapter.archive_mailbox_and_files("u1", None)

        assert result.data == {"destination": "records@corp.com"}

    def test_assign_asset(self, adapter):
        first = adapter.assign_asset("u123", "laptop-2")
        second = adapter.assign_asset("u123", "laptop-2")

        assert first.outcome == OutcomeKind.SUCCESS
        assert second.outcome == OutcomeKind.NO_OP
        assert adapter.assets["laptop-2"] == "u123"

    def test_release_asset(self, adapter):
        first = adapter.release_asset("laptop-1")
        second = adapter.release_asset("laptop-1")

        assert first.outcome == OutcomeKind.SUCCESS
        assert second.outcome == OutcomeKind.NO_OP
        assert adapter.assets["laptop-1"] is None

    def test_set_mail_forwarding(self, adapter):
        adapter.set_mail_forwarding("u123", "manager@corp.com")
        second = adapter.set_mail_forwarding("u123", "manager@corp.com")

        assert second.outcome == OutcomeKind.NO_OP
        assert adapter.users["u123"]["forwarding"] == "manager@corp.com"

    def test_send_welcome_email(self, adapter):
        adapter.send_welcome_email("u123", "hr@corp.com")
        second = adapter.send_welcome_email("u123", "hr@corp.com")

        assert second.outcome == OutcomeKind.NO_OP
        assert len(adapter.sent_mail) == 1


class TestMockFailures:
    """Expected and injected failures."""

    def test_unknown_user_is_fatal(self, adapter):
        result = adapter.disable_account("ghost")
        assert result.outcome == OutcomeKind.FATAL
        assert "not found" in result.error

    def test_asset_owned_by_someone_else_is_fatal(self, adapter):
        adapter.add_user("u456")
        result = adapter.assign_asset("u456", "laptop-1")
        assert result.outcome == OutcomeKind.FATAL

    def test_injected_failure_for_limited_calls(self, adapter):
        adapter.inject_failure("disable_account", OutcomeKind.RETRYABLE, times=2)

        assert adapter.disable_account("u123").outcome == OutcomeKind.RETRYABLE
        assert adapter.disable_account("u123").outcome == OutcomeKind.RETRYABLE
        assert adapter.disable_account("u123").outcome == OutcomeKind.SUCCESS
        # Failed calls do not touch state
        assert adapter.calls_to("disable_account") == 3

    def test_injected_failure_forever(self, adapter):
        adapter.inject_failure("revoke_sessions", OutcomeKind.FATAL)

        for _ in range(5):
            assert adapter.revoke_sessions("u123").outcome == OutcomeKind.FATAL
        assert adapter.users["u123"]["sessions"] == 3

    def test_call_log_is_ordered(self, adapter):
        adapter.disable_account("u123")
        adapter.revoke_sessions("u123")

        assert adapter.first_call_time("disable_account") <= adapter.first_call_time("revoke_sessions")
        assert adapter.first_call_time("archive_mailbox_and_files") is None


class TestGetAdapter:
    """Adapter factory."""

    def test_mock_mode_default(self):
        adapter = get_adapter({"mock_users": ["u1", "u2"]})

        assert isinstance(adapter, MockDirectoryAdapter)
        assert adapter.is_mock_mode()
        assert set(adapter.users) == {"u1", "u2"}


class TestGraphDirectoryAdapter:
    """Microsoft Graph adapter with the HTTP layer mocked out."""

    @pytest.fixture
    def graph(self, mocker):
        from lifecycle_engine.connectors.graph_adapter import GraphDirectoryAdapter

        mocker.patch("lifecycle_engine.connectors.graph_adapter.ClientSecretCredential")
        adapter = GraphDirectoryAdapter(
            {"tenant_id": "t", "client_id": "c", "client_secret": "s"}
        )
        adapter.session = mocker.Mock()
        return adapter

    @staticmethod
    def _response(mocker, status, payload=None):
        response = mocker.Mock()
        response.status_code = status
        response.ok = 200 <= status < 300
        response.content = b"{}" if payload is not None else b""
        response.json.return_value = payload or {}
        response.text = ""
        return response

    def test_disable_already_disabled_is_noop(self, graph, mocker):
        graph.session.request.return_value = self._response(
            mocker, 200, {"id": "u123", "accountEnabled": False}
        )

        result = graph.disable_account("u123")

        assert result.outcome == OutcomeKind.NO_OP
        assert graph.session.request.call_count == 1

    def test_throttling_is_retryable(self, graph, mocker):
        graph.session.request.return_value = self._response(
            mocker, 429, {"error": {"code": "TooManyRequests", "message": "slow down"}}
        )

        result = graph.revoke_sessions("u123")

        assert result.outcome == OutcomeKind.RETRYABLE

    def test_timeout_is_retryable(self, graph):
        graph.session.request.side_effect = requests.Timeout("read timed out")

        result = graph.revoke_sessions("u123")

        assert result.outcome == OutcomeKind.RETRYABLE

    def test_forbidden_is_fatal(self, graph, mocker):
        graph.session.request.return_value = self._response(
            mocker, 403, {"error": {"code": "Authorization_RequestDenied", "message": "denied"}}
        )

        result = graph.revoke_sessions("u123")

        assert result.outcome == OutcomeKind.FATAL

    def test_create_account_returns_the_password_it_set(self, graph, mocker):
        graph.session.request.side_effect = [
            self._response(mocker, 404, {"error": {"code": "Request_ResourceNotFound", "message": "none"}}),
            self._response(mocker, 201, {"id": "new-id"}),
        ]
        params = {
            "user_principal_name": "ada@corp.com", "display_name": "Ada", "company": "Corp Ltd",
            "cost_center": "CC-42", "business_phone": "+1 555 0100", "city": "Springfield",
            "start_date": "2024-07-01", "account_expiration": "2024-12-31",
        }

        result = graph.create_account(params)

        body = graph.session.request.call_args_list[1].kwargs["json"]
        assert result.outcome == OutcomeKind.SUCCESS
        assert body["passwordProfile"]["password"] == result.data["temporary_password"]
        assert body["companyName"] == "Corp Ltd"
        assert body["employeeOrgData"] == {"costCenter": "CC-42"}
        assert body["businessPhones"] == ["+1 555 0100"]
        assert body["city"] == "Springfield"
        assert body["employeeHireDate"] == "2024-07-01T00:00:00Z"
        assert body["employeeLeaveDateTime"] == "2024-12-31T00:00:00Z"
        assert "state" not in body

    def test_manager_failure_after_create_is_finished_on_retry(self, graph, mocker):
        not_found = {"error": {"code": "Request_ResourceNotFound", "message": "none"}}
        graph.session.request.side_effect = [
            self._response(mocker, 404, not_found),
            self._response(mocker, 201, {"id": "new-id"}),
            self._response(mocker, 404, not_found),
            self._response(mocker, 503, {"error": {"code": "ServiceUnavailable", "message": "busy"}}),
        ]
        params = {"user_principal_name": "ada@corp.com", "display_name": "Ada", "manager_id": "boss-id"}

        assert graph.create_account(params).outcome == OutcomeKind.RETRYABLE

        graph.session.request.side_effect = [
            self._response(mocker, 200, {"id": "new-id", "userPrincipalName": "ada@corp.com"}),
            self._response(mocker, 404, not_found),
            self._response(mocker, 204),
        ]
        retried = graph.create_account(params)

        method, url = graph.session.request.call_args_list[-1].args
        assert retried.outcome == OutcomeKind.SUCCESS
        assert "set manager boss-id" in retried.message
        assert method == "PUT"
        assert url.endswith("/users/new-id/manager/$ref")

    def test_existing_account_with_manager_is_noop(self, graph, mocker):
        graph.session.request.side_effect = [
            self._response(mocker, 200, {"id": "new-id", "userPrincipalName": "ada@corp.com"}),
            self._response(mocker, 200, {"id": "boss-id", "userPrincipalName": "boss@corp.com"}),
        ]

        result = graph.create_account(
            {"user_principal_name": "ada@corp.com", "display_name": "Ada", "manager_id": "boss@corp.com"}
        )

        assert result.outcome == OutcomeKind.NO_OP
        assert graph.session.request.call_count == 2

    def test_assign_application_checks_existing_assignment(self, graph, mocker):
        graph.session.request.side_effect = [
            self._response(mocker, 200, {"id": "u-id"}),
            self._response(mocker, 200, {"value": [{"id": "a1", "resourceId": "app-crm"}]}),
        ]

        result = graph.assign_application("u123", "app-crm")

        assert result.outcome == OutcomeKind.NO_OP
        assert graph.session.request.call_count == 2

    def test_assign_application_posts_default_role(self, graph, mocker):
        graph.session.request.side_effect = [
            self._response(mocker, 200, {"id": "u-id"}),
            self._response(mocker, 200, {"value": []}),
            self._response(mocker, 201, {"id": "assignment"}),
        ]

        result = graph.assign_application("u123", "app-crm")

        body = graph.session.request.call_args_list[-1].kwargs["json"]
        assert result.outcome == OutcomeKind.SUCCESS
        assert body == {
            "principalId": "u-id",
            "resourceId": "app-crm",
            "appRoleId": "00000000-0000-0000-0000-000000000000",
        }

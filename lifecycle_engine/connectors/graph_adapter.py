"""
Microsoft Graph Directory Adapter for the Lifecycle Engine.

Provides integration with Microsoft Entra ID and Microsoft 365 through the
Graph API for account lifecycle, licensing, group membership, sign-in
sessions, authentication methods, OneDrive access and Intune devices.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

import requests
from azure.core.exceptions import ClientAuthenticationError
from azure.identity import ClientSecretCredential, DefaultAzureCredential

from .base_adapter import AdapterResult, DirectoryAdapter, GroupAction, generate_temporary_password

logger = logging.getLogger(__name__)

GRAPH_SCOPE = "https://graph.microsoft.com/.default"
GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
GRAPH_BETA_URL = "https://graph.microsoft.com/beta"
REQUEST_TIMEOUT = 30
FORWARD_RULE_NAME = "Offboarding mail forwarding"
# Default access role for applications that define no app roles
DEFAULT_APP_ROLE_ID = "00000000-0000-0000-0000-000000000000"

# @odata.type -> authentication method collection segment
MFA_METHOD_SEGMENTS = {
    "#microsoft.graph.phoneAuthenticationMethod": "phoneMethods",
    "#microsoft.graph.microsoftAuthenticatorAuthenticationMethod": "microsoftAuthenticatorMethods",
    "#microsoft.graph.fido2AuthenticationMethod": "fido2Methods",
    "#microsoft.graph.softwareOathAuthenticationMethod": "softwareOathMethods",
    "#microsoft.graph.emailAuthenticationMethod": "emailMethods",
    "#microsoft.graph.windowsHelloForBusinessAuthenticationMethod": "windowsHelloForBusinessMethods",
    "#microsoft.graph.temporaryAccessPassAuthenticationMethod": "temporaryAccessPassMethods",
}


class GraphError(Exception):
    """Raised when the Microsoft Graph API returns an error."""

    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(f"{status_code}: {code} - {message}")
        self.status_code = status_code
        self.code = code
        self.message = message

    @property
    def retryable(self) -> bool:
        return self.status_code == 429 or self.status_code >= 500


class GraphDirectoryAdapter(DirectoryAdapter):
    """Microsoft Graph adapter for Entra ID accounts and Microsoft 365 resources."""

    def __init__(self, config: Optional[Dict[str, Any]] = None, mock_mode: bool = False):
        super().__init__(config, mock_mode)

        self.tenant_id = self.config.get("tenant_id")
        self.client_id = self.config.get("client_id")
        self.timeout = self.config.get("request_timeout", REQUEST_TIMEOUT)
        self.notification_sender = self.config.get("notification_sender")
        self.default_archive_destination = self.config.get("default_archive_destination")

        if self.tenant_id and self.client_id and self.config.get("client_secret"):
            self.credential = ClientSecretCredential(
                tenant_id=self.tenant_id,
                client_id=self.client_id,
                client_secret=self.config["client_secret"],
            )
        else:
            logger.info("Graph client secret not configured, using DefaultAzureCredential")
            self.credential = DefaultAzureCredential()

        self.session = requests.Session()

    # ------------------------------------------------------------------ #
    # HTTP helpers                                                       #
    # ------------------------------------------------------------------ #
    def _request(self, method: str, path: str, base_url: str = GRAPH_BASE_URL,
                 **kwargs: Any) -> Dict[str, Any]:
        token = self.credential.get_token(GRAPH_SCOPE).token
        headers = kwargs.pop("headers", {}) or {}
        headers.setdefault("Authorization", f"Bearer {token}")
        headers.setdefault("Accept", "application/json")

        response = self.session.request(
            method, base_url + path, timeout=self.timeout, headers=headers, **kwargs
        )
        if response.status_code in (201, 202, 204) and not response.content:
            return {}

        if response.status_code >= 400:
            try:
                error = response.json().get("error", {})
                code = error.get("code", "GraphError")
                message = error.get("message", response.text)
            except ValueError:
                code = "GraphError"
                message = response.text or "Unknown Graph error"
            raise GraphError(response.status_code, code, message)

        return response.json() if response.content else {}

    def _execute(self, description: str, operation: Callable[[], AdapterResult]) -> AdapterResult:
        """Run a Graph operation and classify any failure."""
        try:
            return operation()
        except GraphError as e:
            error_msg = f"Failed to {description}: {e}"
            if e.retryable:
                logger.warning(error_msg)
                return AdapterResult.retryable(error_msg)
            logger.error(error_msg)
            return AdapterResult.fatal(error_msg)
        except (requests.Timeout, requests.ConnectionError) as e:
            error_msg = f"Failed to {description}: network error: {e}"
            logger.warning(error_msg)
            return AdapterResult.retryable(error_msg)
        except ClientAuthenticationError as e:
            error_msg = f"Failed to {description}: authentication failed: {e}"
            logger.error(error_msg)
            return AdapterResult.fatal(error_msg)

    def _get_user(self, identity: str, select: str = "id,userPrincipalName") -> Optional[Dict[str, Any]]:
        try:
            return self._request("GET", f"/users/{identity}", params={"$select": select})
        except GraphError as e:
            if e.status_code == 404:
                return None
            raise

    def _require_user(self, identity: str, select: str = "id,userPrincipalName") -> Dict[str, Any]:
        user = self._get_user(identity, select)
        if user is None:
            raise GraphError(404, "Request_ResourceNotFound", f"User {identity} not found")
        return user

    @staticmethod
    def _graph_date(value: Optional[str]) -> Optional[str]:
        """ISO date to the DateTimeOffset form Graph expects."""
        return f"{value}T00:00:00Z" if value else None

    def _account_body(self, params: Dict[str, Any], password: str) -> Dict[str, Any]:
        upn = params["user_principal_name"]
        body = {
            "accountEnabled": True,
            "displayName": params.get("display_name"),
            "mailNickname": params.get("mail_nickname") or upn.split("@")[0],
            "userPrincipalName": upn,
            "givenName": params.get("given_name"),
            "surname": params.get("surname"),
            "department": params.get("department"),
            "jobTitle": params.get("job_title"),
            "companyName": params.get("company"),
            "employeeId": params.get("employee_id"),
            "employeeHireDate": self._graph_date(params.get("start_date")),
            "employeeLeaveDateTime": self._graph_date(params.get("account_expiration")),
            "officeLocation": params.get("office_location"),
            "mobilePhone": params.get("mobile_phone"),
            "businessPhones": [params["business_phone"]] if params.get("business_phone") else None,
            "streetAddress": params.get("street_address"),
            "city": params.get("city"),
            "state": params.get("state"),
            "postalCode": params.get("postal_code"),
            "country": params.get("country"),
            "usageLocation": params.get("usage_location"),
            "employeeOrgData": (
                {"costCenter": params["cost_center"]} if params.get("cost_center") else None
            ),
            "passwordProfile": {
                "forceChangePasswordNextSignIn": params.get("force_password_change", True),
                "password": password,
            },
        }
        return {k: v for k, v in body.items() if v is not None}

    def _ensure_manager(self, user_id: str, manager_id: str) -> bool:
        """Point the user at its manager unless already set; True if changed."""
        try:
            current = self._request(
                "GET", f"/users/{user_id}/manager", params={"$select": "id,userPrincipalName"}
            )
        except GraphError as e:
            if e.status_code != 404:
                raise
            current = {}

        if manager_id in (current.get("id"), current.get("userPrincipalName")):
            return False

        self._request(
            "PUT",
            f"/users/{user_id}/manager/$ref",
            json={"@odata.id": f"{GRAPH_BASE_URL}/users/{manager_id}"},
        )
        return True

    # ------------------------------------------------------------------ #
    # Directory operations                                               #
    # ------------------------------------------------------------------ #
    def create_account(self, params: Dict[str, Any]) -> AdapterResult:
        upn = params["user_principal_name"]
        manager_id = params.get("manager_id")

        def operation() -> AdapterResult:
            existing = self._get_user(upn)
            if existing:
                reference = {"id": existing["id"], "user_principal_name": upn}
                # A manager PUT that failed after the user POST is finished here
                if manager_id and self._ensure_manager(existing["id"], manager_id):
                    return AdapterResult.ok(
                        f"Account {upn} already exists; set manager {manager_id}", reference
                    )
                return AdapterResult.noop(f"Account {upn} already exists", reference)

            password = generate_temporary_password()
            created = self._request("POST", "/users", json=self._account_body(params, password))
            if manager_id:
                self._ensure_manager(created["id"], manager_id)

            logger.info(f"Created Entra ID account {upn}")
            return AdapterResult.ok(
                f"Created account {upn}",
                {"id": created["id"], "user_principal_name": upn, "temporary_password": password},
            )

        return self._execute(f"create account {upn}", operation)

    def disable_account(self, identity: str) -> AdapterResult:
        def operation() -> AdapterResult:
            user = self._require_user(identity, "id,accountEnabled")
            if user.get("accountEnabled") is False:
                return AdapterResult.noop(f"Account {identity} already disabled")
            self._request("PATCH", f"/users/{user['id']}", json={"accountEnabled": False})
            return AdapterResult.ok(f"Disabled account {identity}")

        return self._execute(f"disable account {identity}", operation)

    def assign_license(self, identity: str, license_id: str) -> AdapterResult:
        def operation() -> AdapterResult:
            user = self._require_user(identity)
            details = self._request("GET", f"/users/{user['id']}/licenseDetails")
            assigned = {d.get("skuId") for d in details.get("value", [])}
            if license_id in assigned:
                return AdapterResult.noop(f"License {license_id} already assigned to {identity}")

            payload = {
                "addLicenses": [{"skuId": license_id, "disabledPlans": []}],
                "removeLicenses": [],
            }
            try:
                self._request("POST", f"/users/{user['id']}/assignLicense", json=payload)
            except GraphError as e:
                if e.status_code == 400 and "available licenses" in e.message.lower():
                    logger.warning(f"No units of license {license_id} available for {identity}")
                    return AdapterResult.noop(
                        f"License {license_id} unavailable; assignment deferred",
                        {"license_unavailable": True},
                    )
                raise
            return AdapterResult.ok(f"Assigned {license_id} to {identity}")

        return self._execute(f"assign license {license_id} to {identity}", operation)

    def modify_group_membership(self, identity: str, group_ids: List[str],
                                action: GroupAction) -> AdapterResult:
        def operation() -> AdapterResult:
            user = self._require_user(identity)
            user_id = user["id"]
            changed = []

            if action == GroupAction.ADD:
                for group_id in group_ids:
                    try:
                        self._request(
                            "POST",
                            f"/groups/{group_id}/members/$ref",
                            json={"@odata.id": f"{GRAPH_BASE_URL}/directoryObjects/{user_id}"},
                        )
                        changed.append(group_id)
                    except GraphError as e:
                        if e.status_code == 400 and "already exist" in e.message.lower():
                            continue
                        raise
            else:
                targets = list(group_ids) or self._removable_groups(user_id)
                for group_id in targets:
                    try:
                        self._request("DELETE", f"/groups/{group_id}/members/{user_id}/$ref")
                        changed.append(group_id)
                    except GraphError as e:
                        if e.status_code == 404:
                            continue
                        raise

            if not changed:
                return AdapterResult.noop(
                    f"Group membership of {identity} already up to date", {"groups": []}
                )
            return AdapterResult.ok(
                f"{action.value} {len(changed)} groups for {identity}", {"groups": changed}
            )

        return self._execute(f"{action.value} group membership for {identity}", operation)

    def _removable_groups(self, user_id: str) -> List[str]:
        """Assigned, cloud-managed groups the user belongs to."""
        result = self._request(
            "GET",
            f"/users/{user_id}/memberOf/microsoft.graph.group",
            params={"$select": "id,groupTypes,onPremisesSyncEnabled"},
        )
        groups = []
        for group in result.get("value", []):
            if "DynamicMembership" in (group.get("groupTypes") or []):
                continue
            if group.get("onPremisesSyncEnabled"):
                continue
            groups.append(group["id"])
        return groups

    def assign_application(self, identity: str, application_id: str) -> AdapterResult:
        def operation() -> AdapterResult:
            user = self._require_user(identity)
            assignments = self._request(
                "GET",
                f"/users/{user['id']}/appRoleAssignments",
                params={"$select": "id,resourceId"},
            )
            if any(a.get("resourceId") == application_id for a in assignments.get("value", [])):
                return AdapterResult.noop(f"{identity} already has access to {application_id}")

            self._request(
                "POST",
                f"/users/{user['id']}/appRoleAssignments",
                json={
                    "principalId": user["id"],
                    "resourceId": application_id,
                    "appRoleId": DEFAULT_APP_ROLE_ID,
                },
            )
            return AdapterResult.ok(f"Assigned application {application_id} to {identity}")

        return self._execute(f"assign application {application_id} to {identity}", operation)

    def revoke_sessions(self, identity: str) -> AdapterResult:
        def operation() -> AdapterResult:
            user = self._require_user(identity)
            self._request("POST", f"/users/{user['id']}/revokeSignInSessions")
            return AdapterResult.ok(f"Revoked sessions for {identity}")

        return self._execute(f"revoke sessions for {identity}", operation)

    def remove_mfa_methods(self, identity: str) -> AdapterResult:
        def operation() -> AdapterResult:
            user = self._require_user(identity)
            methods = self._request("GET", f"/users/{user['id']}/authentication/methods")
            removed = []
            for method in methods.get("value", []):
                segment = MFA_METHOD_SEGMENTS.get(method.get("@odata.type", ""))
                if not segment:
                    continue
                try:
                    self._request(
                        "DELETE", f"/users/{user['id']}/authentication/{segment}/{method['id']}"
                    )
                    removed.append(segment)
                except GraphError as e:
                    if e.status_code != 404:
                        raise

            if not removed:
                return AdapterResult.noop(f"No MFA methods registered for {identity}", {"removed": []})
            return AdapterResult.ok(
                f"Removed {len(removed)} MFA methods for {identity}", {"removed": removed}
            )

        return self._execute(f"remove MFA methods for {identity}", operation)

    def archive_mailbox_and_files(self, identity: str,
                                  destination: Optional[str]) -> AdapterResult:
        destination = destination or self.default_archive_destination
        if not destination:
            return AdapterResult.fatal("No archive destination configured")

        def operation() -> AdapterResult:
            user = self._require_user(identity)
            try:
                permissions = self._request("GET", f"/users/{user['id']}/drive/root/permissions")
            except GraphError as e:
                if e.status_code == 404:
                    return AdapterResult.noop(f"No OneDrive provisioned for {identity}")
                raise

            for permission in permissions.get("value", []):
                granted = (permission.get("grantedToV2") or {}).get("user") or {}
                invited = permission.get("invitation") or {}
                if destination.lower() in (str(granted.get("email", "")).lower(),
                                           str(invited.get("email", "")).lower()):
                    return AdapterResult.noop(f"Data for {identity} already shared with {destination}")

            self._request(
                "POST",
                f"/users/{user['id']}/drive/root/invite",
                json={
                    "recipients": [{"email": destination}],
                    "roles": ["write"],
                    "requireSignIn": True,
                    "sendInvitation": False,
                },
            )
            logger.info(f"Granted {destination} access to OneDrive of {identity}; "
                        "mailbox content stays under the tenant retention policy")
            return AdapterResult.ok(f"Archived data for {identity} to {destination}",
                                    {"destination": destination})

        return self._execute(f"archive data for {identity}", operation)

    def assign_asset(self, identity: str, asset_id: str) -> AdapterResult:
        def operation() -> AdapterResult:
            user = self._require_user(identity)
            current = self._request(
                "GET", f"/deviceManagement/managedDevices/{asset_id}/users", base_url=GRAPH_BETA_URL
            )
            if any(u.get("id") == user["id"] for u in current.get("value", [])):
                return AdapterResult.noop(f"Asset {asset_id} already assigned to {identity}")

            self._request(
                "POST",
                f"/deviceManagement/managedDevices/{asset_id}/users/$ref",
                base_url=GRAPH_BETA_URL,
                json={"@odata.id": f"{GRAPH_BETA_URL}/users/{user['id']}"},
            )
            return AdapterResult.ok(f"Assigned asset {asset_id} to {identity}")

        return self._execute(f"assign asset {asset_id} to {identity}", operation)

    def release_asset(self, asset_id: str) -> AdapterResult:
        def operation() -> AdapterResult:
            current = self._request(
                "GET", f"/deviceManagement/managedDevices/{asset_id}/users", base_url=GRAPH_BETA_URL
            )
            if not current.get("value"):
                return AdapterResult.noop(f"Asset {asset_id} already released")

            self._request(
                "DELETE", f"/deviceManagement/managedDevices/{asset_id}/users/$ref",
                base_url=GRAPH_BETA_URL,
            )
            return AdapterResult.ok(f"Released asset {asset_id}")

        return self._execute(f"release asset {asset_id}", operation)

    def set_mail_forwarding(self, identity: str, forward_to: str) -> AdapterResult:
        def operation() -> AdapterResult:
            user = self._require_user(identity)
            rules_path = f"/users/{user['id']}/mailFolders/inbox/messageRules"
            rules = self._request("GET", rules_path)
            body = {
                "displayName": FORWARD_RULE_NAME,
                "sequence": 1,
                "isEnabled": True,
                "actions": {
                    "forwardTo": [{"emailAddress": {"address": forward_to}}],
                    "stopProcessingRules": True,
                },
            }

            for rule in rules.get("value", []):
                if rule.get("displayName") != FORWARD_RULE_NAME:
                    continue
                targets = [
                    r.get("emailAddress", {}).get("address", "").lower()
                    for r in (rule.get("actions") or {}).get("forwardTo", [])
                ]
                if targets == [forward_to.lower()] and rule.get("isEnabled"):
                    return AdapterResult.noop(f"Mail for {identity} already forwarded to {forward_to}")
                self._request("PATCH", f"{rules_path}/{rule['id']}", json=body)
                return AdapterResult.ok(f"Updated forwarding for {identity} to {forward_to}")

            self._request("POST", rules_path, json=body)
            return AdapterResult.ok(f"Forwarding mail for {identity} to {forward_to}")

        return self._execute(f"forward mail for {identity}", operation)

    def send_welcome_email(self, identity: str, recipient: Optional[str]) -> AdapterResult:
        if not self.notification_sender:
            return AdapterResult.fatal("No notification sender mailbox configured")

        recipient = recipient or identity
        subject = f"Welcome aboard: {identity}"

        def operation() -> AdapterResult:
            escaped = subject.replace("'", "''")
            sent = self._request(
                "GET",
                f"/users/{self.notification_sender}/mailFolders/sentitems/messages",
                params={"$filter": f"subject eq '{escaped}'", "$top": "1", "$select": "id"},
            )
            if sent.get("value"):
                return AdapterResult.noop(f"Welcome email for {identity} already sent")

            self._request(
                "POST",
                f"/users/{self.notification_sender}/sendMail",
                json={
                    "message": {
                        "subject": subject,
                        "body": {
                            "contentType": "Text",
                            "content": f"Your account {identity} is ready. "
                                       "Sign in with the temporary password provided by IT.",
                        },
                        "toRecipients": [{"emailAddress": {"address": recipient}}],
                    },
                    "saveToSentItems": True,
                },
            )
            return AdapterResult.ok(f"Sent welcome email for {identity} to {recipient}")

        return self._execute(f"send welcome email for {identity}", operation)

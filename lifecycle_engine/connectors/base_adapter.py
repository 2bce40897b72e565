"""
Base Directory Adapter Classes for the Lifecycle Engine.

This module provides the uniform interface the orchestrator uses to act on
the external identity provider, together with an in-memory mock backend.
"""

import logging
import secrets
import string
import threading
import time
import uuid
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..models import utcnow

logger = logging.getLogger(__name__)

# Result data keys holding secrets that are handed out once and never stored
CREDENTIAL_KEYS = ("temporary_password",)


def generate_temporary_password(length: int = 16) -> str:
    """Random initial password meeting Entra ID complexity rules."""
    alphabet = string.ascii_letters + string.digits + "!@#$%^&*"
    while True:
        password = "".join(secrets.choice(alphabet) for _ in range(length))
        if (any(c.islower() for c in password) and any(c.isupper() for c in password)
                and any(c.isdigit() for c in password)):
            return password


class OutcomeKind(str, Enum):
    """Classified outcome of a directory operation."""
    SUCCESS = "SUCCESS"
    NO_OP = "NO_OP"
    RETRYABLE = "RETRYABLE"
    FATAL = "FATAL"


class GroupAction(str, Enum):
    """Direction of a group membership change."""
    ADD = "add"
    REMOVE = "remove"


class AdapterResult:
    """Result of a directory adapter operation."""

    def __init__(self, outcome: OutcomeKind, message: str = "", data: Optional[Any] = None,
                 error: Optional[str] = None):
        self.outcome = outcome
        self.message = message
        self.data = data
        self.error = error

    @classmethod
    def ok(cls, message: str = "", data: Optional[Any] = None) -> "AdapterResult":
        return cls(OutcomeKind.SUCCESS, message, data)

    @classmethod
    def noop(cls, message: str = "", data: Optional[Any] = None) -> "AdapterResult":
        """The desired end state already holds."""
        return cls(OutcomeKind.NO_OP, message, data)

    @classmethod
    def retryable(cls, error: str) -> "AdapterResult":
        return cls(OutcomeKind.RETRYABLE, error, error=error)

    @classmethod
    def fatal(cls, error: str) -> "AdapterResult":
        return cls(OutcomeKind.FATAL, error, error=error)

    @property
    def success(self) -> bool:
        return self.outcome in (OutcomeKind.SUCCESS, OutcomeKind.NO_OP)

    def __bool__(self):
        return self.success

    def __str__(self):
        return f"{'✓' if self.success else '✗'} {self.message}"

    def __repr__(self):
        return f"AdapterResult({self.outcome.value}, {self.message!r})"


class DirectoryAdapter(ABC):
    """
    Abstract base class for directory adapters.

    Every method must be safe to call more than once with the same
    arguments. Conditions where the desired end state already holds are
    reported as ``NO_OP`` rather than as failures.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None, mock_mode: bool = False):
        """
        Initialize the adapter.

        Args:
            config: Configuration dictionary with API credentials, endpoints, etc.
            mock_mode: If True, the adapter uses an in-memory backend
        """
        self.config = config or {}
        self.mock_mode = mock_mode

        logger.info(f"Initialized {self.__class__.__name__} (mock_mode={mock_mode})")

    @abstractmethod
    def create_account(self, params: Dict[str, Any]) -> AdapterResult:
        """
        Create a new user account and set its manager.

        Args:
            params: Account attributes (display_name, user_principal_name, ...)

        Returns:
            AdapterResult whose data is the account reference. A newly
            created account also carries its ``temporary_password``.
        """
        pass

    @abstractmethod
    def disable_account(self, identity: str) -> AdapterResult:
        """Block sign-in for an account."""
        pass

    @abstractmethod
    def assign_license(self, identity: str, license_id: str) -> AdapterResult:
        """Assign a license SKU to an account if not already assigned."""
        pass

    @abstractmethod
    def modify_group_membership(self, identity: str, group_ids: List[str],
                                action: GroupAction) -> AdapterResult:
        """
        Add the account to, or remove it from, groups.

        Args:
            identity: Directory user identifier
            group_ids: Target groups. With ``GroupAction.REMOVE`` an empty
                list means every group the account currently belongs to.
            action: Add or remove

        Returns:
            AdapterResult with the groups actually changed
        """
        pass

    @abstractmethod
    def assign_application(self, identity: str, application_id: str) -> AdapterResult:
        """Grant the account access to an enterprise application."""
        pass

    @abstractmethod
    def revoke_sessions(self, identity: str) -> AdapterResult:
        """Invalidate every refresh token and session cookie of the account."""
        pass

    @abstractmethod
    def remove_mfa_methods(self, identity: str) -> AdapterResult:
        """Delete every registered strong authentication method."""
        pass

    @abstractmethod
    def archive_mailbox_and_files(self, identity: str,
                                  destination: Optional[str]) -> AdapterResult:
        """Preserve the account's mailbox and files for the given destination."""
        pass

    @abstractmethod
    def assign_asset(self, identity: str, asset_id: str) -> AdapterResult:
        """Make the account the primary user of an asset."""
        pass

    @abstractmethod
    def release_asset(self, asset_id: str) -> AdapterResult:
        """Clear the primary user of an asset so it can be recovered."""
        pass

    @abstractmethod
    def set_mail_forwarding(self, identity: str, forward_to: str) -> AdapterResult:
        """Forward incoming mail for the account to another address."""
        pass

    @abstractmethod
    def send_welcome_email(self, identity: str, recipient: Optional[str]) -> AdapterResult:
        """Send the new-starter welcome message once."""
        pass

    def get_system_name(self) -> str:
        """Get the name of the directory this adapter manages."""
        return self.__class__.__name__.replace("DirectoryAdapter", "").lower() or "directory"

    def is_mock_mode(self) -> bool:
        """Check if this adapter is running in mock mode."""
        return self.mock_mode


class MockDirectoryAdapter(DirectoryAdapter):
    """
    In-memory directory for tests, simulations and the default API mode.

    Records every call with a monotonic timestamp and supports scripted
    failures through ``inject_failure``.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 seed_users: Optional[List[str]] = None):
        super().__init__(config, mock_mode=True)

        self._lock = threading.RLock()
        self.users: Dict[str, Dict[str, Any]] = {}
        self.groups: Dict[str, List[str]] = {}  # group_id -> list of user ids
        self.assets: Dict[str, Optional[str]] = {}  # asset_id -> primary user
        self.archives: Dict[str, str] = {}  # user id -> destination
        self.sent_mail: List[Dict[str, Any]] = []
        self.call_log: List[Tuple[str, Tuple[Any, ...], float]] = []
        self._failures: Dict[str, List[Tuple[OutcomeKind, Optional[int], str]]] = {}

        for user_id in seed_users or self.config.get("mock_users", []):
            self.add_user(user_id)

    # ------------------------------------------------------------------ #
    # Test helpers                                                       #
    # ------------------------------------------------------------------ #
    def add_user(self, user_id: str, groups: Optional[List[str]] = None,
                 mfa_methods: Optional[List[str]] = None, sessions: int = 1,
                 licenses: Optional[List[str]] = None, enabled: bool = True):
        """Seed an existing account."""
        with self._lock:
            self.users[user_id] = {
                "id": user_id,
                "user_principal_name": user_id,
                "enabled": enabled,
                "licenses": list(licenses or []),
                "groups": [],
                "applications": [],
                "manager": None,
                "mfa_methods": list(mfa_methods if mfa_methods is not None else ["microsoftAuthenticator"]),
                "sessions": sessions,
                "forwarding": None,
                "created_at": utcnow(),
            }
            for group_id in groups or []:
                self.groups.setdefault(group_id, []).append(user_id)
                self.users[user_id]["groups"].append(group_id)

    def add_asset(self, asset_id: str, primary_user: Optional[str] = None):
        """Seed an asset in the inventory."""
        with self._lock:
            self.assets[asset_id] = primary_user

    def inject_failure(self, operation: str, outcome: OutcomeKind = OutcomeKind.RETRYABLE,
                       times: Optional[int] = None, message: str = "injected failure"):
        """
        Make an operation fail.

        Args:
            operation: Adapter method name (disable_account, ...)
            outcome: RETRYABLE or FATAL
            times: Number of calls to fail; None fails every call
            message: Error message to report
        """
        with self._lock:
            self._failures.setdefault(operation, []).append((outcome, times, message))

    def calls_to(self, operation: str) -> int:
        """Number of recorded calls to an operation."""
        return len([c for c in self.call_log if c[0] == operation])

    def first_call_time(self, operation: str) -> Optional[float]:
        for name, _, at in self.call_log:
            if name == operation:
                return at
        return None

    def _record(self, operation: str, *args: Any) -> Optional[AdapterResult]:
        """Log the call and return an injected failure if one is scripted."""
        with self._lock:
            self.call_log.append((operation, args, time.monotonic()))
            scripted = self._failures.get(operation)
            if not scripted:
                return None

            outcome, remaining, message = scripted[0]
            if remaining is not None:
                if remaining <= 1:
                    scripted.pop(0)
                else:
                    scripted[0] = (outcome, remaining - 1, message)

            if outcome == OutcomeKind.FATAL:
                return AdapterResult.fatal(message)
            return AdapterResult.retryable(message)

    def _missing(self, identity: str) -> AdapterResult:
        return AdapterResult.fatal(f"User {identity} not found")

    # ------------------------------------------------------------------ #
    # Directory operations                                               #
    # ------------------------------------------------------------------ #
    def create_account(self, params: Dict[str, Any]) -> AdapterResult:
        upn = params["user_principal_name"]
        failure = self._record("create_account", upn)
        if failure:
            return failure

        manager_id = params.get("manager_id")
        reference = {"id": upn, "user_principal_name": upn}
        with self._lock:
            user = self.users.get(upn)
            if user is not None:
                if manager_id and user.get("manager") != manager_id:
                    user["manager"] = manager_id
                    return AdapterResult.ok(f"Account {upn} already exists; set manager {manager_id}",
                                            reference)
                return AdapterResult.noop(f"Account {upn} already exists", reference)

            password = generate_temporary_password()
            self.users[upn] = {
                "id": upn,
                "user_principal_name": upn,
                "display_name": params.get("display_name"),
                "attributes": {k: v for k, v in params.items() if v is not None},
                "password": password,
                "enabled": True,
                "licenses": [],
                "groups": [],
                "applications": [],
                "manager": manager_id,
                "mfa_methods": [],
                "sessions": 0,
                "forwarding": None,
                "created_at": utcnow(),
            }

        logger.info(f"Mock created account: {upn}")
        return AdapterResult.ok(f"Created account {upn}",
                                {**reference, "temporary_password": password})

    def disable_account(self, identity: str) -> AdapterResult:
        failure = self._record("disable_account", identity)
        if failure:
            return failure

        with self._lock:
            user = self.users.get(identity)
            if not user:
                return self._missing(identity)
            if not user["enabled"]:
                return AdapterResult.noop(f"Account {identity} already disabled")
            user["enabled"] = False

        logger.info(f"Mock disabled account: {identity}")
        return AdapterResult.ok(f"Disabled account {identity}")

    def assign_license(self, identity: str, license_id: str) -> AdapterResult:
        failure = self._record("assign_license", identity, license_id)
        if failure:
            return failure

        with self._lock:
            user = self.users.get(identity)
            if not user:
                return self._missing(identity)
            if license_id in user["licenses"]:
                return AdapterResult.noop(f"License {license_id} already assigned to {identity}")
            user["licenses"].append(license_id)

        logger.info(f"Mock assigned license {license_id} to {identity}")
        return AdapterResult.ok(f"Assigned {license_id} to {identity}")

    def modify_group_membership(self, identity: str, group_ids: List[str],
                                action: GroupAction) -> AdapterResult:
        failure = self._record("modify_group_membership", identity, tuple(group_ids), action.value)
        if failure:
            return failure

        with self._lock:
            user = self.users.get(identity)
            if not user:
                return self._missing(identity)

            changed = []
            if action == GroupAction.ADD:
                for group_id in group_ids:
                    members = self.groups.setdefault(group_id, [])
                    if identity not in members:
                        members.append(identity)
                        user["groups"].append(group_id)
                        changed.append(group_id)
            else:
                targets = list(group_ids) if group_ids else list(user["groups"])
                for group_id in targets:
                    members = self.groups.get(group_id, [])
                    if identity in members:
                        members.remove(identity)
                    if group_id in user["groups"]:
                        user["groups"].remove(group_id)
                        changed.append(group_id)

        if not changed:
            return AdapterResult.noop(f"Group membership of {identity} already up to date",
                                      {"groups": []})

        logger.info(f"Mock {action.value} {identity} groups: {changed}")
        return AdapterResult.ok(f"{action.value} {len(changed)} groups for {identity}",
                                {"groups": changed})

    def assign_application(self, identity: str, application_id: str) -> AdapterResult:
        failure = self._record("assign_application", identity, application_id)
        if failure:
            return failure

        with self._lock:
            user = self.users.get(identity)
            if not user:
                return self._missing(identity)
            if application_id in user["applications"]:
                return AdapterResult.noop(f"{identity} already has access to {application_id}")
            user["applications"].append(application_id)

        return AdapterResult.ok(f"Assigned application {application_id} to {identity}")

    def revoke_sessions(self, identity: str) -> AdapterResult:
        failure = self._record("revoke_sessions", identity)
        if failure:
            return failure

        with self._lock:
            user = self.users.get(identity)
            if not user:
                return self._missing(identity)
            user["sessions"] = 0

        return AdapterResult.ok(f"Revoked sessions for {identity}")

    def remove_mfa_methods(self, identity: str) -> AdapterResult:
        failure = self._record("remove_mfa_methods", identity)
        if failure:
            return failure

        with self._lock:
            user = self.users.get(identity)
            if not user:
                return self._missing(identity)
            removed = list(user["mfa_methods"])
            user["mfa_methods"] = []

        if not removed:
            return AdapterResult.noop(f"No MFA methods registered for {identity}", {"removed": []})
        return AdapterResult.ok(f"Removed {len(removed)} MFA methods for {identity}",
                                {"removed": removed})

    def archive_mailbox_and_files(self, identity: str,
                                  destination: Optional[str]) -> AdapterResult:
        failure = self._record("archive_mailbox_and_files", identity, destination)
        if failure:
            return failure

        destination = destination or self.config.get("default_archive_destination") or "archive"
        with self._lock:
            if identity not in self.users:
                return self._missing(identity)
            if self.archives.get(identity) == destination:
                return AdapterResult.noop(f"Data for {identity} already archived to {destination}")
            self.archives[identity] = destination

        return AdapterResult.ok(f"Archived data for {identity} to {destination}",
                                {"destination": destination})

    def assign_asset(self, identity: str, asset_id: str) -> AdapterResult:
        failure = self._record("assign_asset", identity, asset_id)
        if failure:
            return failure

        with self._lock:
            if asset_id not in self.assets:
                return AdapterResult.fatal(f"Asset {asset_id} not found")
            current = self.assets[asset_id]
            if current == identity:
                return AdapterResult.noop(f"Asset {asset_id} already assigned to {identity}")
            if current is not None:
                return AdapterResult.fatal(f"Asset {asset_id} is assigned to {current}")
            self.assets[asset_id] = identity

        return AdapterResult.ok(f"Assigned asset {asset_id} to {identity}")

    def release_asset(self, asset_id: str) -> AdapterResult:
        failure = self._record("release_asset", asset_id)
        if failure:
            return failure

        with self._lock:
            if asset_id not in self.assets:
                return AdapterResult.fatal(f"Asset {asset_id} not found")
            if self.assets[asset_id] is None:
                return AdapterResult.noop(f"Asset {asset_id} already released")
            self.assets[asset_id] = None

        return AdapterResult.ok(f"Released asset {asset_id}")

    def set_mail_forwarding(self, identity: str, forward_to: str) -> AdapterResult:
        failure = self._record("set_mail_forwarding", identity, forward_to)
        if failure:
            return failure

        with self._lock:
            user = self.users.get(identity)
            if not user:
                return self._missing(identity)
            if user["forwarding"] == forward_to:
                return AdapterResult.noop(f"Mail for {identity} already forwarded to {forward_to}")
            user["forwarding"] = forward_to

        return AdapterResult.ok(f"Forwarding mail for {identity} to {forward_to}")

    def send_welcome_email(self, identity: str, recipient: Optional[str]) -> AdapterResult:
        failure = self._record("send_welcome_email", identity, recipient)
        if failure:
            return failure

        recipient = recipient or identity
        with self._lock:
            if identity not in self.users:
                return self._missing(identity)
            for mail in self.sent_mail:
                if mail["identity"] == identity and mail["recipient"] == recipient:
                    return AdapterResult.noop(f"Welcome email for {identity} already sent")
            self.sent_mail.append({
                "id": str(uuid.uuid4()),
                "identity": identity,
                "recipient": recipient,
                "sent_at": utcnow(),
            })

        return AdapterResult.ok(f"Sent welcome email for {identity} to {recipient}")

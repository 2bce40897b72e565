"""
Task Catalog for the Lifecycle Engine.

This module holds the ordered task templates for each workflow kind and
optionally reads a task_catalog.yaml override. Ordering encodes dependency:
a template may only depend on templates listed before it.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from ..models import TaskTemplate, TaskType, WorkflowKind

logger = logging.getLogger(__name__)


DEFAULT_CATALOG: Dict[WorkflowKind, List[TaskTemplate]] = {
    WorkflowKind.ONBOARDING: [
        TaskTemplate(
            task_type=TaskType.CREATE_ACCOUNT,
            name="Create M365 Account",
            mandatory=True,
        ),
        TaskTemplate(
            task_type=TaskType.ASSIGN_LICENSE,
            name="Assign License",
            mandatory=True,
            depends_on=[TaskType.CREATE_ACCOUNT],
        ),
        TaskTemplate(
            task_type=TaskType.ADD_GROUP_MEMBERSHIPS,
            name="Add to Groups",
            mandatory=True,
            depends_on=[TaskType.ASSIGN_LICENSE],
            requires="group_ids",
        ),
        TaskTemplate(
            task_type=TaskType.ASSIGN_APPLICATIONS,
            name="Assign Applications",
            mandatory=False,
            depends_on=[TaskType.ASSIGN_LICENSE],
            requires="application_ids",
        ),
        TaskTemplate(
            task_type=TaskType.ASSIGN_ASSETS,
            name="Assign Assets",
            mandatory=False,
            depends_on=[TaskType.ASSIGN_LICENSE],
            requires="asset_ids",
        ),
        TaskTemplate(
            task_type=TaskType.SEND_WELCOME_EMAIL,
            name="Send Welcome Email",
            mandatory=False,
            depends_on=[TaskType.ASSIGN_LICENSE],
            enabled_by="send_welcome_email",
        ),
    ],
    WorkflowKind.OFFBOARDING: [
        TaskTemplate(
            task_type=TaskType.DISABLE_ACCOUNT,
            name="Disable Account",
            mandatory=True,
            enabled_by="disable_account",
        ),
        TaskTemplate(
            task_type=TaskType.REVOKE_SESSIONS,
            name="Revoke Sessions",
            mandatory=True,
            enabled_by="revoke_sessions",
        ),
        TaskTemplate(
            task_type=TaskType.REMOVE_MFA_METHODS,
            name="Remove MFA",
            mandatory=False,
            depends_on=[TaskType.DISABLE_ACCOUNT],
            enabled_by="remove_mfa",
        ),
        TaskTemplate(
            task_type=TaskType.REMOVE_GROUP_MEMBERSHIPS,
            name="Remove from Groups",
            mandatory=False,
            depends_on=[TaskType.DISABLE_ACCOUNT],
            enabled_by="remove_groups",
        ),
        TaskTemplate(
            task_type=TaskType.CONFIGURE_MAIL_FORWARDING,
            name="Forward Email",
            mandatory=False,
            depends_on=[TaskType.DISABLE_ACCOUNT],
            requires="forward_email",
        ),
        TaskTemplate(
            task_type=TaskType.ARCHIVE_MAILBOX_AND_FILES,
            name="Archive Data",
            mandatory=True,
            depends_on=[TaskType.DISABLE_ACCOUNT, TaskType.REVOKE_SESSIONS],
            enabled_by="archive_data",
        ),
        TaskTemplate(
            task_type=TaskType.RELEASE_ASSETS,
            name="Recover Assets",
            mandatory=False,
            depends_on=[TaskType.DISABLE_ACCOUNT],
            requires="asset_ids",
        ),
    ],
}


class TaskCatalog:
    """
    Ordered task templates per workflow kind.

    Consulted only when a workflow instance is created, so changing the
    catalog never affects instances that are already running.
    """

    def __init__(self, catalog_file: Optional[Union[str, Path]] = None):
        """
        Initialize the task catalog.

        Args:
            catalog_file: Optional YAML file replacing the built-in task
                         lists for the kinds it names
        """
        self.catalog_file = Path(catalog_file) if catalog_file else None
        self._templates: Dict[WorkflowKind, List[TaskTemplate]] = {
            kind: [t.model_copy(deep=True) for t in templates]
            for kind, templates in DEFAULT_CATALOG.items()
        }

        if self.catalog_file:
            self._load_overrides()

        for kind, templates in self._templates.items():
            self._validate(kind, templates)

    def _load_overrides(self):
        """Load task list overrides from YAML."""
        if not self.catalog_file.exists():
            logger.warning(f"Task catalog file not found: {self.catalog_file}")
            return

        with open(self.catalog_file, encoding="utf-8") as f:
            data: Dict[str, Any] = yaml.safe_load(f) or {}

        for kind_name, entries in data.items():
            kind = WorkflowKind(str(kind_name).upper())
            self._templates[kind] = [TaskTemplate(**entry) for entry in entries or []]
            logger.info(f"Loaded {len(self._templates[kind])} {kind.value} tasks from {self.catalog_file}")

    @staticmethod
    def _validate(kind: WorkflowKind, templates: List[TaskTemplate]):
        if not templates:
            raise ValueError(f"Task catalog for {kind.value} is empty")

        seen = set()
        for template in templates:
            if template.task_type in seen:
                raise ValueError(f"Duplicate task {template.task_type.value} in {kind.value} catalog")
            for dependency in template.depends_on:
                if dependency not in seen:
                    raise ValueError(
                        f"{kind.value} task {template.task_type.value} depends on "
                        f"{dependency.value}, which is not declared before it"
                    )
            seen.add(template.task_type)

    def get_templates(self, kind: WorkflowKind) -> List[TaskTemplate]:
        """Get the ordered task templates for a workflow kind."""
        return [t.model_copy(deep=True) for t in self._templates[WorkflowKind(kind)]]

    def task_types(self, kind: WorkflowKind) -> List[TaskType]:
        return [t.task_type for t in self._templates[WorkflowKind(kind)]]

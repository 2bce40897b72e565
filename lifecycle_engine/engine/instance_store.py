"""
Workflow Instance Store for the Lifecycle Engine.

Keeps workflow instances and their task lists keyed by instance ID, with
optional JSON file persistence so partially executed workflows survive a
process restart. Each instance is persisted to its own ``<id>.json`` file.
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..exceptions import PersistenceError, WorkflowNotFoundError
from ..models import WorkflowInstance, WorkflowKind, WorkflowStatus, utcnow

logger = logging.getLogger(__name__)


class WorkflowInstanceStore:
    """
    Repository of workflow instances.

    Provides in-memory state management with optional per-instance JSON
    file persistence. Every read returns a deep copy so callers never
    mutate stored state.
    """

    def __init__(self, storage_dir: Optional[Union[str, Path]] = None):
        """
        Initialize the instance store.

        Args:
            storage_dir: Directory holding one JSON document per instance.
                         If None, state is kept in memory only.
        """
        self.storage_dir = Path(storage_dir) if storage_dir else None
        self.instances: Dict[str, WorkflowInstance] = {}
        self._lock = threading.Lock()

        if self.storage_dir:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
            self._load_state()

        logger.info(
            f"Initialized WorkflowInstanceStore with {'persistent' if self.storage_dir else 'in-memory'} storage"
        )

    def load(self, instance_id: str) -> WorkflowInstance:
        """
        Get a workflow instance by ID.

        Args:
            instance_id: Workflow instance ID

        Returns:
            Copy of the stored WorkflowInstance

        Raises:
            WorkflowNotFoundError: If no instance has this ID
        """
        with self._lock:
            instance = self.instances.get(instance_id)
            if instance is None:
                raise WorkflowNotFoundError(instance_id)
            return instance.model_copy(deep=True)

    def exists(self, instance_id: str) -> bool:
        with self._lock:
            return instance_id in self.instances

    def save(self, instance: WorkflowInstance) -> None:
        """
        Insert or replace a workflow instance and persist it.

        A cancel request already recorded for the instance is never
        overwritten by a copy that predates it; the caller's copy picks the
        request up instead.

        Args:
            instance: Instance to store
        """
        with self._lock:
            stored = self.instances.get(instance.id)
            if stored is not None and stored.cancel_requested_at and not instance.cancel_requested_at:
                instance.cancel_requested_at = stored.cancel_requested_at

            self.instances[instance.id] = instance.model_copy(deep=True)
            self._write_instance(instance)

    def request_cancel(self, instance_id: str) -> Optional[WorkflowInstance]:
        """
        Durably record a cancel request.

        Args:
            instance_id: Workflow instance ID

        Returns:
            Copy of the instance carrying the request, or None if the
            instance is already terminal

        Raises:
            WorkflowNotFoundError: If no instance has this ID
        """
        with self._lock:
            instance = self.instances.get(instance_id)
            if instance is None:
                raise WorkflowNotFoundError(instance_id)
            if instance.is_terminal:
                return None

            if instance.cancel_requested_at is None:
                instance.cancel_requested_at = utcnow()
                self._write_instance(instance)
            return instance.model_copy(deep=True)

    def list(self, kind: Optional[WorkflowKind] = None,
             status: Optional[WorkflowStatus] = None) -> List[WorkflowInstance]:
        """
        List workflow instances, newest first.

        Args:
            kind: Filter by workflow kind
            status: Filter by aggregate status
        """
        with self._lock:
            instances = [i.model_copy(deep=True) for i in self.instances.values()]

        if kind:
            instances = [i for i in instances if i.kind == kind]
        if status:
            instances = [i for i in instances if i.status == status]

        return sorted(instances, key=lambda i: i.created_at, reverse=True)

    def list_incomplete(self) -> List[WorkflowInstance]:
        """Instances that were started but have not reached a terminal state."""
        return [i for i in self.list() if not i.is_terminal]

    def get_summary(self) -> Dict[str, Any]:
        """Counts of instances by kind and status."""
        summary = {"total_workflows": 0, "workflows_by_kind": {}, "workflows_by_status": {}}

        for instance in self.list():
            summary["total_workflows"] += 1
            kind = instance.kind.value
            summary["workflows_by_kind"][kind] = summary["workflows_by_kind"].get(kind, 0) + 1
            status = instance.status.value
            summary["workflows_by_status"][status] = summary["workflows_by_status"].get(status, 0) + 1

        return summary

    def instance_path(self, instance_id: str) -> Optional[Path]:
        if not self.storage_dir:
            return None
        return self.storage_dir / f"{instance_id}.json"

    def _write_instance(self, instance: WorkflowInstance):
        """Write one instance atomically to persistent storage."""
        path = self.instance_path(instance.id)
        if path is None:
            return

        tmp_path = path.with_suffix(".json.tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(instance.model_dump(mode="json"), f, indent=2)
            os.replace(tmp_path, path)
        except OSError as e:
            logger.error(f"Failed to save workflow {instance.id} to {path}: {e}")
            raise PersistenceError(f"Failed to save workflow {instance.id} to {path}: {e}") from e

    def _load_state(self):
        """Load every instance document from persistent storage."""
        for path in sorted(self.storage_dir.glob("*.json")):
            try:
                with open(path, encoding="utf-8") as f:
                    instance = WorkflowInstance.model_validate(json.load(f))
            except (OSError, ValueError) as e:
                logger.error(f"Failed to load state from {path}: {e}")
                raise PersistenceError(f"Failed to load state from {path}: {e}") from e
            self.instances[instance.id] = instance

        logger.info(f"Loaded {len(self.instances)} workflow instances from {self.storage_dir}")

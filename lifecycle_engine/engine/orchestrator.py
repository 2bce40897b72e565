"""
Workflow Orchestrator for the Lifecycle Engine.

Materializes workflow instances from the task catalog and advances them one
task at a time against a directory adapter, applying retry, timeout and
cancellation rules and writing an audit record for every transition.
"""

import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from ..audit import AuditLogger
from ..connectors import CREDENTIAL_KEYS, AdapterResult, DirectoryAdapter, OutcomeKind
from ..exceptions import WorkflowNotFoundError
from ..models import (
    SATISFIED_TASK_STATES,
    AuditRecord,
    ErrorKind,
    RetryPolicy,
    TaskExecution,
    TaskState,
    WorkflowInstance,
    WorkflowKind,
    WorkflowStatus,
    utcnow,
)
from ..workflows import create_audit_summary, get_workflow_definition
from .instance_store import WorkflowInstanceStore
from .retry import DirectoryCall, call_with_timeout, compute_backoff
from .task_catalog import TaskCatalog

logger = logging.getLogger(__name__)


class WorkflowOrchestrator:
    """
    Drives onboarding and offboarding workflow instances.

    Each instance is mutated by at most one driver at a time, guarded by a
    per-instance lock. Distinct instances run independently on the driver
    pool. Every directory call runs on its own thread so it can be bounded
    by a timeout without sharing capacity with other instances.
    """

    def __init__(
        self,
        adapter: DirectoryAdapter,
        store: Optional[WorkflowInstanceStore] = None,
        audit_logger: Optional[AuditLogger] = None,
        catalog: Optional[TaskCatalog] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        max_workers: int = 4,
    ):
        """
        Initialize the orchestrator.

        Args:
            adapter: Directory adapter used for every task
            store: Instance store (in-memory if omitted)
            audit_logger: Audit logger (in-memory if omitted)
            catalog: Task catalog (built-in defaults if omitted)
            retry_policy: Retry, backoff and timeout policy
            sleep: Function used to wait out retry backoff
            max_workers: Size of the background driver pool
        """
        self.adapter = adapter
        self.store = store or WorkflowInstanceStore()
        self.audit_logger = audit_logger or AuditLogger()
        self.catalog = catalog or TaskCatalog()
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

        self._driver_pool = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="workflow-driver"
        )

        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._futures: Dict[str, Future] = {}
        # Calls abandoned after a timeout that may still reach the directory
        self._inflight: Dict[str, DirectoryCall] = {}
        # One-time secrets returned by the directory, never persisted
        self._credentials: Dict[str, Dict[str, str]] = {}

        logger.info(
            f"Initialized WorkflowOrchestrator with {adapter.get_system_name()} adapter"
            f"{' (mock mode)' if adapter.is_mock_mode() else ''}"
        )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def start(self, kind: Union[str, WorkflowKind], parameters: Dict[str, Any],
              wait: bool = True) -> WorkflowInstance:
        """
        Validate inputs, create a workflow instance and begin executing it.

        Args:
            kind: Workflow kind ('onboarding' or 'offboarding')
            parameters: Flat key/value map of workflow inputs
            wait: Drive to completion before returning; otherwise the
                  instance is driven on the background pool

        Returns:
            Snapshot of the workflow instance

        Raises:
            ValidationError: If the kind or a required parameter is invalid
        """
        instance = self.create(kind, parameters)

        if wait:
            return self.drive(instance.id)

        self._submit(instance.id)
        return self.get_instance(instance.id)

    def create(self, kind: Union[str, WorkflowKind], parameters: Dict[str, Any]) -> WorkflowInstance:
        """
        Validate inputs and persist a started instance without executing it.

        Callers that schedule execution themselves follow this with ``drive``.

        Raises:
            ValidationError: If the kind or a required parameter is invalid
        """
        definition = get_workflow_definition(kind)
        params = definition.validate_parameters(parameters)

        instance = WorkflowInstance(
            id=str(uuid.uuid4()),
            kind=definition.kind,
            subject_identity=definition.subject_identity(params),
            parameters=params,
            tasks=[
                TaskExecution.from_template(template)
                for template in self.catalog.get_templates(definition.kind)
            ],
        )
        self.store.save(instance)
        logger.info(
            f"Created {instance.kind.value} workflow {instance.id} for {instance.subject_identity} "
            f"with {len(instance.tasks)} tasks"
        )

        with self._get_lock(instance.id):
            self._mark_started(instance)

        return self.get_instance(instance.id)

    def execute_next(self, instance_id: str) -> Optional[TaskExecution]:
        """
        Advance exactly one eligible task of an instance.

        The eligible task is the first PENDING task whose dependencies are
        all COMPLETED or SKIPPED. Scheduled retry delays are not waited out
        here; ``drive`` does that.

        Args:
            instance_id: Workflow instance ID

        Returns:
            The settled task, or None if nothing was eligible

        Raises:
            WorkflowNotFoundError: If the instance does not exist
        """
        with self._get_lock(instance_id):
            instance = self.store.load(instance_id)

            if instance.cancel_requested_at is not None and instance.completed_at is None:
                self._apply_cancel(instance)
                return None

            if instance.is_terminal:
                self._finish(instance)
                return None

            task = self._next_eligible(instance)
            if task is None:
                return None

            if instance.started_at is None:
                self._mark_started(instance)

            self._run_task(instance, task)
            self._after_settle(instance)
            return task.model_copy(deep=True)

    def drive(self, instance_id: str) -> WorkflowInstance:
        """
        Run an instance until no task is eligible.

        Args:
            instance_id: Workflow instance ID

        Returns:
            Final snapshot of the instance
        """
        while True:
            instance = self.store.load(instance_id)
            if instance.is_terminal and instance.completed_at is not None:
                break

            task = self._next_eligible(instance)
            if task is not None and task.next_attempt_at is not None:
                delay = (task.next_attempt_at - utcnow()).total_seconds()
                if delay > 0:
                    logger.debug(f"Waiting {delay:.2f}s before retrying {task.task_type.value}")
                    self._sleep(delay)

            if self.execute_next(instance_id) is None:
                break

        return self.get_instance(instance_id)

    def cancel(self, instance_id: str) -> bool:
        """
        Cancel a workflow instance.

        A task already running is allowed to finish; no further task starts.
        The request is persisted with the instance, so it survives a restart
        even if the running task has not settled yet.

        Args:
            instance_id: Workflow instance ID

        Returns:
            True if the cancel was accepted, False if the instance is terminal

        Raises:
            WorkflowNotFoundError: If the instance does not exist
        """
        if self.store.request_cancel(instance_id) is None:
            status = self.store.load(instance_id).status
            logger.info(f"Ignoring cancel of {instance_id}: already {status.value}")
            return False

        lock = self._get_lock(instance_id)
        if lock.acquire(blocking=False):
            try:
                instance = self.store.load(instance_id)
                if instance.completed_at is not None:
                    return False
                self._apply_cancel(instance)
            finally:
                lock.release()
        else:
            logger.info(f"Cancel of {instance_id} recorded; applied once the running task settles")

        return True

    def get_instance(self, instance_id: str) -> WorkflowInstance:
        """Read-only snapshot of an instance."""
        return self.store.load(instance_id)

    def list_instances(self, kind: Optional[WorkflowKind] = None,
                       status: Optional[WorkflowStatus] = None) -> List[WorkflowInstance]:
        """List instances, newest first, filtered by kind and status."""
        return self.store.list(kind=kind, status=status)

    def get_audit_trail(self, instance_id: str) -> List[AuditRecord]:
        """Audit records of one instance in the order they were written."""
        if not self.store.exists(instance_id):
            raise WorkflowNotFoundError(instance_id)
        return self.audit_logger.get_audit_trail(instance_id)

    def get_execution_summary(self, instance_id: str) -> Dict[str, Any]:
        """Task counts and errors of one instance, for audit review."""
        return create_audit_summary(self.store.load(instance_id))

    def get_summary(self) -> Dict[str, Any]:
        """Counts of all instances by kind and status."""
        return self.store.get_summary()

    def take_credentials(self, instance_id: str) -> Dict[str, str]:
        """
        Hand over one-time secrets issued for an instance, such as the
        temporary password of a newly created account.

        Secrets are held in memory only and returned at most once; later
        calls return an empty dict.

        Raises:
            WorkflowNotFoundError: If the instance does not exist
        """
        if not self.store.exists(instance_id):
            raise WorkflowNotFoundError(instance_id)
        with self._registry_lock:
            return self._credentials.pop(instance_id, {})

    def resume(self, instance_id: str, wait: bool = True) -> WorkflowInstance:
        """
        Re-drive a non-terminal instance from its stored task states.

        Tasks left RUNNING by an interrupted process go back to PENDING;
        their directory calls are idempotent, so repeating them is safe.
        A cancel accepted before the interruption is applied instead.

        Args:
            instance_id: Workflow instance ID
            wait: Drive inline instead of on the background pool

        Returns:
            Snapshot of the instance
        """
        with self._get_lock(instance_id):
            instance = self.store.load(instance_id)
            if instance.is_terminal:
                self._finish(instance)
                return self.store.load(instance_id)
            if instance.cancel_requested_at is not None:
                self._recover_interrupted(instance)
                self._apply_cancel(instance)
                return self.store.load(instance_id)
            self._recover_interrupted(instance)

        logger.info(f"Resuming workflow {instance_id} at {instance.progress}%")

        if wait:
            return self.drive(instance_id)

        self._submit(instance_id)
        return self.get_instance(instance_id)

    def resume_incomplete(self, wait: bool = False) -> List[str]:
        """
        Resume every non-terminal instance found in the store.

        Args:
            wait: Drive each instance inline, one after another

        Returns:
            IDs of the resumed instances
        """
        resumed = []
        for instance in self.store.list_incomplete():
            future = self._futures.get(instance.id)
            if future is not None and not future.done():
                continue
            self.resume(instance.id, wait=wait)
            resumed.append(instance.id)

        if resumed:
            logger.info(f"Resumed {len(resumed)} incomplete workflows")
        return resumed

    def wait(self, instance_id: str, timeout: Optional[float] = None) -> WorkflowInstance:
        """Block until a background driver for the instance finishes."""
        future = self._futures.get(instance_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.get_instance(instance_id)

    def shutdown(self, wait: bool = True) -> None:
        """Stop the driver pool; abandoned directory calls are daemon threads."""
        self._driver_pool.shutdown(wait=wait)
        logger.info("WorkflowOrchestrator shut down")

    # ------------------------------------------------------------------
    # Task execution
    # ------------------------------------------------------------------

    def _run_task(self, instance: WorkflowInstance, task: TaskExecution) -> None:
        """Execute one task and settle its state. Caller holds the instance lock."""
        definition = get_workflow_definition(instance.kind)

        reason = definition.skip_reason(task, instance.parameters)
        if reason:
            self._settle(instance, task, TaskState.SKIPPED, "task_skipped", skip_reason=reason)
            logger.info(f"Skipped {task.task_type.value} for {instance.subject_identity}: {reason}")
            return

        previous = task.state
        task.state = TaskState.RUNNING
        task.attempt += 1
        task.started_at = task.started_at or utcnow()
        task.next_attempt_at = None
        self.store.save(instance)
        self._audit(instance, "task_started", task, previous, TaskState.RUNNING)

        logger.info(
            f"Running {task.task_type.value} for {instance.subject_identity} "
            f"(attempt {task.attempt}/{self.retry_policy.max_attempts})"
        )

        description = f"{task.task_type.value} for {instance.subject_identity}"
        timeout = self.retry_policy.call_timeout_seconds

        # A timed-out call may still land; never overlap it with another
        previous_call = self._inflight.get(instance.id)
        if previous_call is not None and not previous_call.wait(timeout):
            result = AdapterResult.retryable(
                f"{description} timed out after {timeout}s waiting for "
                f"{previous_call.description} to finish"
            )
        else:
            task_snapshot = task.model_copy(deep=True)
            instance_snapshot = instance.model_copy(deep=True)
            call = DirectoryCall(
                lambda: definition.invoke(self.adapter, task_snapshot, instance_snapshot),
                description,
            )
            result = call_with_timeout(call, timeout)
            if call.running:
                self._inflight[instance.id] = call
            else:
                self._inflight.pop(instance.id, None)

        self._apply_result(instance, task, result)

    def _apply_result(self, instance: WorkflowInstance, task: TaskExecution,
                      result: AdapterResult) -> None:
        if result.success:
            task.last_error = None
            task.error_kind = None
            task.result = {"outcome": result.outcome.value, "message": result.message}
            if result.data is not None:
                task.result["data"] = self._withhold_credentials(instance.id, result.data)
            self._settle(instance, task, TaskState.COMPLETED, "task_completed")
            logger.info(f"Completed {task.task_type.value} for {instance.subject_identity}: {result.message}")
            return

        error = result.error or result.message or "Unknown error"
        task.last_error = error

        if result.outcome == OutcomeKind.RETRYABLE and task.attempt < self.retry_policy.max_attempts:
            delay = compute_backoff(task.attempt, self.retry_policy)
            task.error_kind = ErrorKind.RETRYABLE
            task.state = TaskState.PENDING
            task.next_attempt_at = utcnow() + timedelta(seconds=delay)
            self.store.save(instance)
            self._audit(
                instance, "task_retry_scheduled", task, TaskState.RUNNING, TaskState.PENDING,
                success=False, error_message=error, metadata={"retry_in_seconds": delay},
            )
            logger.warning(
                f"{task.task_type.value} for {instance.subject_identity} failed (attempt {task.attempt}), "
                f"retrying in {delay:.1f}s: {error}"
            )
            return

        task.error_kind = (
            ErrorKind.RETRYABLE if result.outcome == OutcomeKind.RETRYABLE else ErrorKind.FATAL
        )
        if task.mandatory:
            self._settle(instance, task, TaskState.FAILED, "task_failed", error=error)
            logger.error(
                f"Mandatory task {task.task_type.value} failed for {instance.subject_identity} "
                f"after {task.attempt} attempt(s): {error}"
            )
        else:
            self._settle(
                instance, task, TaskState.SKIPPED, "task_skipped", error=error,
                skip_reason=f"Optional task failed: {error}",
            )
            logger.warning(
                f"Optional task {task.task_type.value} skipped for {instance.subject_identity} "
                f"after {task.attempt} attempt(s): {error}"
            )

    def _settle(self, instance: WorkflowInstance, task: TaskExecution, state: TaskState,
                event_type: str, error: Optional[str] = None,
                skip_reason: Optional[str] = None) -> None:
        """Move a task into a terminal state, persist and audit it."""
        previous = task.state
        task.state = state
        task.completed_at = utcnow()
        task.next_attempt_at = None
        if skip_reason:
            task.skip_reason = skip_reason
        self.store.save(instance)
        self._audit(
            instance, event_type, task, previous, state,
            success=error is None, error_message=error,
            metadata={"skip_reason": skip_reason} if skip_reason else None,
        )

    def _after_settle(self, instance: WorkflowInstance) -> None:
        """Apply a pending cancel or record a terminal instance."""
        if instance.cancel_requested_at is not None and instance.completed_at is None:
            self._apply_cancel(instance)
            return
        self._finish(instance)

    def _finish(self, instance: WorkflowInstance) -> None:
        """Stamp completed_at once the derived status is terminal."""
        if not instance.is_terminal or instance.completed_at is not None:
            return

        instance.completed_at = utcnow()
        self.store.save(instance)
        status = instance.status
        self._audit(
            instance, "workflow_finished", to_state=status,
            success=status == WorkflowStatus.COMPLETED,
            metadata={"progress": instance.progress},
        )
        log = logger.info if status == WorkflowStatus.COMPLETED else logger.error
        log(
            f"{instance.kind.value} workflow {instance.id} for {instance.subject_identity} "
            f"finished {status.value} ({instance.progress}%)"
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _next_eligible(instance: WorkflowInstance) -> Optional[TaskExecution]:
        """First PENDING task whose dependencies are COMPLETED or SKIPPED."""
        for task in instance.tasks:
            if task.state != TaskState.PENDING:
                continue
            deps = [instance.get_task(dep) for dep in task.depends_on]
            if all(dep is None or dep.state in SATISFIED_TASK_STATES for dep in deps):
                return task
        return None

    def _mark_started(self, instance: WorkflowInstance) -> None:
        previous = instance.status
        instance.started_at = utcnow()
        self.store.save(instance)
        self._audit(instance, "workflow_started", from_state=previous, to_state=instance.status)

    def _apply_cancel(self, instance: WorkflowInstance) -> None:
        """Mark an instance cancelled. Caller holds the instance lock."""
        previous = instance.status
        now = utcnow()
        instance.cancelled_at = now
        instance.completed_at = now
        self.store.save(instance)
        self._audit(
            instance, "workflow_cancelled", from_state=previous, to_state=instance.status,
            metadata={"progress": instance.progress},
        )
        logger.info(f"Cancelled workflow {instance.id} at {instance.progress}%")

    def _recover_interrupted(self, instance: WorkflowInstance) -> None:
        changed = False
        for task in instance.tasks:
            if task.state == TaskState.RUNNING:
                logger.warning(
                    f"Task {task.task_type.value} of {instance.id} was interrupted; will run it again"
                )
                task.state = TaskState.PENDING
                changed = True
        if instance.started_at is None:
            instance.started_at = utcnow()
            changed = True
        if changed:
            self.store.save(instance)

    def _submit(self, instance_id: str) -> None:
        self._futures[instance_id] = self._driver_pool.submit(self._drive_in_background, instance_id)

    def _drive_in_background(self, instance_id: str) -> None:
        try:
            self.drive(instance_id)
        except Exception:
            logger.exception(f"Driver for workflow {instance_id} stopped unexpectedly")
            raise

    def _get_lock(self, instance_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(instance_id)
            if lock is None:
                lock = self._locks[instance_id] = threading.Lock()
            return lock

    def _withhold_credentials(self, instance_id: str, data: Any) -> Any:
        """Move one-time secrets out of task result data before it is persisted."""
        if not isinstance(data, dict):
            return data

        issued = {key: data[key] for key in CREDENTIAL_KEYS if data.get(key)}
        if not issued:
            return data

        with self._registry_lock:
            self._credentials.setdefault(instance_id, {}).update(issued)
        logger.info(f"Holding {', '.join(issued)} for workflow {instance_id} until collected")
        return {key: "[REDACTED]" if key in issued else value for key, value in data.items()}

    def _audit(self, instance: WorkflowInstance, event_type: str,
               task: Optional[TaskExecution] = None, from_state: Any = None,
               to_state: Any = None, success: bool = True,
               error_message: Optional[str] = None,
               metadata: Optional[Dict[str, Any]] = None) -> None:
        self.audit_logger.record_transition(
            instance,
            event_type,
            task_type=task.task_type if task else None,
            from_state=from_state.value if from_state is not None else None,
            to_state=to_state.value if to_state is not None else None,
            attempt=task.attempt if task else 0,
            success=success,
            error_message=error_message,
            metadata=metadata,
        )

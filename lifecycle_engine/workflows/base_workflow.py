"""
Base Workflow Definition for the Lifecycle Engine.

A workflow definition knows the inputs of one workflow kind, which identity
it acts on, and how each of its task types maps onto a directory adapter
call. Execution state lives in the orchestrator, not here.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from ..connectors import AdapterResult, DirectoryAdapter
from ..exceptions import ValidationError
from ..models import TaskExecution, TaskType, WorkflowInstance, WorkflowKind

logger = logging.getLogger(__name__)

TaskOperation = Callable[[DirectoryAdapter, WorkflowInstance], AdapterResult]


class WorkflowParameters(BaseModel):
    """Base model for workflow inputs; accepts snake_case or camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @field_validator("group_ids", "application_ids", "asset_ids", mode="before", check_fields=False)
    @classmethod
    def split_id_list(cls, v: Any) -> Any:
        """Allow comma-separated strings for list inputs."""
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v


class BaseWorkflowDefinition(ABC):
    """
    Abstract base class for onboarding and offboarding definitions.

    Subclasses declare the parameter model, the subject identity and the
    task-type to adapter-method map.
    """

    kind: WorkflowKind
    parameters_model: Type[WorkflowParameters]

    def validate_parameters(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate raw workflow inputs.

        Args:
            raw: Flat key/value map from the caller

        Returns:
            Normalized parameter snapshot with snake_case keys

        Raises:
            ValidationError: If a required input is missing or malformed
        """
        if not isinstance(raw, dict):
            raise ValidationError(f"{self.kind.value} parameters must be a key/value map")

        try:
            model = self.parameters_model.model_validate(raw)
        except PydanticValidationError as e:
            errors = [
                f"{'.'.join(str(p) for p in err['loc']) or 'parameters'}: {err['msg']}"
                for err in e.errors()
            ]
            raise ValidationError(
                f"Invalid {self.kind.value.lower()} parameters: {'; '.join(errors)}", errors
            ) from e

        return model.model_dump(mode="json")

    @abstractmethod
    def subject_identity(self, parameters: Dict[str, Any]) -> str:
        """Directory identity the workflow acts on."""
        pass

    @abstractmethod
    def _operations(self) -> Dict[TaskType, TaskOperation]:
        """Map of task type to adapter call."""
        pass

    def skip_reason(self, task: TaskExecution, parameters: Dict[str, Any]) -> Optional[str]:
        """
        Reason to skip a task without calling the directory, if any.

        Args:
            task: Task about to be executed
            parameters: Instance parameter snapshot

        Returns:
            Human-readable reason, or None if the task should run
        """
        if task.enabled_by and parameters.get(task.enabled_by) is False:
            return f"Disabled by parameter {task.enabled_by}"
        if task.requires and not parameters.get(task.requires):
            return f"No {task.requires} provided"
        return None

    def invoke(self, adapter: DirectoryAdapter, task: TaskExecution,
               instance: WorkflowInstance) -> AdapterResult:
        """
        Call the adapter operation behind a task.

        Args:
            adapter: Directory adapter
            task: Task being executed
            instance: Owning workflow instance

        Returns:
            AdapterResult from the operation
        """
        operation = self._operations().get(task.task_type)
        if operation is None:
            return AdapterResult.fatal(
                f"Task {task.task_type.value} is not supported by {self.kind.value} workflows"
            )
        return operation(adapter, instance)

    def supported_task_types(self) -> List[TaskType]:
        return list(self._operations().keys())

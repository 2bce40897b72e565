"""
Workflow Helper Functions for the Lifecycle Engine.

Utility functions shared by the workflow definitions, the API and the CLI.
"""

import logging
from typing import Any, Callable, Dict, Iterable, Union

from ..connectors import AdapterResult, OutcomeKind
from ..exceptions import ValidationError
from ..models import TaskState, WorkflowInstance, WorkflowKind

logger = logging.getLogger(__name__)


def run_for_each(items: Iterable[str], call: Callable[[str], AdapterResult]) -> AdapterResult:
    """
    Apply one adapter call per item and fold the results into one.

    Stops at the first failure so a retry repeats only the unfinished
    items; items already handled come back as no-ops.

    Args:
        items: Item identifiers (asset IDs, for example)
        call: Adapter call for a single item

    Returns:
        The first failing result, NO_OP if every item was already in
        place, otherwise SUCCESS with the per-item outcomes
    """
    outcomes: Dict[str, str] = {}
    for item in items:
        result = call(item)
        if not result.success:
            return result
        outcomes[item] = result.outcome.value

    if all(outcome == OutcomeKind.NO_OP.value for outcome in outcomes.values()):
        return AdapterResult.noop(f"All {len(outcomes)} items already in place", {"items": outcomes})
    return AdapterResult.ok(f"Processed {len(outcomes)} items", {"items": outcomes})


def parse_workflow_kind(value: Union[str, WorkflowKind]) -> WorkflowKind:
    """
    Parse a workflow kind from user input.

    Args:
        value: Kind name in any case, e.g. 'onboarding'

    Returns:
        WorkflowKind

    Raises:
        ValidationError: If the kind is unknown
    """
    if isinstance(value, WorkflowKind):
        return value
    try:
        return WorkflowKind(str(value).strip().upper())
    except ValueError:
        valid = ", ".join(k.value.lower() for k in WorkflowKind)
        raise ValidationError(f"Unknown workflow kind: {value} (expected one of {valid})")


def create_audit_summary(instance: WorkflowInstance) -> Dict[str, Any]:
    """
    Create a summary of workflow execution for auditing.

    Args:
        instance: WorkflowInstance to summarize

    Returns:
        Dictionary with audit summary
    """
    counts = {state.value: 0 for state in TaskState}
    for task in instance.tasks:
        counts[task.state.value] += 1

    return {
        "workflow_id": instance.id,
        "kind": instance.kind.value,
        "subject_identity": instance.subject_identity,
        "status": instance.status.value,
        "progress": instance.progress,
        "started_at": instance.started_at.isoformat() if instance.started_at else None,
        "completed_at": instance.completed_at.isoformat() if instance.completed_at else None,
        "task_counts": counts,
        "errors": [
            {"task_type": t.task_type.value, "error": t.last_error}
            for t in instance.tasks if t.last_error
        ],
    }

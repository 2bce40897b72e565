"""
Workflows Package for the Lifecycle Engine.

This package contains the onboarding and offboarding workflow definitions.
"""

from typing import Dict, Union

from ..models import WorkflowKind
from .base_workflow import BaseWorkflowDefinition, WorkflowParameters
from .helpers import create_audit_summary, parse_workflow_kind, run_for_each
from .offboarding import OffboardingParameters, OffboardingWorkflow
from .onboarding import OnboardingParameters, OnboardingWorkflow

WORKFLOW_DEFINITIONS: Dict[WorkflowKind, BaseWorkflowDefinition] = {
    WorkflowKind.ONBOARDING: OnboardingWorkflow(),
    WorkflowKind.OFFBOARDING: OffboardingWorkflow(),
}


def get_workflow_definition(kind: Union[str, WorkflowKind]) -> BaseWorkflowDefinition:
    """Get the workflow definition for a kind."""
    return WORKFLOW_DEFINITIONS[parse_workflow_kind(kind)]


__all__ = [
    "BaseWorkflowDefinition",
    "WorkflowParameters",
    "OnboardingWorkflow",
    "OnboardingParameters",
    "OffboardingWorkflow",
    "OffboardingParameters",
    "WORKFLOW_DEFINITIONS",
    "get_workflow_definition",
    "create_audit_summary",
    "parse_workflow_kind",
    "run_for_each",
]

"""Pipeline workflow: guarded state transitions and human review."""

from content_pipeline.workflow.approval import ApprovalWorkflow
from content_pipeline.workflow.project_stage import apply_project_transition, load_project

__all__ = [
    "ApprovalWorkflow",
    "apply_project_transition",
    "load_project",
]

"""
Link workflow: the checkpoint model and the orchestrator that advances it.
"""

from tokenlink.workflow.checkpoint import WorkflowCheckpoint, WorkflowStage
from tokenlink.workflow.link import LinkWorkflow

__all__ = [
    "WorkflowCheckpoint",
    "WorkflowStage",
    "LinkWorkflow",
]

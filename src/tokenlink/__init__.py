"""
Interchain Token Linker

Registers a token deployed on two EVM networks with the Interchain Token
Service, links both deployments into one cross-chain asset, hands mint/burn
capability to the protocol's token manager, and moves tokens between the
networks. Progress is checkpointed so an interrupted run resumes without
repeating committed steps.
"""

__version__ = "0.1.0"

from tokenlink.config import LinkerConfig, LinkSide, ManagerMode, load_config
from tokenlink.errors import (
    ConfigurationError,
    InvariantViolationError,
    LinkerError,
    RejectedTransactionError,
    TransientNetworkError,
)
from tokenlink.workflow.checkpoint import WorkflowCheckpoint, WorkflowStage
from tokenlink.workflow.link import LinkWorkflow

__all__ = [
    "LinkerConfig",
    "LinkSide",
    "ManagerMode",
    "load_config",
    "ConfigurationError",
    "InvariantViolationError",
    "LinkerError",
    "RejectedTransactionError",
    "TransientNetworkError",
    "WorkflowCheckpoint",
    "WorkflowStage",
    "LinkWorkflow",
]

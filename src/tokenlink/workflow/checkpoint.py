"""
Workflow Checkpoint model.

Durable record of how far a token link has progressed. The checkpoint is
the single source of truth for resuming: a stage is only recorded after the
ledger mutation that produces it has been confirmed.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from tokenlink.errors import InvariantViolationError
from tokenlink.types import LinkSalt, ManagerHandle, TokenId


class WorkflowStage(str, Enum):
    """Stages of the linking workflow, in the order they are reached."""
    INIT = "init"
    METADATA_REGISTERED_ORIGIN = "metadata_registered_origin"
    METADATA_REGISTERED_DEST = "metadata_registered_dest"
    CUSTOM_TOKEN_REGISTERED = "custom_token_registered"
    LINKED = "linked"
    MANAGER_RESOLVED = "manager_resolved"
    ROLES_GRANTED = "roles_granted"
    READY = "ready"

    @property
    def order(self) -> int:
        return _STAGE_ORDER.index(self)

    def is_before(self, other: "WorkflowStage") -> bool:
        return self.order < other.order

    def is_at_least(self, other: "WorkflowStage") -> bool:
        return self.order >= other.order

    @property
    def next(self) -> Optional["WorkflowStage"]:
        if self is WorkflowStage.READY:
            return None
        return _STAGE_ORDER[self.order + 1]


_STAGE_ORDER = list(WorkflowStage)


@dataclass
class WorkflowCheckpoint:
    """
    Progress record for one token link.

    Attributes:
        link_id: Identifier of the link (one workflow instance per link)
        stage: Last stage fully completed
        salt: Link salt; recorded before registration is submitted
        token_id: Token id derived from (minter, salt)
        link_attempted_at: When linkToken was first about to be submitted
        managers: Resolved manager per network name
        metadata_registered: Networks whose metadata registration is confirmed
        roles_granted: Roles confirmed per network name
        last_step: Name of the last step that completed successfully
        last_success_at: When that step completed
        last_error: Most recent failure, cleared by the next successful step
    """

    link_id: str
    stage: WorkflowStage = WorkflowStage.INIT

    salt: Optional[LinkSalt] = None
    token_id: Optional[TokenId] = None
    link_attempted_at: Optional[datetime] = None
    managers: Dict[str, ManagerHandle] = field(default_factory=dict)
    metadata_registered: List[str] = field(default_factory=list)
    roles_granted: Dict[str, List[str]] = field(default_factory=dict)

    last_step: Optional[str] = None
    last_success_at: Optional[datetime] = None
    last_error: Optional[str] = None

    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        if isinstance(self.stage, str):
            self.stage = WorkflowStage(self.stage)

    def advance(self, stage: WorkflowStage) -> None:
        """
        Move forward to ``stage``. Reaching the current stage again is a no-op.

        Raises:
            InvariantViolationError: If ``stage`` is behind the current stage
        """
        if stage.is_before(self.stage):
            raise InvariantViolationError(
                f"Checkpoint for {self.link_id} cannot move back from "
                f"{self.stage.value} to {stage.value}"
            )
        self.stage = stage
        self.updated_at = datetime.utcnow()

    def _mark_step(self, step: str) -> None:
        self.last_step = step
        self.last_success_at = datetime.utcnow()
        self.last_error = None
        self.updated_at = self.last_success_at

    def record_metadata(self, network: str, origin: str, destination: str) -> None:
        """Record a confirmed metadata registration and advance as far as it allows."""
        if network not in self.metadata_registered:
            self.metadata_registered.append(network)
        self._mark_step(f"register_metadata:{network}")

        if origin in self.metadata_registered:
            if destination in self.metadata_registered:
                self.advance(max_stage(self.stage, WorkflowStage.METADATA_REGISTERED_DEST))
            else:
                self.advance(max_stage(self.stage, WorkflowStage.METADATA_REGISTERED_ORIGIN))

    def record_salt(self, salt: LinkSalt) -> None:
        """Record the salt about to be registered."""
        if self.salt is not None and self.salt != salt:
            raise InvariantViolationError(
                f"Checkpoint for {self.link_id} already holds salt {self.salt}"
            )
        self.salt = salt
        self.updated_at = datetime.utcnow()

    def mark_custom_token_registered(self, token_id: TokenId) -> None:
        if self.salt is None:
            raise InvariantViolationError("Custom token registered without a recorded salt")
        self.token_id = token_id
        self._mark_step("register_custom_token")
        self.advance(WorkflowStage.CUSTOM_TOKEN_REGISTERED)

    def record_link_attempt(self) -> None:
        """Note that linkToken is about to be submitted. Kept from the first attempt."""
        if self.link_attempted_at is None:
            self.link_attempted_at = datetime.utcnow()
            self.updated_at = self.link_attempted_at

    def mark_linked(self) -> None:
        self._mark_step("link_token")
        self.advance(WorkflowStage.LINKED)

    def record_manager(self, handle: ManagerHandle) -> None:
        existing = self.managers.get(handle.network)
        if existing is not None and existing.address.lower() != handle.address.lower():
            raise InvariantViolationError(
                f"Manager for {handle.network} changed from {existing.address} to {handle.address}"
            )
        self.managers[handle.network] = handle
        self._mark_step(f"resolve_manager:{handle.network}")

    def mark_managers_resolved(self) -> None:
        self.advance(WorkflowStage.MANAGER_RESOLVED)

    def record_role(self, network: str, role: str) -> None:
        roles = self.roles_granted.setdefault(network, [])
        if role not in roles:
            roles.append(role)
        self._mark_step(f"grant_role:{network}:{role}")

    def mark_roles_granted(self) -> None:
        self.advance(WorkflowStage.ROLES_GRANTED)

    def mark_ready(self) -> None:
        self._mark_step("ready")
        self.advance(WorkflowStage.READY)

    def mark_failed(self, step: str, error: str) -> None:
        """Record a failure without changing the stage."""
        self.last_error = f"{step}: {error}"
        self.updated_at = datetime.utcnow()

    def committed(self) -> dict:
        """Artifacts already committed on-chain, for error reports."""
        return {
            "stage": self.stage.value,
            "salt": self.salt,
            "token_id": self.token_id,
            "metadata_registered": list(self.metadata_registered),
            "managers": {name: handle.address for name, handle in self.managers.items()},
            "roles_granted": {name: list(roles) for name, roles in self.roles_granted.items()},
        }

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "link_id": self.link_id,
            "stage": self.stage.value,
            "salt": self.salt,
            "token_id": self.token_id,
            "link_attempted_at": self.link_attempted_at.isoformat() if self.link_attempted_at else None,
            "managers": {name: handle.to_dict() for name, handle in self.managers.items()},
            "metadata_registered": list(self.metadata_registered),
            "roles_granted": {name: list(roles) for name, roles in self.roles_granted.items()},
            "last_step": self.last_step,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


def max_stage(a: WorkflowStage, b: WorkflowStage) -> WorkflowStage:
    return a if a.order >= b.order else b

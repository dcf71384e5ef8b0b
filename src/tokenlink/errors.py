"""
Error taxonomy for the token linker.

Every error raised out of the workflow carries the step it failed in, the
workflow stage at the time, and the artifacts that were already committed
on-chain, so an operator can decide how to proceed.
"""

from typing import Any, Dict, Optional


class LinkerError(Exception):
    """Base class for all token linker errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        self.step: Optional[str] = None
        self.stage: Optional[str] = None
        self.committed: Dict[str, Any] = {}

    def attach_context(
        self,
        step: str,
        stage: str,
        committed: Optional[Dict[str, Any]] = None,
    ) -> "LinkerError":
        """Record where in the workflow this error surfaced."""
        self.step = step
        self.stage = stage
        self.committed = dict(committed or {})
        return self

    def __str__(self) -> str:
        if self.step is None:
            return self.message
        return f"{self.message} (step={self.step}, stage={self.stage})"


class ConfigurationError(LinkerError):
    """Missing or invalid configuration. Fatal, raised before any network call."""


class TransientNetworkError(LinkerError):
    """
    Connectivity loss or timeout. The caller may retry.

    Attributes:
        tx_hash: Hash of the transaction if it was already broadcast
    """

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class RejectedTransactionError(LinkerError):
    """
    The ledger rejected or reverted a call. Never retried automatically.

    Attributes:
        reason: Revert reason or node error message
        tx_hash: Hash of the failed transaction, when one was mined
    """

    def __init__(self, reason: str, tx_hash: Optional[str] = None):
        super().__init__(f"Transaction rejected: {reason}")
        self.reason = reason
        self.tx_hash = tx_hash


class InvariantViolationError(LinkerError):
    """Recorded workflow state diverged from on-chain state. Requires an operator."""

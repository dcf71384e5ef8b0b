"""
State Management module.

Handles persistence of workflow checkpoints and transfer history.
"""

from tokenlink.state.database import CheckpointStore, init_store

__all__ = [
    "CheckpointStore",
    "init_store",
]

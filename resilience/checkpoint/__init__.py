"""Conversation checkpointing and error recovery."""

from resilience.checkpoint.manager import (
    Checkpoint,
    CheckpointManager,
    CheckpointMetadata,
    RecoveryRecord,
)

__all__ = [
    "Checkpoint",
    "CheckpointManager",
    "CheckpointMetadata",
    "RecoveryRecord",
]

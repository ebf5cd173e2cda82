"""Agent process supervision."""

from quad.process.supervisor import (
    ProcessSnapshot,
    ProcessSpawnError,
    ProcessSupervisor,
    SnapshotListener,
)

__all__ = [
    "ProcessSnapshot",
    "ProcessSpawnError",
    "ProcessSupervisor",
    "SnapshotListener",
]

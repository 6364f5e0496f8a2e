"""Apply engine wrapper and applied-state read-back."""

from engine.tofu import ApplyEngine, EngineResult, PlanResult
from engine.snapshot import AppliedStateSnapshot, SnapshotEntry, read_applied_snapshot

__all__ = [
    'ApplyEngine',
    'EngineResult',
    'PlanResult',
    'AppliedStateSnapshot',
    'SnapshotEntry',
    'read_applied_snapshot',
]

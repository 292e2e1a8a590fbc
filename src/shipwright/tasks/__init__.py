from shipwright.tasks.decompose import DecompositionPolicy, decompose, needs_decomposition
from shipwright.tasks.executor import ImplementationPhase, TaskOutcome, plan_queue
from shipwright.tasks.manifest import Task, TaskOrigin, parse_manifest
from shipwright.tasks.queue import (
    TaskQueue,
    TaskQueueStore,
    check_traceability,
    ensure_resumable,
    parse_followups,
)

__all__ = [
    "DecompositionPolicy",
    "ImplementationPhase",
    "Task",
    "TaskOrigin",
    "TaskOutcome",
    "TaskQueue",
    "TaskQueueStore",
    "check_traceability",
    "decompose",
    "ensure_resumable",
    "needs_decomposition",
    "parse_followups",
    "parse_manifest",
    "plan_queue",
]

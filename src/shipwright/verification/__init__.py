from shipwright.verification.engine import (
    RepairAttempt,
    RepairBudget,
    StageOutcome,
    VerificationEngine,
)
from shipwright.verification.failures import (
    FailureDelta,
    FailureSignature,
    classify_failures,
    failure_delta,
)
from shipwright.verification.runner import (
    CommandVerificationRunner,
    TestCheckResult,
    VerificationRunner,
    VerificationStage,
    WorkspaceTestResult,
    default_stages,
)

__all__ = [
    "CommandVerificationRunner",
    "FailureDelta",
    "FailureSignature",
    "RepairAttempt",
    "RepairBudget",
    "StageOutcome",
    "TestCheckResult",
    "VerificationEngine",
    "VerificationRunner",
    "VerificationStage",
    "WorkspaceTestResult",
    "classify_failures",
    "default_stages",
    "failure_delta",
]

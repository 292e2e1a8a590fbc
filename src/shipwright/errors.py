from __future__ import annotations

from collections.abc import Sequence


class PipelineError(RuntimeError):
    """Base class for every error raised by the pipeline core."""

    def __init__(
        self,
        message: str,
        *,
        phase_id: str | None = None,
        task_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.phase_id = phase_id
        self.task_id = task_id


class ConsistencyError(PipelineError):
    """A precondition was violated; never retried."""


class PermanentError(PipelineError):
    """Malformed configuration or missing inputs; never retried."""


class PrerequisiteError(ConsistencyError):
    def __init__(self, message: str, *, phase_id: str, missing: Sequence[str]) -> None:
        super().__init__(message, phase_id=phase_id)
        self.missing = list(missing)


class BudgetExceededError(ConsistencyError):
    def __init__(self, message: str, *, spent_usd: float, limit_usd: float) -> None:
        super().__init__(message)
        self.spent_usd = spent_usd
        self.limit_usd = limit_usd


class DirtyWorkspaceError(ConsistencyError):
    """Raised when a unit of work would start on uncommitted changes."""


class NoChangesError(ConsistencyError):
    """Raised when an implementation task left the workspace untouched."""


class QueueConsistencyError(ConsistencyError):
    """Persisted queue and run checkpoint disagree."""


class TraceabilityError(ConsistencyError):
    def __init__(self, message: str, *, unresolved: Sequence[str]) -> None:
        super().__init__(message, phase_id="9")
        self.unresolved = list(unresolved)


class VerificationFailedError(ConsistencyError):
    def __init__(
        self,
        message: str,
        *,
        phase_id: str,
        stage_id: str,
        checks: Sequence[str],
        blocked: bool = False,
    ) -> None:
        super().__init__(message, phase_id=phase_id)
        self.stage_id = stage_id
        self.checks = list(checks)
        self.blocked = blocked


class InvalidArtifactError(PipelineError):
    def __init__(self, message: str, *, phase_id: str, warnings: Sequence[str]) -> None:
        super().__init__(message, phase_id=phase_id)
        self.warnings = list(warnings)


class QualityGateError(PipelineError):
    def __init__(self, message: str, *, phase_id: str, verdict: str) -> None:
        super().__init__(message, phase_id=phase_id)
        self.verdict = verdict


class ConfigurationError(PermanentError):
    """Raised for malformed configuration values."""


class ManifestMissingError(PermanentError):
    """The planning artifact carries no machine-readable manifest block."""


class ManifestParseError(PermanentError):
    """A manifest block is present but not valid."""


class RunStateError(PermanentError):
    """Raised when persisted run state cannot be loaded or is invalid."""


class BootstrapError(PermanentError):
    """Repository creation or cloning failed."""


class VcsError(PermanentError):
    """A version-control command failed."""

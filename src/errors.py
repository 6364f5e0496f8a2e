"""Error taxonomy for deployment runs.

Every error carries a human-readable message and, where one exists, a
remedy line telling the operator what to do next. The CLI prints both.
"""

from typing import Optional


class DriverError(Exception):
    """Base class for all driver errors."""

    def __init__(self, message: str, remedy: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.remedy = remedy

    def __str__(self) -> str:
        if self.remedy:
            return f"{self.message}\n  {self.remedy}"
        return self.message


class ConfigurationError(DriverError):
    """Malformed collector input, missing credential, bad driver config."""


class ConnectivityError(DriverError):
    """Remote query or engine call could not reach its target in time."""


class StateQueryError(DriverError):
    """Applied state could not be read back from the engine."""


class GuardBlocked(DriverError):
    """Safety guard refused a destructive transition."""

    def __init__(self, verdict):
        super().__init__(verdict.reason)
        self.verdict = verdict


class ApplyEngineError(DriverError):
    """Apply engine stage exited unsuccessfully."""

    def __init__(self, stage: str, exit_code: int, detail: str = '',
                 remedy: Optional[str] = None):
        message = f"{stage} failed (exit {exit_code})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, remedy)
        self.stage = stage
        self.exit_code = exit_code
        self.detail = detail


class StateLockedError(ApplyEngineError):
    """Engine state is locked by another run."""

    def __init__(self, stage: str, exit_code: int, detail: str = ''):
        super().__init__(
            stage, exit_code, detail,
            remedy="A deployment is already running elsewhere; retry later",
        )


class PipelineCancelled(DriverError):
    """Operator interrupted the pipeline before APPLY was issued."""


class VerificationWarning:
    """Post-apply mismatch between desired and observed state.

    Collected by the orchestrator, never raised.
    """

    def __init__(self, category: str, message: str):
        self.category = category
        self.message = message

    def __str__(self) -> str:
        return f"[{self.category}] {self.message}"

    def __repr__(self) -> str:
        return f"VerificationWarning({self.category!r}, {self.message!r})"

    def __eq__(self, other) -> bool:
        if not isinstance(other, VerificationWarning):
            return NotImplemented
        return (self.category, self.message) == (other.category, other.message)

    def __hash__(self) -> int:
        return hash((self.category, self.message))

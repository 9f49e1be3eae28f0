"""Data models for command and step outcomes."""

import threading
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from cluster_bootstrap.exceptions import ClusterBootstrapError, ErrorKind


class StepOutcome(str, Enum):
    """Outcome of one orchestrated step."""

    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


class CommandResult(BaseModel):
    """Captured result of one command execution."""

    model_config = ConfigDict(frozen=True)

    command: str  # already redacted
    target: str
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    timed_out: bool = False
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class StepResult(BaseModel):
    """Immutable record of a step applied to a node."""

    model_config = ConfigDict(frozen=True)

    step: str
    node: str
    outcome: StepOutcome
    error_kind: ErrorKind | None = None
    reason: str | None = None
    dry_run: bool = False
    recorded_at: datetime = Field(default_factory=datetime.now)

    @classmethod
    def success(cls, step: str, node: str, dry_run: bool = False) -> "StepResult":
        return cls(step=step, node=node, outcome=StepOutcome.SUCCESS, dry_run=dry_run)

    @classmethod
    def skipped(cls, step: str, node: str, reason: str = "already satisfied") -> "StepResult":
        return cls(step=step, node=node, outcome=StepOutcome.SKIPPED, reason=reason)

    @classmethod
    def failed(cls, step: str, node: str, error: Exception) -> "StepResult":
        """Build a failed result from an exception, keeping its classification."""
        if isinstance(error, ClusterBootstrapError):
            kind = error.kind
            reason = error.message
        else:
            kind = ErrorKind.FATAL
            reason = str(error) or type(error).__name__
        return cls(step=step, node=node, outcome=StepOutcome.FAILED, error_kind=kind, reason=reason)

    @property
    def is_failure(self) -> bool:
        return self.outcome == StepOutcome.FAILED

    def describe(self) -> str:
        """One-line human readable summary."""
        if self.outcome == StepOutcome.FAILED:
            return f"{self.node}/{self.step}: {self.error_kind.value}: {self.reason}"
        if self.outcome == StepOutcome.SKIPPED:
            return f"{self.node}/{self.step}: skipped ({self.reason})"
        return f"{self.node}/{self.step}: success"


class RunReport:
    """Thread-safe, append-only collection of step results for one run."""

    def __init__(self):
        self._lock = threading.Lock()
        self._results: list[StepResult] = []
        self.aborted = False

    def record(self, result: StepResult) -> StepResult:
        with self._lock:
            self._results.append(result)
        return result

    def extend(self, results: list[StepResult]) -> None:
        with self._lock:
            self._results.extend(results)

    @property
    def results(self) -> list[StepResult]:
        with self._lock:
            return list(self._results)

    def for_node(self, hostname: str) -> list[StepResult]:
        return [r for r in self.results if r.node == hostname]

    def outcomes(self, step: str) -> dict[str, StepOutcome]:
        """Latest outcome of a step keyed by node."""
        return {r.node: r.outcome for r in self.results if r.step == step}

    @property
    def failures(self) -> list[StepResult]:
        return [r for r in self.results if r.is_failure]

    @property
    def first_fatal(self) -> StepResult | None:
        """First fatal failure, falling back to the first failure of any kind."""
        failures = self.failures
        for result in failures:
            if result.error_kind == ErrorKind.FATAL:
                return result
        return failures[0] if failures else None

    @property
    def succeeded(self) -> bool:
        return not self.aborted and not self.failures

    @property
    def exit_code(self) -> int:
        if self.aborted:
            return 130
        return 0 if not self.failures else 1

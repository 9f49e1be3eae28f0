"""Idempotency guard: observe state before mutating it.

Every mutating step is described by the preconditions that hold once it has
been applied. The guard checks them first and skips the step when they already
hold, so an interrupted run can be repeated safely.
"""

from dataclasses import dataclass, field
from enum import Enum

from cluster_bootstrap.exceptions import ConflictError, FatalError
from cluster_bootstrap.executor import CommandExecutor
from cluster_bootstrap.logging_config import get_logger
from cluster_bootstrap.models.node import Node
from cluster_bootstrap.models.results import CommandResult, StepResult

logger = get_logger(__name__)


class GuardState(str, Enum):
    """Result of checking a precondition against a host."""

    SATISFIED = "satisfied"
    UNSATISFIED = "unsatisfied"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class GuardCheck:
    state: GuardState
    detail: str = ""

    @property
    def satisfied(self) -> bool:
        return self.state == GuardState.SATISFIED


def version_matches(installed: str, expected: str) -> bool:
    """Check an installed package version against an exact pin or a track.

    "1.30.2-1.1" matches "1.30", "1.30.2" and "1.30.2-1.1" but not "1.3".
    """
    installed = installed.strip().lstrip("v")
    expected = expected.strip().lstrip("v")
    if not installed or not expected:
        return False
    if installed == expected:
        return True
    return installed.startswith(f"{expected}.") or installed.startswith(f"{expected}-")


@dataclass(frozen=True)
class Precondition:
    """A named observable fact, checked by running a read-only probe."""

    name: str
    probe: str

    def evaluate(self, result: CommandResult) -> GuardCheck:
        if result.exit_code == 0:
            return GuardCheck(GuardState.SATISFIED)
        return GuardCheck(GuardState.UNSATISFIED, f"{self.name} does not hold")


@dataclass(frozen=True)
class PackageVersionPrecondition(Precondition):
    """Packages installed at an expected version.

    The probe prints one "<package> <version>" line per installed package.
    When locked is True every package must carry the same version.
    """

    packages: tuple[str, ...] = ()
    expected: str | None = None
    locked: bool = False

    def evaluate(self, result: CommandResult) -> GuardCheck:
        installed: dict[str, str] = {}
        for line in (result.stdout or "").splitlines():
            parts = line.split()
            if len(parts) >= 2 and parts[0] in self.packages:
                installed[parts[0]] = parts[1]

        if not installed:
            return GuardCheck(GuardState.UNSATISFIED, f"{', '.join(self.packages)} not installed")

        if self.expected:
            wrong = {
                pkg: ver
                for pkg, ver in installed.items()
                if not version_matches(ver, self.expected)
            }
            if wrong:
                found = ", ".join(f"{pkg}={ver}" for pkg, ver in sorted(wrong.items()))
                return GuardCheck(
                    GuardState.CONFLICT, f"expected version {self.expected}, found {found}"
                )

        if self.locked and len(set(installed.values())) > 1:
            found = ", ".join(f"{pkg}={ver}" for pkg, ver in sorted(installed.items()))
            return GuardCheck(GuardState.CONFLICT, f"versions are not locked together: {found}")

        missing = [pkg for pkg in self.packages if pkg not in installed]
        if missing:
            return GuardCheck(GuardState.UNSATISFIED, f"{', '.join(missing)} not installed")
        return GuardCheck(GuardState.SATISFIED)


@dataclass(frozen=True)
class GuardedStep:
    """A mutating step: preconditions that prove it done, and the actions."""

    name: str
    preconditions: tuple[Precondition, ...]
    actions: tuple[str, ...] = field(default_factory=tuple)
    timeout: float | None = None
    # Actions that cannot be safely re-run on a half-applied host set this False
    retry: bool = True


class IdempotencyGuard:
    """Checks preconditions and applies guarded steps through an executor."""

    def __init__(self, executor: CommandExecutor):
        self.executor = executor

    def check(self, precondition: Precondition, target: Node | None = None) -> GuardCheck:
        """Evaluate one precondition on target."""
        result = self.executor.query(precondition.probe, target)
        check = precondition.evaluate(result)
        logger.debug(f"guard {precondition.name}: {check.state.value} {check.detail}".rstrip())
        return check

    def check_all(self, preconditions, target: Node | None = None) -> GuardCheck:
        """Evaluate several preconditions; any conflict wins, then any unsatisfied."""
        unsatisfied = None
        for precondition in preconditions:
            check = self.check(precondition, target)
            if check.state == GuardState.CONFLICT:
                return GuardCheck(GuardState.CONFLICT, f"{precondition.name}: {check.detail}")
            if check.state == GuardState.UNSATISFIED and unsatisfied is None:
                unsatisfied = check
        return unsatisfied or GuardCheck(GuardState.SATISFIED)

    def apply(self, step: GuardedStep, target: Node | None = None) -> StepResult:
        """Apply a guarded step unless its preconditions already hold.

        Returns:
            A skipped or success StepResult

        Raises:
            ConflictError: If existing state conflicts with the step
            FatalError: If the step ran but its postcondition still fails
            TransientError: If a command kept failing transiently
        """
        node_name = target.hostname if target is not None else "localhost"
        before = self.check_all(step.preconditions, target)
        if before.state == GuardState.CONFLICT:
            raise ConflictError(
                f"{step.name} conflicts with existing state on {node_name}", before.detail
            )
        if before.satisfied:
            logger.info(f"{node_name}/{step.name}: already satisfied, skipping")
            return StepResult.skipped(step.name, node_name)

        logger.info(f"{node_name}/{step.name}: applying")
        for action in step.actions:
            self.executor.execute(action, target, timeout=step.timeout, retry=step.retry)

        if self.executor.dry_run:
            return StepResult.success(step.name, node_name, dry_run=True)

        after = self.check_all(step.preconditions, target)
        if not after.satisfied:
            raise FatalError(
                f"{step.name} did not take effect on {node_name}",
                after.detail or "postcondition check failed after applying the step",
            )
        return StepResult.success(step.name, node_name)

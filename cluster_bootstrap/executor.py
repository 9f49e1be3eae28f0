"""Command execution on fleet hosts.

Commands run through a transport: OpenSSH for fleet nodes, a local bash for the
control machine. The executor adds timeout enforcement, failure classification,
bounded retry of transient failures, dry-run and cancellation on top.
"""

import logging
import re
import shlex
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from cluster_bootstrap.config import BootstrapConfig
from cluster_bootstrap.exceptions import (
    ClusterBootstrapError,
    CommandTimeoutError,
    FatalError,
    OperationAbortedError,
    TransientError,
)
from cluster_bootstrap.logging_config import get_logger, redact
from cluster_bootstrap.models.node import Node
from cluster_bootstrap.models.results import CommandResult, StepResult

logger = get_logger(__name__)

LOCAL_TARGET = "localhost"

# ssh reserves 255 for its own connection failures
SSH_CONNECTION_FAILURE = 255

TRANSIENT_PATTERNS = re.compile(
    "|".join(
        [
            r"connection refused",
            r"connection reset",
            r"connection timed out",
            r"could not resolve host",
            r"temporary failure",
            r"network is unreachable",
            r"no route to host",
            r"could not get lock",
            r"unable to acquire the dpkg frontend lock",
            r"tls handshake timeout",
            r"i/o timeout",
            r"the server is currently unable to handle the request",
            r"etcdserver: request timed out",
            r"failed to download",
        ]
    ),
    re.IGNORECASE,
)

_POLL_INTERVAL = 0.2


def classify_failure(result: CommandResult, transport_failure_code: int | None = None) -> type:
    """Pick the error class for a failed command result.

    Args:
        result: A result whose command did not succeed
        transport_failure_code: Exit code the transport uses for its own failures

    Returns:
        CommandTimeoutError, TransientError or FatalError
    """
    if result.timed_out:
        return CommandTimeoutError
    if transport_failure_code is not None and result.exit_code == transport_failure_code:
        return TransientError
    if TRANSIENT_PATTERNS.search(result.stderr or "") or TRANSIENT_PATTERNS.search(
        result.stdout or ""
    ):
        return TransientError
    return FatalError


class Transport(ABC):
    """Runs a command string somewhere and captures its result."""

    name: str = LOCAL_TARGET
    failure_code: int | None = None

    @abstractmethod
    def execute(
        self, command: str, timeout: float, cancel_event: threading.Event | None = None
    ) -> CommandResult:
        """Run command and return the captured result.

        Raises:
            OperationAbortedError: If cancel_event is set while the command runs
            FatalError: If the command cannot be started at all
        """


class SubprocessTransport(Transport):
    """Transport backed by a local child process."""

    def __init__(self, use_sudo: bool = False):
        self.use_sudo = use_sudo

    @abstractmethod
    def build_argv(self, command: str) -> list[str]:
        """Turn the command string into the argv to spawn."""

    def execute(
        self, command: str, timeout: float, cancel_event: threading.Event | None = None
    ) -> CommandResult:
        argv = self.build_argv(command)
        started = time.monotonic()
        deadline = started + timeout
        try:
            proc = subprocess.Popen(
                argv, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True
            )
        except FileNotFoundError:
            raise FatalError(
                f"'{argv[0]}' is not installed or not in PATH",
                f"Install {argv[0]} on the control machine to reach {self.name}",
            )
        except OSError as e:
            raise FatalError(f"Failed to start command on {self.name}: {e}")

        while True:
            try:
                stdout, stderr = proc.communicate(timeout=_POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                if cancel_event is not None and cancel_event.is_set():
                    proc.kill()
                    proc.communicate()
                    raise OperationAbortedError(
                        f"Command on {self.name} aborted by operator", redact(command)
                    )
                if time.monotonic() >= deadline:
                    proc.kill()
                    stdout, stderr = proc.communicate()
                    return CommandResult(
                        command=redact(command),
                        target=self.name,
                        exit_code=None,
                        stdout=stdout or "",
                        stderr=stderr or "",
                        duration=time.monotonic() - started,
                        timed_out=True,
                    )

        return CommandResult(
            command=redact(command),
            target=self.name,
            exit_code=proc.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            duration=time.monotonic() - started,
        )


class LocalTransport(SubprocessTransport):
    """Runs commands on the control machine."""

    name = LOCAL_TARGET

    def build_argv(self, command: str) -> list[str]:
        if self.use_sudo:
            return ["sudo", "-n", "bash", "-c", command]
        return ["bash", "-c", command]


class SSHTransport(SubprocessTransport):
    """Runs commands on a fleet node through OpenSSH in batch mode."""

    failure_code = SSH_CONNECTION_FAILURE

    def __init__(
        self,
        node: Node,
        user: str | None = None,
        key_path: str | None = None,
        options: list[str] | None = None,
        use_sudo: bool = True,
    ):
        super().__init__(use_sudo=use_sudo)
        self.node = node
        self.name = node.hostname
        self.user = node.ssh_user or user
        self.key_path = key_path
        self.options = list(options or [])

    def build_argv(self, command: str) -> list[str]:
        argv = ["ssh", "-o", "BatchMode=yes", "-p", str(self.node.ssh_port)]
        for option in self.options:
            argv += ["-o", option]
        if self.key_path:
            argv += ["-i", self.key_path]
        destination = f"{self.user}@{self.node.address}" if self.user else self.node.address
        remote = command
        if self.use_sudo:
            remote = f"sudo -n bash -c {shlex.quote(command)}"
        return argv + [destination, remote]


TransportFactory = Callable[[Node | None], Transport]


def ssh_transport_factory(config: BootstrapConfig) -> TransportFactory:
    """Build the default factory: ssh for nodes, bash for the control machine."""
    local = LocalTransport(use_sudo=False)

    def factory(node: Node | None) -> Transport:
        if node is None:
            return local
        return SSHTransport(
            node,
            user=config.ssh_user,
            key_path=config.ssh_key,
            options=config.ssh_options,
            use_sudo=config.use_sudo,
        )

    return factory


class CommandExecutor:
    """Runs commands against fleet nodes with retry, dry-run and cancellation."""

    def __init__(
        self,
        config: BootstrapConfig,
        transport_factory: TransportFactory | None = None,
        dry_run: bool = False,
        cancel_event: threading.Event | None = None,
    ):
        """Initialize the executor.

        Args:
            config: Bootstrap configuration (timeouts and retry policy)
            transport_factory: Maps a node (or None for local) to a transport
            dry_run: If True, mutating commands are only emitted, never run
            cancel_event: Shared event that aborts in-flight commands when set
        """
        self.config = config
        self.transport_factory = transport_factory or ssh_transport_factory(config)
        self.dry_run = dry_run
        self.cancel_event = cancel_event or threading.Event()
        self.emitted: list[tuple[str, str]] = []
        self._emitted_lock = threading.Lock()
        self._transports: dict[str, Transport] = {}
        self._transports_lock = threading.Lock()

    def _transport(self, target: Node | None) -> Transport:
        key = target.hostname if target is not None else LOCAL_TARGET
        with self._transports_lock:
            if key not in self._transports:
                self._transports[key] = self.transport_factory(target)
            return self._transports[key]

    def _sleep(self, seconds: float) -> None:
        # Backoff waits wake up immediately on abort
        if self.cancel_event.wait(seconds):
            raise OperationAbortedError("Run aborted by operator during retry backoff")

    def retrying(self, retry=None, attempts: int | None = None, wait=None) -> Retrying:
        """Retry policy shared by every retried operation.

        Args:
            retry: tenacity retry condition; transient failures by default
            attempts: Maximum attempts, defaulting to retry_attempts
            wait: tenacity wait strategy; exponential backoff by default
        """
        return Retrying(
            stop=stop_after_attempt(attempts or self.config.retry_attempts),
            wait=wait or self.backoff,
            retry=retry or retry_if_exception_type(TransientError),
            sleep=self._sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    @property
    def backoff(self) -> wait_exponential:
        base = self.config.retry_base_delay
        return wait_exponential(multiplier=base, min=base)

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise OperationAbortedError("Run aborted by operator")

    def _attempt(
        self, transport: Transport, command: str, timeout: float, check: bool
    ) -> CommandResult:
        self._check_cancelled()
        result = transport.execute(command, timeout, self.cancel_event)
        logger.debug(
            f"[{result.target}] exit={result.exit_code} in {result.duration:.1f}s: {result.command}"
        )
        if result.ok:
            return result

        error_class = classify_failure(result, transport.failure_code)
        if result.timed_out:
            message = f"Command timed out after {timeout:.0f}s on {result.target}"
        else:
            message = f"Command failed on {result.target} with exit code {result.exit_code}"
        details = redact(f"$ {result.command}\n{(result.stderr or result.stdout).strip()}")

        if error_class is FatalError and not check:
            return result
        raise error_class(message, details)

    def execute(
        self,
        command: str,
        target: Node | None = None,
        timeout: float | None = None,
        check: bool = True,
        mutating: bool = True,
        retry: bool = True,
    ) -> CommandResult:
        """Execute a command on target, retrying transient failures.

        Args:
            command: Shell command string
            target: Node to run on, or None for the control machine
            timeout: Per-attempt timeout in seconds
            check: If False, a fatal non-zero exit is returned instead of raised
            mutating: If False, the command runs even in dry-run mode
            retry: If False, transient failures are raised on the first attempt

        Returns:
            The command result

        Raises:
            TransientError: If every attempt failed transiently
            FatalError: On a non-retryable failure (when check is True)
            OperationAbortedError: If the run is aborted
        """
        timeout = timeout or self.config.command_timeout
        transport = self._transport(target)
        shown = redact(command)

        if self.dry_run and mutating:
            self._check_cancelled()
            logger.info(f"[dry-run] [{transport.name}] {shown}")
            with self._emitted_lock:
                self.emitted.append((transport.name, shown))
            return CommandResult(
                command=shown, target=transport.name, exit_code=0, dry_run=True
            )

        logger.debug(f"[{transport.name}] running: {shown}")
        retrying = self.retrying(attempts=None if retry else 1)
        return retrying(self._attempt, transport, command, timeout, check)

    def query(
        self, command: str, target: Node | None = None, timeout: float | None = None
    ) -> CommandResult:
        """Run a read-only probe; a non-zero exit is returned, not raised."""
        return self.execute(
            command,
            target,
            timeout=timeout or self.config.probe_timeout,
            check=False,
            mutating=False,
        )

    def run(
        self, step: str, command: str, target: Node | None = None, timeout: float | None = None
    ) -> StepResult:
        """Execute one command as a named step and report its outcome."""
        node_name = target.hostname if target is not None else LOCAL_TARGET
        try:
            self.execute(command, target, timeout)
        except OperationAbortedError:
            raise
        except ClusterBootstrapError as e:
            logger.error(f"{node_name}/{step} failed: {e.message}")
            return StepResult.failed(step, node_name, e)
        return StepResult.success(step, node_name, dry_run=self.dry_run)

    def wait_for(
        self,
        predicate: Callable[[], bool],
        timeout: float,
        interval: float | None = None,
    ) -> bool:
        """Poll predicate until it returns True or timeout elapses.

        Returns:
            True if the predicate became true in time
        """
        interval = self.config.poll_interval if interval is None else interval
        deadline = time.monotonic() + timeout
        while True:
            self._check_cancelled()
            if predicate():
                return True
            if time.monotonic() >= deadline:
                return False
            self._sleep(min(interval, max(deadline - time.monotonic(), 0)))

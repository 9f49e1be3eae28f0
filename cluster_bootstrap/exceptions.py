"""Custom exceptions for the cluster bootstrap orchestrator."""

from enum import Enum


class ErrorKind(str, Enum):
    """Failure classification used for retry and reporting decisions."""

    TRANSIENT = "transient"
    CONFLICT = "conflict"
    FATAL = "fatal"


class ClusterBootstrapError(Exception):
    """Base exception for all cluster bootstrap errors."""

    kind: ErrorKind = ErrorKind.FATAL

    def __init__(self, message: str, details: str = None):
        """Initialize the exception.

        Args:
            message: Main error message
            details: Additional details or suggestions
        """
        self.message = message
        self.details = details
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message.

        Returns:
            Formatted error message with details
        """
        if self.details:
            return f"{self.message}\n\nDetails: {self.details}"
        return self.message


class TransientError(ClusterBootstrapError):
    """Exception raised for failures worth retrying (network, timeouts, lag)."""

    kind = ErrorKind.TRANSIENT


class CommandTimeoutError(TransientError):
    """Exception raised when a command exceeds its timeout."""

    pass


class ConflictError(ClusterBootstrapError):
    """Exception raised when existing state has an unexpected form."""

    kind = ErrorKind.CONFLICT


class FatalError(ClusterBootstrapError):
    """Exception raised for failures with no retry path."""

    kind = ErrorKind.FATAL


class PhaseGateError(FatalError):
    """Exception raised when a phase gate fails and the whole run must stop."""

    pass


class OperationAbortedError(ClusterBootstrapError):
    """Exception raised when the operator aborts a run."""

    kind = ErrorKind.FATAL


class KubernetesError(ClusterBootstrapError):
    """Exception raised for Kubernetes API errors."""

    pass


class ValidationError(ClusterBootstrapError):
    """Exception raised for validation errors."""

    pass


class ConfigurationError(ClusterBootstrapError):
    """Exception raised for configuration errors."""

    pass


class InventoryError(ClusterBootstrapError):
    """Exception raised for inventory file errors."""

    pass

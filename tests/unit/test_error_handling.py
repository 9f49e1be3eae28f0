"""Tests for error handling and logging across components."""

import logging

import pytest

from cluster_bootstrap.exceptions import (
    ClusterBootstrapError,
    CommandTimeoutError,
    ConfigurationError,
    ConflictError,
    ErrorKind,
    FatalError,
    InventoryError,
    KubernetesError,
    OperationAbortedError,
    PhaseGateError,
    TransientError,
    ValidationError,
)
from cluster_bootstrap.inventory import InventoryValidationError
from cluster_bootstrap.logging_config import (
    REDACTED,
    get_logger,
    redact,
    register_secret,
    setup_logging,
)
from cluster_bootstrap.models.results import StepResult


def test_custom_exception_with_details():
    """Test that custom exceptions support message and details."""
    error = FatalError("kubeadm init failed", "Run: kubeadm reset -f")

    assert error.message == "kubeadm init failed"
    assert error.details == "Run: kubeadm reset -f"
    assert "kubeadm init failed" in str(error)
    assert "Run: kubeadm reset -f" in str(error)
    assert "Details:" in error.format_message()


def test_custom_exception_without_details():
    """Test that custom exceptions work without details."""
    error = ValidationError("Invalid input")

    assert error.message == "Invalid input"
    assert error.details is None
    assert str(error) == "Invalid input"


def test_exception_hierarchy():
    """Test that all custom exceptions inherit from ClusterBootstrapError."""
    for cls in (
        TransientError,
        ConflictError,
        FatalError,
        OperationAbortedError,
        KubernetesError,
        ValidationError,
        ConfigurationError,
        InventoryError,
    ):
        assert issubclass(cls, ClusterBootstrapError)
    assert issubclass(CommandTimeoutError, TransientError)
    assert issubclass(PhaseGateError, FatalError)
    assert issubclass(InventoryValidationError, InventoryError)


def test_error_kinds():
    """Test that each error carries the classification used for reporting."""
    assert TransientError("x").kind == ErrorKind.TRANSIENT
    assert CommandTimeoutError("x").kind == ErrorKind.TRANSIENT
    assert ConflictError("x").kind == ErrorKind.CONFLICT
    assert FatalError("x").kind == ErrorKind.FATAL
    assert PhaseGateError("x").kind == ErrorKind.FATAL


def test_failed_step_result_keeps_error_kind():
    result = StepResult.failed("role", "master1", ConflictError("role has other rules"))

    assert result.is_failure
    assert result.error_kind == ErrorKind.CONFLICT
    assert result.reason == "role has other rules"
    assert "conflict" in result.describe()


def test_failed_step_result_from_plain_exception():
    result = StepResult.failed("preflight", "worker1", RuntimeError("surprise"))

    assert result.error_kind == ErrorKind.FATAL
    assert result.reason == "surprise"


def test_logging_setup():
    """Test that logging can be configured."""
    setup_logging(level="INFO", verbose=False)

    logger = get_logger("test")
    assert logger is not None
    assert logger.name == "test"


def test_logging_with_verbose():
    """Test that verbose mode sets DEBUG level."""
    setup_logging(verbose=True)

    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("kubernetes").level == logging.WARNING


def test_redact_replaces_registered_secrets():
    register_secret("abcdef.0123456789abcdef")

    text = "kubeadm join 10.0.0.1:6443 --token abcdef.0123456789abcdef"
    assert redact(text) == f"kubeadm join 10.0.0.1:6443 --token {REDACTED}"


def test_redact_ignores_empty_secret():
    register_secret("")
    register_secret(None)

    assert redact("nothing to hide") == "nothing to hide"


def test_log_file_never_contains_secret(tmp_path):
    log_file = tmp_path / "logs" / "run.log"
    setup_logging(log_file=log_file, verbose=True)
    register_secret("s3cr3t-bearer-token")

    get_logger("test").info("token is %s", "s3cr3t-bearer-token")
    get_logger("test").info("token is s3cr3t-bearer-token")
    for handler in logging.getLogger().handlers:
        handler.flush()

    content = log_file.read_text()
    assert "s3cr3t-bearer-token" not in content
    assert content.count(REDACTED) == 2


def test_inventory_error_messages():
    """Test that inventory errors have helpful messages."""
    from cluster_bootstrap.inventory import InventoryManager

    mgr = InventoryManager("nonexistent.yml")

    with pytest.raises(InventoryError) as exc_info:
        mgr.read()

    error_msg = str(exc_info.value)
    assert "not found" in error_msg.lower()
    assert "nonexistent.yml" in error_msg


def test_exception_can_be_caught_as_base_class():
    """Test that specific exceptions can be caught as ClusterBootstrapError."""
    try:
        raise ConflictError("Test error")
    except ClusterBootstrapError as e:
        assert isinstance(e, ConflictError)
        assert e.message == "Test error"

"""Idempotent kubeadm cluster bootstrap orchestrator."""

__version__ = "0.1.0"

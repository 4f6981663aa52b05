"""Crash-safe orchestration core for multi-agent security assessment runs."""

__version__ = "0.1.0"

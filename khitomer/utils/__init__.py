"""Shared utilities: logging setup, retry policy, async subprocesses, cancellation."""

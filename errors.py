# errors.py
from __future__ import annotations


class OperatorError(RuntimeError):
    """Base class for reconcile failures."""


class TransientError(OperatorError):
    """Retry with backoff (conflicts, races with the API server)."""

    def __init__(self, message: str, delay: float = 5.0):
        super().__init__(message)
        self.delay = delay

# errors.py
"""
King of the Hill - error taxonomy.
Every failed operation raises one of these and leaves the game untouched.
"""

from __future__ import annotations


class HillError(Exception):
    """Base for all game errors."""

    kind = "error"

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ValidationError(HillError):
    """Bad input: below-minimum buy, invalid time window, nothing to claim."""

    kind = "validation"


class AuthorizationError(HillError):
    """Owner-only operation called by someone else."""

    kind = "authorization"


class StateError(HillError):
    """Operation not allowed in the current state (settling too early, stray value)."""

    kind = "state"


class ReentrancyError(HillError):
    """Nested call into a guarded operation."""

    kind = "reentrancy"

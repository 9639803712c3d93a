# guard.py
"""
King of the Hill - access control, pause switch and reentrancy barrier.

Decorators for KingOfTheHill methods whose first argument is the caller.
They only read `self.state.owner`, `self.state.paused` and `self._entered`.
"""

from __future__ import annotations

import functools

from errors import AuthorizationError, ReentrancyError, ValidationError


def only_owner(fn):
    @functools.wraps(fn)
    def wrapper(self, caller, *args, **kwargs):
        if caller != self.state.owner:
            raise AuthorizationError("caller is not the owner")
        return fn(self, caller, *args, **kwargs)

    return wrapper


def when_not_paused(fn):
    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        if self.state.paused:
            raise ValidationError("game is paused")
        return fn(self, *args, **kwargs)

    return wrapper


def non_reentrant(fn):
    """Reject entry into any guarded method while another one is running."""

    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        if self._entered:
            raise ReentrancyError("reentrant call")
        self._entered = True
        try:
            return fn(self, *args, **kwargs)
        finally:
            self._entered = False

    return wrapper

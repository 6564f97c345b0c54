"""Error taxonomy and invariant checks.

Two channels are kept apart:

- ``UnsupportedOperation`` signals an expected, recoverable failure (for
  instance an anisotropic refinement request). It is always raised.
- Every other check goes through :func:`check` / :func:`fail`. By default
  these raise the typed exception; with abort mode enabled they log the
  diagnostic at CRITICAL level and abort the process.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import Iterator, NoReturn

log = logging.getLogger(__name__)

_abort_on_violation = False


class AMRError(Exception):
    """Base class of all errors raised by the AMR package."""


class PreconditionError(AMRError, ValueError):
    """Out-of-range input or a call made in the wrong state."""


class StaleNumbering(PreconditionError):
    """A DoF numbering was used against a newer mesh generation."""


class InvalidMesh(AMRError):
    """A structural mesh invariant does not hold."""


class InvalidConstraint(AMRError):
    """Misuse of a constraint set (conflicting weights, mutation after closing)."""


class CyclicConstraint(AMRError):
    """A constraint chain refers back to its own constrained index."""


class UnsupportedOperation(AMRError, NotImplementedError):
    """A request the engine deliberately does not support."""


class InternalError(AMRError):
    """Internal bookkeeping is inconsistent."""


def set_abort_on_violation(flag: bool) -> bool:
    """Enable or disable abort mode. Returns the previous setting."""
    global _abort_on_violation
    previous = _abort_on_violation
    _abort_on_violation = bool(flag)
    return previous


def abort_on_violation_enabled() -> bool:
    return _abort_on_violation


@contextmanager
def abort_on_violation(flag: bool = True) -> Iterator[None]:
    """Temporarily switch abort mode on (or off)."""
    previous = set_abort_on_violation(flag)
    try:
        yield
    finally:
        set_abort_on_violation(previous)


def fail(exc_type: type[AMRError], message: str) -> NoReturn:
    """Report a violated condition through the configured channel."""
    if issubclass(exc_type, UnsupportedOperation) or not _abort_on_violation:
        raise exc_type(message)
    log.critical(f"{exc_type.__name__}: {message}")
    os.abort()
    # os.abort can be patched out in tests
    raise exc_type(message)


def check(condition: bool, exc_type: type[AMRError], message: str) -> None:
    if not condition:
        fail(exc_type, message)

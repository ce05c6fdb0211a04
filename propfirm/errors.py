"""
errors.py — Error taxonomy shared by the engine components.

Policy outcomes (bad signature, rejected evaluation, revoked agent, quota)
are returned as outcome objects (OnboardOutcome, GateOutcome) so they can
carry their metrics and reasons. These exceptions are raised only where an
operation cannot produce an outcome at all.
"""

from __future__ import annotations


class PropFirmError(Exception):
    """Base exception for the prop firm engine."""

    code = "error"
    retryable = False


class NotFoundError(PropFirmError):
    """Unknown agent or pool account."""

    code = "not_found"


class ConflictError(PropFirmError):
    """Duplicate address, account already claimed, or a lost unique-constraint race."""

    code = "conflict"


class DuplicateAgentError(ConflictError):
    """An agent already exists for this external address."""


class AccountClaimedError(ConflictError):
    """The pool account was claimed by someone else first."""


class CapacityExhaustedError(PropFirmError):
    """No free pool account. The caller may retry later."""

    code = "capacity_exhausted"
    retryable = True


class ForbiddenError(PropFirmError):
    """Agent is revoked, or the kill-switch just fired."""

    code = "forbidden"


class DependencyUnavailableError(PropFirmError):
    """An exchange read failed or timed out."""

    code = "dependency_unavailable"
    retryable = True


class StoreError(PropFirmError):
    """Persistence failure. Never swallowed."""

    code = "store_error"

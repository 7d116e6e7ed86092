"""
muster.services.exceptions — Error Taxonomy
============================================

Every failure the lifecycle engine raises derives from :class:`MusterError`
so cogs and the scheduler can tell domain errors apart from bugs.

- ``ValidationError``      — ineligible join, malformed interval; shown to the caller.
- ``NotFoundError``        — missing event / participant; shown to the caller.
- ``CapacityConflict``     — lost a race on the last slot; retry the action once.
- ``ExternalGatewayError`` — a Discord call failed; logged, retried next tick.
- ``PersistenceError``     — the unit of work was rolled back; logged, loop continues.
"""

from __future__ import annotations


class MusterError(Exception):
    """Base class for all Muster domain errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ValidationError(MusterError):
    pass


class NotFoundError(MusterError):
    def __init__(self, resource: str) -> None:
        super().__init__(f"{resource} not found")


class CapacityConflict(MusterError):
    """Raised when a concurrent write took the slot this action was about to use."""


class ExternalGatewayError(MusterError):
    pass


class PersistenceError(MusterError):
    pass

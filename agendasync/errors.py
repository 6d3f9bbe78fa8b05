from __future__ import annotations


class AgendaSyncError(Exception):
    """Base class for errors raised by the reconciliation engine."""


class ValidationError(AgendaSyncError):
    """Planner output that cannot be coerced; handled inside the validator."""


class TargetResolutionError(AgendaSyncError):
    """UPDATE/CANCEL without any reference to act on."""


class AdapterError(AgendaSyncError):
    """A calendar or task backend call failed."""


class LockContentionError(AgendaSyncError):
    """Another pass holds the engine lock."""


class PlannerUnavailableError(AgendaSyncError):
    """The planning service failed or returned unusable output."""

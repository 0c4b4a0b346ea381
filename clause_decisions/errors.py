"""Typed errors raised by the decision engine."""


class ReviewError(Exception):
    """Base class for engine errors."""

    status_code = 500


class ValidationError(ReviewError):
    """Malformed command or payload. Caller bug, never retried."""

    status_code = 400


class PermissionDeniedError(ReviewError, PermissionError):
    """Escalation lock or finalization gate refused the command."""

    status_code = 403

    def __init__(self, reason: str, message: str = ""):
        super().__init__(message or reason)
        self.reason = reason


class NotFoundError(ReviewError):
    """Unknown clause, finding, decision or contract id."""

    status_code = 404


class InternalError(ReviewError):
    """A stored decision could not be folded (corrupt payload, dangling finding)."""

    status_code = 500


LOCKED_BY_ESCALATION = "locked_by_escalation"
FINALIZED = "finalized"

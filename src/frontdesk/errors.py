"""
Error taxonomy for the turn engine.

NLU misses (nothing extracted, low validation score, exhausted retries) are not
exceptions: they surface as `StepOutcome` reasons from the booking runner. The
classes here cover the I/O seams and configuration problems that abort a turn.
"""

from enum import Enum


class FailureReason(str, Enum):
    """Why a booking step did not advance."""

    EXTRACTION_FAILURE = "extraction_failure"
    VALIDATION_REJECTED = "validation_rejected"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"
    CALLER_DECLINED = "caller_declined"


class FrontDeskError(Exception):
    """Base class for turn engine errors."""
    pass


class TenantConfigError(FrontDeskError):
    """Raised when tenant configuration is missing or inconsistent."""
    pass


class StatePersistenceFailure(FrontDeskError):
    """Raised when the session state blob cannot be read or written."""

    def __init__(self, message: str, *, session_id: str = "", operation: str = ""):
        super().__init__(message)
        self.session_id = session_id
        self.operation = operation


class StateDecodeError(StatePersistenceFailure):
    """Raised when a stored blob is not a valid conversation state."""
    pass


class StateMismatchError(FrontDeskError):
    """Raised when a loaded state belongs to another tenant or session."""
    pass


class AmbiguousMatch(FrontDeskError):
    """
    Two scenarios cleared threshold with equal priority and near-equal confidence.

    Never raised to the caller: the selector resolves the tie by declaration order
    and keeps the instance on the selection result for logging.
    """

    def __init__(self, scenario_ids: tuple, confidence: float):
        super().__init__(f"ambiguous scenario match: {', '.join(scenario_ids)}")
        self.scenario_ids = scenario_ids
        self.confidence = confidence

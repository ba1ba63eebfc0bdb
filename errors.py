from typing import Optional


class LedgerError(Exception):
    """Base class for errors that abort a processing run."""


class MalformedRecordError(LedgerError):
    """Input record (or header) could not be parsed."""

    def __init__(self, detail: str, line: Optional[int] = None):
        self.detail = detail
        self.line = line
        if line is not None:
            super().__init__(f"line {line}: {detail}")
        else:
            super().__init__(detail)


class InvariantViolation(LedgerError):
    """Internal consistency check failed. Indicates a logic defect, not bad input."""


class InvalidTransitionError(InvariantViolation):
    def __init__(self, from_phase: str, to_phase: str):
        self.from_phase = from_phase
        self.to_phase = to_phase
        super().__init__(f"Invalid state transition from {from_phase} to {to_phase}")

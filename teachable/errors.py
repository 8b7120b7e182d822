from __future__ import annotations


class SessionError(Exception):
    """Base class for errors raised by the teachable session."""


class InvalidState(SessionError):
    """Operation is not valid in the current session state."""


class InsufficientData(SessionError):
    """Training was requested without samples for every registered class."""


class NotReady(SessionError):
    """The capture source has not been started yet."""


class ExtractionFailure(SessionError):
    """The feature extractor failed on a frame."""


class TrainingFailure(SessionError):
    """The classifier head could not be trained."""


__all__ = [
    "SessionError",
    "InvalidState",
    "InsufficientData",
    "NotReady",
    "ExtractionFailure",
    "TrainingFailure",
]

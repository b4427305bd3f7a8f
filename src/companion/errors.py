"""Typed failures raised by the turn pipeline and its collaborators."""
from __future__ import annotations


class CompanionError(Exception):
    """Base class for every error this package raises on purpose."""


class AuthorizationError(CompanionError):
    """Caller is not the owner of the session."""


class NotFoundError(CompanionError):
    """Unknown session identifier."""


class ValidationError(CompanionError):
    """Request rejected before any external call was made."""


class SessionClosedError(ValidationError):
    """Turn sent to a session that is no longer active."""


class PersistenceError(CompanionError):
    """Read or write against the conversation store failed."""


class UpstreamUnavailable(CompanionError):
    """Generative-text call failed, timed out or is not configured."""


class ExtractionMalformed(CompanionError):
    """Generated text could not be decoded into a structured payload."""

"""Domain errors for the delivery engine.

Three families, matching how callers react to them:

* ``CourierValidationError``: bad input from the caller. Raised synchronously,
  never retried.
* ``TransientError``: infrastructure hiccups. The scheduler retries these
  with exponential backoff until ``max_delivery_attempts`` is exhausted.
* ``ConsistencyError``: a logic or concurrency bug. Logged at ERROR and the
  affected record is left untouched for administrative review.

``ContentNotFound`` and ``InvalidRecipient`` are permanent delivery failures:
retrying them cannot succeed.
"""

from __future__ import annotations


class CourierError(Exception):
    """Base class for every error raised by the engine."""

    category = "error"


# --- Validation ---


class CourierValidationError(CourierError, ValueError):
    category = "validation"


class MissingContentRef(CourierValidationError):
    pass


class InvalidTrigger(CourierValidationError):
    pass


class TokenNotFound(CourierValidationError):
    pass


class TokenExpired(CourierValidationError):
    pass


class AlreadyResponded(CourierValidationError):
    pass


class NotFound(CourierValidationError):
    """The addressed record does not exist or belongs to another owner."""


# --- Transient ---


class TransientError(CourierError):
    category = "transient"


class NotifierUnavailable(TransientError):
    pass


class ContentStoreTimeout(TransientError):
    pass


class LeaseContention(TransientError):
    pass


# --- Permanent delivery failures ---


class PermanentDeliveryError(CourierError):
    category = "permanent"


class ContentNotFound(PermanentDeliveryError):
    pass


class InvalidRecipient(PermanentDeliveryError):
    pass


# --- Consistency ---


class ConsistencyError(CourierError):
    category = "consistency"


class InvalidStateTransition(ConsistencyError):
    pass


class DuplicateVerificationResponse(ConsistencyError):
    pass

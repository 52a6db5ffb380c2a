from __future__ import annotations

from courier.models.message import AuditEvent, Message  # noqa: F401
from courier.models.checkin import CheckIn, CheckInChallenge  # noqa: F401
from courier.models.verification import VerificationRequest  # noqa: F401
from courier.models.contact import TrustedContact  # noqa: F401

from .base import Base

# import models so Alembic/autoloaders can discover mappers
from .user import User, UserRole  # noqa: F401
from .competition import (  # noqa: F401
    Competition,
    CompetitionStatus,
    ParticipantType,
    RegistrationType,
)
from .cart import CartStatus, RegistrationCart, RegistrationCartItem  # noqa: F401
from .payment import (  # noqa: F401
    Payment,
    PaymentMaterialization,
    PaymentMethod,
    PaymentStatus,
)
from .registration import Registration, RegistrationStatus  # noqa: F401
from .submission import Submission, SubmissionCategory, SubmissionStatus  # noqa: F401
from .jury import JuryMember, JuryScore, JuryScoringProgress  # noqa: F401
from .audit import AuditLog  # noqa: F401

__all__ = [
    "Base",
    "User",
    "UserRole",
    "Competition",
    "CompetitionStatus",
    "ParticipantType",
    "RegistrationType",
    "CartStatus",
    "RegistrationCart",
    "RegistrationCartItem",
    "Payment",
    "PaymentMaterialization",
    "PaymentMethod",
    "PaymentStatus",
    "Registration",
    "RegistrationStatus",
    "Submission",
    "SubmissionCategory",
    "SubmissionStatus",
    "JuryMember",
    "JuryScore",
    "JuryScoringProgress",
    "AuditLog",
]

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    String,
    select,
)
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship

from .base import Base
from .id_type import ID_TYPE
from .utils import generate_unique_display_code, generate_unique_registration_number

if TYPE_CHECKING:
    from .competition import Competition, RegistrationType
    from .payment import Payment
    from .submission import Submission
    from .user import User


class RegistrationStatus:
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    SUBMITTED = "SUBMITTED"
    UNDER_REVIEW = "UNDER_REVIEW"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"

    ALL = (PENDING, CONFIRMED, SUBMITTED, UNDER_REVIEW, COMPLETED, CANCELLED, REFUNDED)


class Registration(Base):
    """A confirmed (or pending bank-transfer) entry into a competition.

    Rows are created only by the registration materializer, one per cart item
    of the paid cart. ``source_item_id`` is unique, so an item can never be
    materialized twice.
    """

    __tablename__ = "competition_registrations"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    registration_number: Mapped[Optional[str]] = mapped_column(
        String(16), unique=True, nullable=False
    )
    display_code: Mapped[Optional[str]] = mapped_column(
        String(32), unique=True, nullable=True
    )
    user_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    competition_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("competitions.id"), nullable=False, index=True
    )
    registration_type_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("competition_registration_types.id"), nullable=False
    )
    payment_id: Mapped[Optional[int]] = mapped_column(
        ID_TYPE,
        ForeignKey("competition_payments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    source_item_id: Mapped[Optional[int]] = mapped_column(
        ID_TYPE, unique=True, nullable=True
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RegistrationStatus.PENDING
    )
    participant_type: Mapped[str] = mapped_column(String(20), nullable=False)
    country: Mapped[str] = mapped_column(String(100), nullable=False)
    referral_source: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    team_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    company_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    members: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
    amount_paid: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="LKR")
    registered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    submitted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    user: Mapped["User"] = relationship(back_populates="registrations")
    competition: Mapped["Competition"] = relationship()
    registration_type: Mapped["RegistrationType"] = relationship()
    payment: Mapped[Optional["Payment"]] = relationship(back_populates="registrations")
    submission: Mapped[Optional["Submission"]] = relationship(
        back_populates="registration", uselist=False
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING','CONFIRMED','SUBMITTED','UNDER_REVIEW',"
            "'COMPLETED','CANCELLED','REFUNDED')",
            name="status_enum",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Registration(id={self.id}, number='{self.registration_number}', "
            f"status='{self.status}')>"
        )

    @classmethod
    def get_by_number(
        cls, session: Session, registration_number: str
    ) -> Optional["Registration"]:
        return session.scalar(
            select(cls).where(cls.registration_number == registration_number)
        )

    def ensure_registration_number(self, session: Session) -> str:
        """Assign a registration number if this row has none yet.

        Returns the (possibly pre-existing) number.
        """

        if not self.registration_number:
            self.registration_number = generate_unique_registration_number(session)
        return self.registration_number

    def ensure_display_code(self, session: Session, year: Optional[int] = None) -> str:
        """Assign the public ``ARC{YEAR}-XXXXXX`` code if this row has none yet.

        Parameters
        ----------
        session : Session
            Session used for the collision check.
        year : int, optional
            Year embedded in the code. Defaults to the competition's year, or
            the current year when the competition is not loaded.

        Returns
        -------
        str
            The display code, unchanged if it was already set.
        """

        if self.display_code:
            return self.display_code
        if year is None:
            competition = self.competition
            year = competition.year if competition is not None else datetime.now(
                timezone.utc
            ).year
        self.display_code = generate_unique_display_code(session, year)
        return self.display_code

    def confirm(self, session: Session, now: Optional[datetime] = None) -> None:
        """Mark the registration CONFIRMED and mint its display code."""

        self.ensure_display_code(session)
        self.status = RegistrationStatus.CONFIRMED
        if self.confirmed_at is None:
            self.confirmed_at = now or datetime.now(timezone.utc)

    @property
    def lead_member(self) -> Optional[dict[str, Any]]:
        return self.members[0] if self.members else None

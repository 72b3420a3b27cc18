from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    select,
)
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship

from ..db.utils import as_utc
from .base import Base
from .id_type import ID_TYPE


class CompetitionStatus:
    UPCOMING = "UPCOMING"
    REGISTRATION_OPEN = "REGISTRATION_OPEN"
    REGISTRATION_CLOSED = "REGISTRATION_CLOSED"
    IN_PROGRESS = "IN_PROGRESS"
    JUDGING = "JUDGING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    ALL = (
        UPCOMING,
        REGISTRATION_OPEN,
        REGISTRATION_CLOSED,
        IN_PROGRESS,
        JUDGING,
        COMPLETED,
        CANCELLED,
    )


class ParticipantType:
    INDIVIDUAL = "INDIVIDUAL"
    TEAM = "TEAM"
    COMPANY = "COMPANY"
    STUDENT = "STUDENT"
    KIDS = "KIDS"

    ALL = (INDIVIDUAL, TEAM, COMPANY, STUDENT, KIDS)


class Competition(Base):
    """A competition users register for."""

    __tablename__ = "competitions"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=CompetitionStatus.UPCOMING
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="LKR")
    registration_deadline: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    submission_deadline: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    registration_types: Mapped[list["RegistrationType"]] = relationship(
        back_populates="competition", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('UPCOMING','REGISTRATION_OPEN','REGISTRATION_CLOSED',"
            "'IN_PROGRESS','JUDGING','COMPLETED','CANCELLED')",
            name="status_enum",
        ),
    )

    def __repr__(self) -> str:
        return f"<Competition(id={self.id}, slug='{self.slug}', status='{self.status}')>"

    @classmethod
    def get_by_slug(cls, session: Session, slug: str) -> Optional["Competition"]:
        return session.scalar(select(cls).where(cls.slug == slug))

    def registration_closed(self, now: Optional[datetime] = None) -> bool:
        """Return ``True`` once the registration deadline has passed."""

        now = now or datetime.now(timezone.utc)
        return as_utc(now) > as_utc(self.registration_deadline)


class RegistrationType(Base):
    """A fee tier of a competition (individual, team, company, ...).

    ``max_members`` bounds the roster size a registration of this tier may
    carry; the database does not enforce it, the cart and the materializer do.
    """

    __tablename__ = "competition_registration_types"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    competition_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("competitions.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    fee: Mapped[float] = mapped_column(Float, nullable=False)
    max_members: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    competition: Mapped["Competition"] = relationship(back_populates="registration_types")

    __table_args__ = (
        UniqueConstraint("competition_id", "type"),
        CheckConstraint(
            "type IN ('INDIVIDUAL','TEAM','COMPANY','STUDENT','KIDS')",
            name="type_enum",
        ),
        CheckConstraint("max_members >= 1", name="max_members_positive"),
    )

    def __repr__(self) -> str:
        return (
            f"<RegistrationType(id={self.id}, competition_id={self.competition_id}, "
            f"type='{self.type}', fee={self.fee}, max_members={self.max_members})>"
        )

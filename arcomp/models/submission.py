from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    select,
)
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship

from .base import Base
from .id_type import ID_TYPE

if TYPE_CHECKING:
    from .registration import Registration


class SubmissionStatus:
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    VALIDATED = "VALIDATED"
    REJECTED = "REJECTED"
    PUBLISHED = "PUBLISHED"

    ALL = (DRAFT, SUBMITTED, VALIDATED, REJECTED, PUBLISHED)


class SubmissionCategory:
    DIGITAL = "DIGITAL"
    PHYSICAL = "PHYSICAL"

    ALL = (DIGITAL, PHYSICAL)


class Submission(Base):
    """A registrant's entry, one per registration.

    A published submission is always validated; the ``published_validated``
    check constraint backs the workflow rule at the database level.
    """

    __tablename__ = "competition_submissions"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    registration_id: Mapped[int] = mapped_column(
        ID_TYPE,
        ForeignKey("competition_registrations.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    user_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    competition_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("competitions.id"), nullable=False, index=True
    )
    registration_number: Mapped[str] = mapped_column(
        String(16), nullable=False, index=True
    )
    category: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SubmissionCategory.DIGITAL
    )
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    key_photo_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    additional_photo_urls: Mapped[list[str]] = mapped_column(
        JSON, nullable=False, default=list
    )
    document_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    video_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SubmissionStatus.DRAFT, index=True
    )
    is_validated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    validation_errors: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON, nullable=True
    )
    validated_by: Mapped[Optional[int]] = mapped_column(
        ID_TYPE, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    validated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    validation_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    published_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    submitted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    vote_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    view_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    registration: Mapped["Registration"] = relationship(back_populates="submission")

    __table_args__ = (
        CheckConstraint(
            "status IN ('DRAFT','SUBMITTED','VALIDATED','REJECTED','PUBLISHED')",
            name="status_enum",
        ),
        CheckConstraint("category IN ('DIGITAL','PHYSICAL')", name="category_enum"),
        CheckConstraint(
            "status != 'PUBLISHED' OR is_validated", name="published_validated"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Submission(id={self.id}, registration_number='{self.registration_number}', "
            f"status='{self.status}')>"
        )

    @classmethod
    def get_by_registration_number(
        cls, session: Session, registration_number: str
    ) -> Optional["Submission"]:
        return session.scalar(
            select(cls).where(cls.registration_number == registration_number)
        )

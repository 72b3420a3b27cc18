from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    Boolean,
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

from .base import Base
from .id_type import ID_TYPE

if TYPE_CHECKING:
    from .user import User


class JuryMember(Base):
    """A user appointed to score published submissions.

    ``competition_id`` optionally restricts the member to one competition.
    """

    __tablename__ = "jury_members"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    competition_id: Mapped[Optional[int]] = mapped_column(
        ID_TYPE, ForeignKey("competitions.id", ondelete="SET NULL"), nullable=True
    )
    assigned_by: Mapped[Optional[int]] = mapped_column(
        ID_TYPE, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    user: Mapped["User"] = relationship(foreign_keys=[user_id])
    scores: Mapped[list["JuryScore"]] = relationship(
        back_populates="jury_member", cascade="all, delete-orphan"
    )
    progress: Mapped[Optional["JuryScoringProgress"]] = relationship(
        back_populates="jury_member", uselist=False, cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return (
            f"<JuryMember(id={self.id}, user_id={self.user_id}, "
            f"active={self.is_active}, competition_id={self.competition_id})>"
        )

    @classmethod
    def get_by_user(cls, session: Session, user_id: int) -> Optional["JuryMember"]:
        return session.scalar(select(cls).where(cls.user_id == user_id))


class JuryScore(Base):
    """One jury member's rubric marks for one registration.

    Unique per (jury member, registration number); a re-submission overwrites
    the row. ``total_score`` is always computed server-side.
    """

    __tablename__ = "jury_scores"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    jury_member_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("jury_members.id", ondelete="CASCADE"), nullable=False
    )
    registration_number: Mapped[str] = mapped_column(
        String(16), nullable=False, index=True
    )
    concept_score: Mapped[float] = mapped_column(Float, nullable=False)
    relevance_score: Mapped[float] = mapped_column(Float, nullable=False)
    composition_score: Mapped[float] = mapped_column(Float, nullable=False)
    balance_score: Mapped[float] = mapped_column(Float, nullable=False)
    colour_score: Mapped[float] = mapped_column(Float, nullable=False)
    design_relativity_score: Mapped[float] = mapped_column(Float, nullable=False)
    aesthetic_appeal_score: Mapped[float] = mapped_column(Float, nullable=False)
    unconventional_materials_score: Mapped[float] = mapped_column(Float, nullable=False)
    overall_material_score: Mapped[float] = mapped_column(Float, nullable=False)
    total_score: Mapped[float] = mapped_column(Float, nullable=False)
    comments: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    submitted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    jury_member: Mapped["JuryMember"] = relationship(back_populates="scores")

    __table_args__ = (
        UniqueConstraint("jury_member_id", "registration_number"),
    )

    def __repr__(self) -> str:
        return (
            f"<JuryScore(id={self.id}, jury_member_id={self.jury_member_id}, "
            f"registration_number='{self.registration_number}', total={self.total_score})>"
        )


class JuryScoringProgress(Base):
    """Cached per-member scoring aggregate. Recomputable from ``jury_scores``."""

    __tablename__ = "jury_scoring_progress"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    jury_member_id: Mapped[int] = mapped_column(
        ID_TYPE,
        ForeignKey("jury_members.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    total_assigned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_submitted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completion_percentage: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    average_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    last_scored_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    jury_member: Mapped["JuryMember"] = relationship(back_populates="progress")

    def __repr__(self) -> str:
        return (
            f"<JuryScoringProgress(jury_member_id={self.jury_member_id}, "
            f"{self.total_submitted}/{self.total_assigned})>"
        )

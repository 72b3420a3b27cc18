from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, Session, mapped_column

from .base import Base
from .id_type import ID_TYPE


class AuditLog(Base):
    """Append-only record of admin and system actions on payments and submissions."""

    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    actor_type: Mapped[str] = mapped_column(String(20), nullable=False)
    actor_user_id: Mapped[Optional[int]] = mapped_column(
        ID_TYPE, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    subject_table: Mapped[str] = mapped_column(String(50), nullable=False)
    subject_id: Mapped[Optional[int]] = mapped_column(ID_TYPE, nullable=True)
    details_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "actor_type IN ('system','admin','user')", name="actor_type_enum"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditLog(id={self.id}, action='{self.action}', "
            f"subject={self.subject_table}:{self.subject_id})>"
        )

    @property
    def details(self) -> dict[str, Any]:
        return json.loads(self.details_json) if self.details_json else {}

    @classmethod
    def record(
        cls,
        session: Session,
        *,
        action: str,
        subject_table: str,
        subject_id: Optional[int],
        actor_user_id: Optional[int] = None,
        actor_type: str = "admin",
        details: Optional[dict[str, Any]] = None,
        occurred_at: Optional[datetime] = None,
    ) -> "AuditLog":
        """Add an audit entry to ``session`` and return it."""

        entry = cls(
            actor_type=actor_type,
            actor_user_id=actor_user_id,
            action=action,
            subject_table=subject_table,
            subject_id=subject_id,
            details_json=json.dumps(details, default=str) if details else None,
            occurred_at=occurred_at or datetime.now(timezone.utc),
        )
        session.add(entry)
        return entry

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from sqlalchemy import CheckConstraint, DateTime, String, select
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship, validates

from .base import Base
from .id_type import ID_TYPE

if TYPE_CHECKING:
    from .cart import RegistrationCart
    from .registration import Registration


class UserRole:
    USER = "USER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"

    ALL = (USER, ADMIN, SUPER_ADMIN)
    ADMINS = (ADMIN, SUPER_ADMIN)


class User(Base):
    """A platform account that owns carts, payments and registrations.

    Authentication lives with the identity provider; this table only mirrors
    the fields the workflows need (contact email, display name, role).
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=UserRole.USER)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    carts: Mapped[list["RegistrationCart"]] = relationship(back_populates="user")
    registrations: Mapped[list["Registration"]] = relationship(back_populates="user")

    __table_args__ = (
        CheckConstraint("role IN ('USER','ADMIN','SUPER_ADMIN')", name="role_enum"),
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email='{self.email}', role='{self.role}')>"

    @validates("email")
    def _normalize_email(self, _key: str, value: str) -> str:
        return value.strip().lower()

    @property
    def is_admin(self) -> bool:
        return self.role in UserRole.ADMINS

    @classmethod
    def get_by_email(cls, session: Session, email: str) -> Optional["User"]:
        """Retrieve a user by email address."""

        return session.scalar(select(cls).where(cls.email == email.strip().lower()))

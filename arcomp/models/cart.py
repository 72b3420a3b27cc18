from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..db.utils import as_utc
from .base import Base
from .id_type import ID_TYPE

if TYPE_CHECKING:
    from .competition import Competition, RegistrationType
    from .user import User


class CartStatus:
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    ABANDONED = "ABANDONED"
    EXPIRED = "EXPIRED"

    ALL = (ACTIVE, COMPLETED, ABANDONED, EXPIRED)


class RegistrationCart(Base):
    """A user's pending selection of competition registrations.

    A user has at most one ``ACTIVE`` cart. The partial unique index
    ``uq_registration_carts_user_active`` enforces this on insert, so two
    concurrent "add to cart" requests can never both create a cart.
    """

    __tablename__ = "registration_carts"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CartStatus.ACTIVE
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    user: Mapped["User"] = relationship(back_populates="carts")
    items: Mapped[list["RegistrationCartItem"]] = relationship(
        back_populates="cart",
        cascade="all, delete-orphan",
        order_by="RegistrationCartItem.id",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('ACTIVE','COMPLETED','ABANDONED','EXPIRED')",
            name="status_enum",
        ),
        Index(
            "uq_registration_carts_user_active",
            "user_id",
            unique=True,
            sqlite_where=text("status = 'ACTIVE'"),
            postgresql_where=text("status = 'ACTIVE'"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<RegistrationCart(id={self.id}, user_id={self.user_id}, "
            f"status='{self.status}', items={len(self.items)})>"
        )

    @property
    def total(self) -> float:
        return float(sum(item.subtotal for item in self.items))

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return as_utc(self.expires_at) <= as_utc(now)

    def expire(self, now: Optional[datetime] = None) -> bool:
        """Transition an ACTIVE cart past its expiry to EXPIRED.

        Returns ``True`` when the status changed.
        """

        if self.status != CartStatus.ACTIVE or not self.is_expired(now):
            return False
        self.status = CartStatus.EXPIRED
        return True


class RegistrationCartItem(Base):
    """One pending registration inside a cart.

    ``members`` holds the roster as a list of dicts (``name``, ``email``,
    ``phone``, ``role`` and the participant-type specific fields).
    """

    __tablename__ = "registration_cart_items"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    cart_id: Mapped[int] = mapped_column(
        ID_TYPE,
        ForeignKey("registration_carts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    competition_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("competitions.id"), nullable=False
    )
    registration_type_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("competition_registration_types.id"), nullable=False
    )
    participant_type: Mapped[str] = mapped_column(String(20), nullable=False)
    country: Mapped[str] = mapped_column(String(100), nullable=False)
    referral_source: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    team_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    company_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    members: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
    unit_price: Mapped[float] = mapped_column(Float, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    subtotal: Mapped[float] = mapped_column(Float, nullable=False)
    agreed_to_terms: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    agreed_to_website_terms: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    agreed_to_privacy_policy: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    agreed_to_refund_policy: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    cart: Mapped["RegistrationCart"] = relationship(back_populates="items")
    competition: Mapped["Competition"] = relationship()
    registration_type: Mapped["RegistrationType"] = relationship()

    __table_args__ = (CheckConstraint("quantity = 1", name="quantity_one"),)

    def __repr__(self) -> str:
        return (
            f"<RegistrationCartItem(id={self.id}, cart_id={self.cart_id}, "
            f"competition_id={self.competition_id}, subtotal={self.subtotal})>"
        )

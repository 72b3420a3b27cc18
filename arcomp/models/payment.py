from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    String,
    Text,
    select,
)
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship

from .base import Base
from .id_type import ID_TYPE

if TYPE_CHECKING:
    from .registration import Registration
    from .user import User


class PaymentStatus:
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    EXPIRED = "EXPIRED"

    ALL = (PENDING, PROCESSING, COMPLETED, FAILED, CANCELLED, REFUNDED, EXPIRED)
    TERMINAL = (COMPLETED, FAILED, CANCELLED, REFUNDED, EXPIRED)


class PaymentMethod:
    PAYHERE = "PAYHERE"
    BANK_TRANSFER = "BANK_TRANSFER"

    ALL = (PAYHERE, BANK_TRANSFER)


class Payment(Base):
    """A single gateway transaction attempt created at checkout.

    ``payment_metadata`` carries the cart snapshot (``cart_id``, ``item_ids``,
    ``competition_ids``) the materializer works from, plus the audit keys
    admin actions add (``verified_by``, ``reverted_by``, ...).
    """

    __tablename__ = "competition_payments"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    user_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    competition_id: Mapped[Optional[int]] = mapped_column(
        ID_TYPE, ForeignKey("competitions.id"), nullable=True
    )
    merchant_id: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="LKR")
    method: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentMethod.PAYHERE
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING, index=True
    )
    payment_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    items: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    customer_details: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    response_data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status_code: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    md5sig: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    payment_method: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    card_holder_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    card_no: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    initiated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    refunded_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    user: Mapped["User"] = relationship()
    registrations: Mapped[list["Registration"]] = relationship(
        back_populates="payment", order_by="Registration.id"
    )
    materialization: Mapped[Optional["PaymentMaterialization"]] = relationship(
        back_populates="payment", uselist=False
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING','PROCESSING','COMPLETED','FAILED',"
            "'CANCELLED','REFUNDED','EXPIRED')",
            name="status_enum",
        ),
        CheckConstraint("method IN ('PAYHERE','BANK_TRANSFER')", name="method_enum"),
        CheckConstraint("amount >= 0", name="amount_non_negative"),
    )

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, order_id='{self.order_id}', "
            f"amount={self.amount}, status='{self.status}')>"
        )

    @classmethod
    def get_by_order_id(cls, session: Session, order_id: str) -> Optional["Payment"]:
        """Retrieve a payment by its gateway order id."""

        return session.scalar(select(cls).where(cls.order_id == order_id))

    @property
    def is_terminal(self) -> bool:
        return self.status in PaymentStatus.TERMINAL

    @property
    def snapshot_cart_id(self) -> Optional[int]:
        value = (self.payment_metadata or {}).get("cart_id")
        return int(value) if value is not None else None

    @property
    def snapshot_item_ids(self) -> list[int]:
        return [int(i) for i in (self.payment_metadata or {}).get("item_ids", [])]

    def update_metadata(self, **values: Any) -> None:
        """Merge ``values`` into the metadata snapshot.

        The dict is replaced rather than mutated so the JSON column is flagged
        dirty.
        """

        merged = dict(self.payment_metadata or {})
        merged.update(values)
        self.payment_metadata = merged


class PaymentMaterialization(Base):
    """Idempotency marker: a payment has been turned into registrations.

    Unique on ``payment_id``; the materializer inserts it before any
    registration so a concurrent duplicate callback fails on the constraint.
    """

    __tablename__ = "payment_materializations"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    payment_id: Mapped[int] = mapped_column(
        ID_TYPE,
        ForeignKey("competition_payments.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    payment: Mapped["Payment"] = relationship(back_populates="materialization")

    def __repr__(self) -> str:
        return f"<PaymentMaterialization(id={self.id}, payment_id={self.payment_id})>"

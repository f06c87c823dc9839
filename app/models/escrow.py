"""Escrow related models."""
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import CheckConstraint, DateTime, Enum as SqlEnum, ForeignKey, Index, Integer, JSON, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class EscrowStatus(str, PyEnum):
    """Status of the funds held for a project."""

    PENDING = "pending"
    HELD = "held"
    ADVANCE_PAID = "advance_paid"
    RELEASED = "released"
    FROZEN = "frozen"
    REFUNDED = "refunded"


class Escrow(Base):
    """Platform-held record of a project's funds and their computed distribution."""

    __tablename__ = "escrows"
    __table_args__ = (
        CheckConstraint("base_amount > 0", name="ck_escrow_base_amount_positive"),
        CheckConstraint("total_amount = base_amount + urgent_surcharge", name="ck_escrow_total_matches"),
        CheckConstraint(
            "artisan_payout + commission_amount + tva_amount = total_amount",
            name="ck_escrow_breakdown_sums_to_total",
        ),
        CheckConstraint(
            "urgent_surcharge >= 0 AND commission_amount >= 0 AND tva_amount >= 0 "
            "AND artisan_payout >= 0 AND advance_amount >= 0 AND advance_paid >= 0",
            name="ck_escrow_amounts_non_negative",
        ),
        CheckConstraint("advance_paid <= advance_amount", name="ck_escrow_advance_within_amount"),
        CheckConstraint("status != 'pending' OR advance_paid = 0", name="ck_escrow_pending_has_no_advance"),
        Index("ix_escrows_status", "status"),
    )

    project_id: Mapped[int] = mapped_column(ForeignKey("projects.id"), nullable=False, unique=True)
    base_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    urgent_surcharge: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    commission_percent: Mapped[int] = mapped_column(Integer, nullable=False)
    commission_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    tva_percent: Mapped[int] = mapped_column(Integer, nullable=False)
    tva_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    artisan_payout: Mapped[int] = mapped_column(Integer, nullable=False)
    advance_percent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    advance_amount: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    advance_paid: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    released_amount: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    refunded_amount: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[EscrowStatus] = mapped_column(
        SqlEnum(EscrowStatus, values_callable=lambda e: [m.value for m in e], name="escrowstatus"),
        default=EscrowStatus.PENDING,
        nullable=False,
    )
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    payment_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    gateway_fees: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    held_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    project = relationship("Project", back_populates="escrow")
    events = relationship("EscrowEvent", back_populates="escrow", cascade="all, delete-orphan", order_by="EscrowEvent.id")


class EscrowEvent(Base):
    """Timeline event for an escrow."""

    __tablename__ = "escrow_events"

    escrow_id: Mapped[int] = mapped_column(ForeignKey("escrows.id"), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    data_json: Mapped[dict] = mapped_column(JSON, nullable=False)
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    escrow = relationship("Escrow", back_populates="events")

"""Quote model."""
from enum import Enum as PyEnum

from sqlalchemy import CheckConstraint, Enum as SqlEnum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class QuoteStatus(str, PyEnum):
    """Negotiation status of an artisan's priced offer."""

    PENDING = "pending"
    VIEWED = "viewed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    ABANDONED = "abandoned"


LIVE_QUOTE_STATUSES = frozenset({QuoteStatus.PENDING, QuoteStatus.VIEWED})


class Quote(Base):
    """A priced offer submitted by an artisan against an open project."""

    __tablename__ = "quotes"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_quote_amount_positive"),
        CheckConstraint("urgent_surcharge_percent >= 0", name="ck_quote_surcharge_non_negative"),
        Index("ix_quotes_project_status", "project_id", "status"),
    )

    project_id: Mapped[int] = mapped_column(ForeignKey("projects.id"), nullable=False, index=True)
    provider_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    urgent_surcharge_percent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Informational only, never used by the fee calculator.
    labor_cost: Mapped[int | None] = mapped_column(Integer, nullable=True)
    materials_cost: Mapped[int | None] = mapped_column(Integer, nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    estimated_duration: Mapped[str | None] = mapped_column(String(100), nullable=True)
    revision_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[QuoteStatus] = mapped_column(
        SqlEnum(QuoteStatus, values_callable=lambda e: [m.value for m in e], name="quotestatus"),
        default=QuoteStatus.PENDING,
        nullable=False,
    )
    rejection_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    project = relationship("Project", back_populates="quotes")

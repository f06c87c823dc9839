"""Dispute model."""
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import CheckConstraint, DateTime, Enum as SqlEnum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class DisputeStatus(str, PyEnum):
    OPEN = "open"
    RESOLVED = "resolved"


class ResolutionMode(str, PyEnum):
    """How an administrator splits the frozen funds."""

    REFUND_CLIENT = "refund_client"
    PAY_ARTISAN = "pay_artisan"
    SPLIT = "split"


class Dispute(Base):
    """A frozen-escrow case awaiting administrative fund-split resolution."""

    __tablename__ = "disputes"
    __table_args__ = (
        CheckConstraint(
            "client_share_percent IS NULL OR (client_share_percent >= 0 AND client_share_percent <= 100)",
            name="ck_dispute_share_range",
        ),
    )

    project_id: Mapped[int] = mapped_column(ForeignKey("projects.id"), nullable=False, index=True)
    escrow_id: Mapped[int] = mapped_column(ForeignKey("escrows.id"), nullable=False, index=True)
    raised_by: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[DisputeStatus] = mapped_column(
        SqlEnum(DisputeStatus, values_callable=lambda e: [m.value for m in e], name="disputestatus"),
        default=DisputeStatus.OPEN,
        nullable=False,
    )
    resolution: Mapped[ResolutionMode | None] = mapped_column(
        SqlEnum(ResolutionMode, values_callable=lambda e: [m.value for m in e], name="resolutionmode"),
        nullable=True,
    )
    client_share_percent: Mapped[int | None] = mapped_column(Integer, nullable=True)
    client_refund: Mapped[int | None] = mapped_column(Integer, nullable=True)
    artisan_payment: Mapped[int | None] = mapped_column(Integer, nullable=True)
    platform_retained: Mapped[int | None] = mapped_column(Integer, nullable=True)
    resolution_note: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    project = relationship("Project")
    escrow = relationship("Escrow")

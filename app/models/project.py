"""Project model."""
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import Boolean, DateTime, Enum as SqlEnum, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class ProjectStatus(str, PyEnum):
    """Top-level lifecycle status of a client's project."""

    DRAFT = "draft"
    OPEN = "open"
    QUOTE_RECEIVED = "quote_received"
    QUOTE_ACCEPTED = "quote_accepted"
    PAYMENT_PENDING = "payment_pending"
    IN_PROGRESS = "in_progress"
    COMPLETION_REQUESTED = "completion_requested"
    DISPUTED = "disputed"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


TERMINAL_PROJECT_STATUSES = frozenset(
    {ProjectStatus.COMPLETED, ProjectStatus.EXPIRED, ProjectStatus.CANCELLED}
)


class Project(Base):
    """A job posted by a client that artisans quote on."""

    __tablename__ = "projects"
    __table_args__ = (
        Index("ix_projects_status", "status"),
        Index("ix_projects_expires_at", "expires_at"),
    )

    client_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    location: Mapped[str | None] = mapped_column(String(200), nullable=True)
    is_urgent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[ProjectStatus] = mapped_column(
        SqlEnum(ProjectStatus, values_callable=lambda e: [m.value for m in e], name="projectstatus"),
        default=ProjectStatus.OPEN,
        nullable=False,
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completion_requested_by: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    completion_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    client_confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    quotes = relationship("Quote", back_populates="project", order_by="Quote.id")
    escrow = relationship("Escrow", back_populates="project", uselist=False)

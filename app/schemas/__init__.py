"""Schema package exports."""
from .dispute import DisputeRead, DisputeResolve
from .escrow import (
    AdvancePaidEscrow,
    EscrowAmountUpdate,
    EscrowDeposit,
    EscrowRead,
    EscrowRefund,
    FrozenEscrow,
    HeldEscrow,
    PendingEscrow,
    RefundedEscrow,
    ReleasedEscrow,
    escrow_read,
)
from .notification import NotificationRead
from .project import DisputeCreate, ProjectCancel, ProjectCreate, ProjectRead
from .quote import QuoteCreate, QuoteReject, QuoteRead, QuoteRevision
from .user import UserCreate, UserRead, UserVerificationUpdate

__all__ = [
    "AdvancePaidEscrow",
    "DisputeCreate",
    "DisputeRead",
    "DisputeResolve",
    "EscrowAmountUpdate",
    "EscrowDeposit",
    "EscrowRead",
    "EscrowRefund",
    "FrozenEscrow",
    "HeldEscrow",
    "NotificationRead",
    "PendingEscrow",
    "ProjectCancel",
    "ProjectCreate",
    "ProjectRead",
    "QuoteCreate",
    "QuoteReject",
    "QuoteRead",
    "QuoteRevision",
    "RefundedEscrow",
    "ReleasedEscrow",
    "UserCreate",
    "UserRead",
    "UserVerificationUpdate",
    "escrow_read",
]

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import List


class OrderStatus(str, Enum):
    DRAFT = "draft"
    SENT_TO_SUPPLIER = "sent_to_supplier"
    PROPOSAL_PENDING = "proposal_pending"
    COUNTER_PROPOSAL_PENDING = "counter_proposal_pending"
    ACCEPTED = "accepted"
    FINALIZED = "finalized"
    CANCELED = "canceled"
    REJECTED = "rejected"


class OrderEvent(str, Enum):
    SEND = "send"
    PROPOSE = "propose"
    COUNTER = "counter"
    ACCEPT = "accept"
    REJECT = "reject"
    FINALIZE = "finalize"
    CANCEL = "cancel"


class AuthorRole(str, Enum):
    """Lineage of a proposal: supplier-side offers or buyer counters."""

    SUPPLIER = "supplier"
    BUYER = "buyer"


class ProposalStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class ExternalStatus(IntEnum):
    OPEN = 0
    FULFILLED = 1
    CANCELED = 2
    IN_PROGRESS = 3


# External states after which the ERP refuses further status changes.
LOCKED_EXTERNAL_STATUSES = frozenset({ExternalStatus.FULFILLED, ExternalStatus.CANCELED})


@dataclass(frozen=True)
class ProposalLine:
    order_item_id: int
    quantity: float
    discount_pct: float = 0.0
    bonus_quantity: float = 0.0


@dataclass(frozen=True)
class ProposalTerms:
    min_order_value: float | None = None
    valid_until: str | None = None
    delivery_lead_days: int | None = None
    note: str | None = None


@dataclass(frozen=True)
class ProposalDraft:
    terms: ProposalTerms = field(default_factory=ProposalTerms)
    lines: List[ProposalLine] = field(default_factory=list)

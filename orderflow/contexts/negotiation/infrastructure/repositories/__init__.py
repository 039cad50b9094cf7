from orderflow.contexts.negotiation.infrastructure.repositories.order_repository import (
    CounterpartRepository,
    PurchaseOrderRepository,
)
from orderflow.contexts.negotiation.infrastructure.repositories.proposal_repository import ProposalRepository
from orderflow.contexts.negotiation.infrastructure.repositories.timeline_repository import TimelineRepository

__all__ = [
    "CounterpartRepository",
    "ProposalRepository",
    "PurchaseOrderRepository",
    "TimelineRepository",
]

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, List, Tuple

from orderflow.contexts.negotiation.domain.model import (
    LOCKED_EXTERNAL_STATUSES,
    OrderEvent,
    OrderStatus,
)
from orderflow.errors import PermissionError as AppPermissionError
from orderflow.errors import ValidationError
from orderflow.policies import ActorRole, SUPPLIER_SIDE_ROLES


CANCEL_REASON_MIN_LENGTH = 5

TERMINAL_STATUSES: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.FINALIZED, OrderStatus.CANCELED, OrderStatus.REJECTED}
)


@dataclass(frozen=True)
class TransitionFacts:
    """Snapshot of the order and its proposal ledger, read before the transition is attempted."""

    item_count: int = 0
    pending_supplier_proposals: int = 0
    pending_buyer_proposals: int = 0
    pending_buyer_proposal_is_latest: bool = False
    counter_rejected_before: bool = False
    external_status: int | None = None
    cancel_reason: str | None = None


@dataclass(frozen=True)
class Transition:
    target: OrderStatus
    actors: FrozenSet[ActorRole]
    guards: Tuple[str, ...] = ()


_BUYER = frozenset({ActorRole.BUYER})
_SUPPLIER_SIDE = frozenset(SUPPLIER_SIDE_ROLES)
_ANY_PARTY = frozenset({ActorRole.BUYER}) | _SUPPLIER_SIDE


TRANSITIONS: Dict[Tuple[OrderStatus, OrderEvent], Transition] = {
    (OrderStatus.DRAFT, OrderEvent.SEND): Transition(OrderStatus.SENT_TO_SUPPLIER, _BUYER, ("has_items",)),
    (OrderStatus.SENT_TO_SUPPLIER, OrderEvent.PROPOSE): Transition(OrderStatus.PROPOSAL_PENDING, _SUPPLIER_SIDE),
    (OrderStatus.PROPOSAL_PENDING, OrderEvent.PROPOSE): Transition(
        OrderStatus.PROPOSAL_PENDING, _SUPPLIER_SIDE, ("counter_round_available",)
    ),
    (OrderStatus.PROPOSAL_PENDING, OrderEvent.COUNTER): Transition(
        OrderStatus.COUNTER_PROPOSAL_PENDING,
        _BUYER,
        ("single_supplier_proposal_pending", "counter_round_available"),
    ),
    (OrderStatus.PROPOSAL_PENDING, OrderEvent.ACCEPT): Transition(
        OrderStatus.ACCEPTED, _BUYER, ("single_supplier_proposal_pending",)
    ),
    (OrderStatus.PROPOSAL_PENDING, OrderEvent.REJECT): Transition(
        OrderStatus.REJECTED, _BUYER, ("single_supplier_proposal_pending",)
    ),
    (OrderStatus.COUNTER_PROPOSAL_PENDING, OrderEvent.ACCEPT): Transition(
        OrderStatus.ACCEPTED, _SUPPLIER_SIDE, ("buyer_proposal_is_latest",)
    ),
    (OrderStatus.COUNTER_PROPOSAL_PENDING, OrderEvent.REJECT): Transition(
        OrderStatus.PROPOSAL_PENDING, _SUPPLIER_SIDE, ("buyer_proposal_pending",)
    ),
}

for _status in (OrderStatus.DRAFT, OrderStatus.SENT_TO_SUPPLIER, OrderStatus.PROPOSAL_PENDING, OrderStatus.ACCEPTED):
    TRANSITIONS[(_status, OrderEvent.FINALIZE)] = Transition(
        OrderStatus.FINALIZED, _BUYER, ("external_status_open",)
    )

for _status in OrderStatus:
    if _status in TERMINAL_STATUSES:
        continue
    TRANSITIONS[(_status, OrderEvent.CANCEL)] = Transition(
        OrderStatus.CANCELED, _ANY_PARTY, ("cancel_reason", "external_status_open")
    )


def _check_has_items(facts: TransitionFacts) -> None:
    if facts.item_count <= 0:
        raise ValidationError(code="order_items_required", http_status=400)


def _check_single_supplier_proposal_pending(facts: TransitionFacts) -> None:
    if facts.pending_supplier_proposals != 1:
        raise ValidationError(
            code="supplier_proposal_required",
            http_status=409,
            payload={"pending_supplier_proposals": facts.pending_supplier_proposals},
        )


def _check_counter_round_available(facts: TransitionFacts) -> None:
    if facts.counter_rejected_before:
        raise ValidationError(code="counter_proposal_not_allowed", http_status=409)


def _check_buyer_proposal_pending(facts: TransitionFacts) -> None:
    if facts.pending_buyer_proposals != 1:
        raise ValidationError(code="proposal_not_pending", http_status=409)


def _check_buyer_proposal_is_latest(facts: TransitionFacts) -> None:
    _check_buyer_proposal_pending(facts)
    if not facts.pending_buyer_proposal_is_latest:
        raise ValidationError(code="proposal_not_latest", http_status=409)


def _check_external_status_open(facts: TransitionFacts) -> None:
    if facts.external_status is not None and facts.external_status in LOCKED_EXTERNAL_STATUSES:
        raise ValidationError(
            code="external_status_locked",
            http_status=409,
            payload={"external_status": int(facts.external_status)},
        )


def _check_cancel_reason(facts: TransitionFacts) -> None:
    reason = (facts.cancel_reason or "").strip()
    if len(reason) < CANCEL_REASON_MIN_LENGTH:
        raise ValidationError(
            code="cancel_reason_too_short",
            http_status=400,
            payload={"min_length": CANCEL_REASON_MIN_LENGTH},
        )


_GUARDS: Dict[str, Callable[[TransitionFacts], None]] = {
    "has_items": _check_has_items,
    "single_supplier_proposal_pending": _check_single_supplier_proposal_pending,
    "counter_round_available": _check_counter_round_available,
    "buyer_proposal_pending": _check_buyer_proposal_pending,
    "buyer_proposal_is_latest": _check_buyer_proposal_is_latest,
    "external_status_open": _check_external_status_open,
    "cancel_reason": _check_cancel_reason,
}


def is_terminal(status: OrderStatus | str) -> bool:
    return OrderStatus(status) in TERMINAL_STATUSES


def resolve_transition(
    status: OrderStatus | str,
    event: OrderEvent | str,
    actor_role: ActorRole,
    facts: TransitionFacts | None = None,
) -> OrderStatus:
    """Return the target status for ``event`` or raise the reason it is not allowed."""
    current = OrderStatus(status)
    requested = OrderEvent(event)
    transition = TRANSITIONS.get((current, requested))
    if transition is None:
        raise ValidationError(
            code="order_terminal" if current in TERMINAL_STATUSES else "transition_not_allowed",
            http_status=409,
            payload={
                "status": current.value,
                "event": requested.value,
                "allowed_events": [item.value for item in allowed_events(current, actor_role)],
            },
        )
    if actor_role not in transition.actors:
        raise AppPermissionError(
            code="permission_denied",
            payload={"status": current.value, "event": requested.value, "role": actor_role.value},
        )
    snapshot = facts or TransitionFacts()
    for guard in transition.guards:
        _GUARDS[guard](snapshot)
    return transition.target


def allowed_events(status: OrderStatus | str, actor_role: ActorRole | None = None) -> List[OrderEvent]:
    current = OrderStatus(status)
    events: List[OrderEvent] = []
    for (source, event), transition in TRANSITIONS.items():
        if source != current:
            continue
        if actor_role is not None and actor_role not in transition.actors:
            continue
        if event not in events:
            events.append(event)
    return events

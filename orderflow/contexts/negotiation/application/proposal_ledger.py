from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List

from orderflow.contexts.negotiation.domain.model import (
    AuthorRole,
    ProposalDraft,
    ProposalStatus,
)
from orderflow.contexts.negotiation.domain.pricing import (
    effective_unit_price,
    products_total,
    shipped_quantity,
    validate_line_terms,
)
from orderflow.contexts.negotiation.domain.state_machine import TransitionFacts
from orderflow.contexts.negotiation.infrastructure.repositories import (
    ProposalRepository,
    PurchaseOrderRepository,
)
from orderflow.errors import NotFoundError, SystemError, ValidationError
from orderflow.policies import ActorContext


@dataclass(frozen=True)
class SubmittedProposal:
    proposal_id: int
    superseded_ids: List[int]


@dataclass(frozen=True)
class AcceptedProposal:
    proposal_id: int
    products_total: float
    total: float
    lines: List[dict]


class ProposalLedger:
    """Proposals and counters of one tenant; at most one pending proposal per order.

    Every method runs on the caller's connection and never commits, so the
    orchestrator can fold ledger writes into the order transition transaction.
    """

    def __init__(
        self,
        tenant_id: str,
        proposals: ProposalRepository | None = None,
        orders: PurchaseOrderRepository | None = None,
    ) -> None:
        self.tenant_id = tenant_id
        self.proposals = proposals or ProposalRepository(tenant_id=tenant_id)
        self.orders = orders or PurchaseOrderRepository(tenant_id=tenant_id)

    def pending(self, db, order_id: int) -> List[dict]:
        return self.proposals.list_pending(db, order_id)

    def get(self, db, order_id: int, proposal_id: int) -> dict:
        proposal = self.proposals.get(db, proposal_id)
        if proposal is None or int(proposal["order_id"]) != int(order_id):
            raise NotFoundError(code="proposal_not_found")
        return proposal

    def history(self, db, order_id: int) -> List[dict]:
        items: List[dict] = []
        for proposal in self.proposals.list_for_order(db, order_id):
            proposal["lines"] = self.proposals.list_lines(db, int(proposal["id"]))
            items.append(proposal)
        return items

    def counter_round_used(self, db, order_id: int) -> bool:
        return self.proposals.count(
            db,
            order_id,
            author_role=AuthorRole.BUYER.value,
            status=ProposalStatus.REJECTED.value,
        ) > 0

    def transition_facts(
        self,
        db,
        order: dict,
        *,
        item_count: int,
        cancel_reason: str | None = None,
    ) -> TransitionFacts:
        order_id = int(order["id"])
        pending = self.pending(db, order_id)
        pending_supplier = [row for row in pending if row["author_role"] == AuthorRole.SUPPLIER.value]
        pending_buyer = [row for row in pending if row["author_role"] == AuthorRole.BUYER.value]
        latest = self.proposals.latest(db, order_id)
        buyer_is_latest = bool(
            pending_buyer and latest is not None and int(latest["id"]) == int(pending_buyer[0]["id"])
        )
        external_status = order.get("external_status")
        return TransitionFacts(
            item_count=item_count,
            pending_supplier_proposals=len(pending_supplier),
            pending_buyer_proposals=len(pending_buyer),
            pending_buyer_proposal_is_latest=buyer_is_latest,
            counter_rejected_before=self.counter_round_used(db, order_id),
            external_status=None if external_status is None else int(external_status),
            cancel_reason=cancel_reason,
        )

    def submit(
        self,
        db,
        *,
        order_id: int,
        author_role: AuthorRole,
        actor: ActorContext,
        draft: ProposalDraft,
        order_items: List[dict],
    ) -> SubmittedProposal:
        items_by_id = {int(item["id"]): item for item in order_items}
        if not draft.lines:
            raise ValidationError(code="items_required")
        seen: set[int] = set()
        for line in draft.lines:
            if int(line.order_item_id) not in items_by_id or int(line.order_item_id) in seen:
                raise ValidationError(code="item_not_found", payload={"order_item_id": line.order_item_id})
            seen.add(int(line.order_item_id))
            validate_line_terms(line.quantity, line.discount_pct, line.bonus_quantity)

        superseded: List[int] = []
        for proposal in self.pending(db, order_id):
            proposal_id = int(proposal["id"])
            if self.proposals.set_status(
                db,
                proposal_id,
                new_status=ProposalStatus.REJECTED.value,
                expected_status=ProposalStatus.PENDING.value,
            ):
                superseded.append(proposal_id)

        proposal_id = self.proposals.insert(
            db,
            order_id=order_id,
            author_role=author_role.value,
            actor_role=actor.role.value,
            actor_name=actor.display_name,
            min_order_value=draft.terms.min_order_value,
            valid_until=draft.terms.valid_until,
            delivery_lead_days=draft.terms.delivery_lead_days,
            note=draft.terms.note,
        )
        for line in draft.lines:
            self.proposals.insert_line(
                db,
                proposal_id=proposal_id,
                order_item_id=int(line.order_item_id),
                quantity=float(line.quantity),
                discount_pct=float(line.discount_pct or 0),
                bonus_quantity=float(line.bonus_quantity or 0),
            )

        self.assert_single_pending(db, order_id)
        return SubmittedProposal(proposal_id=proposal_id, superseded_ids=superseded)

    def accept(self, db, *, order_id: int, proposal_id: int) -> AcceptedProposal:
        proposal = self.get(db, order_id, proposal_id)
        if not self.proposals.set_status(
            db,
            int(proposal["id"]),
            new_status=ProposalStatus.ACCEPTED.value,
            expected_status=ProposalStatus.PENDING.value,
        ):
            raise ValidationError(code="proposal_not_pending", http_status=409)

        items_by_id: Dict[int, dict] = {int(item["id"]): item for item in self.orders.list_items(db, order_id)}
        for line in self.proposals.list_lines(db, proposal_id):
            item = items_by_id.get(int(line["order_item_id"]))
            if item is None:
                continue
            discount_pct = float(line["discount_pct"] or 0)
            self.orders.apply_item_terms(
                db,
                item_id=int(item["id"]),
                quantity=float(line["quantity"]),
                discount_pct=discount_pct,
                effective_unit_price=effective_unit_price(float(item["unit_price"]), discount_pct),
                bonus_quantity=float(line["bonus_quantity"] or 0),
            )

        updated_items = self.orders.list_items(db, order_id)
        total = products_total(updated_items)
        for item in updated_items:
            item["shipped_quantity"] = shipped_quantity(float(item["quantity"]), float(item["bonus_quantity"] or 0))
        return AcceptedProposal(proposal_id=proposal_id, products_total=total, total=total, lines=updated_items)

    def reject(self, db, *, order_id: int, proposal_id: int) -> None:
        proposal = self.get(db, order_id, proposal_id)
        if not self.proposals.set_status(
            db,
            int(proposal["id"]),
            new_status=ProposalStatus.REJECTED.value,
            expected_status=ProposalStatus.PENDING.value,
        ):
            raise ValidationError(code="proposal_not_pending", http_status=409)

    def reactivate_latest_rejected(self, db, *, order_id: int, author_role: AuthorRole) -> dict | None:
        """Put the most recent *rejected* proposal of ``author_role`` back to pending."""
        proposal = self.proposals.latest(
            db,
            order_id,
            author_role=author_role.value,
            status=ProposalStatus.REJECTED.value,
        )
        if proposal is None:
            return None
        self.proposals.set_status(
            db,
            int(proposal["id"]),
            new_status=ProposalStatus.PENDING.value,
            expected_status=ProposalStatus.REJECTED.value,
        )
        self.assert_single_pending(db, order_id)
        proposal["status"] = ProposalStatus.PENDING.value
        return proposal

    def assert_single_pending(self, db, order_id: int) -> None:
        pending = self.pending(db, order_id)
        if len(pending) > 1:
            raise SystemError(
                code="proposal_invariant_violated",
                message_key="proposal_invariant_violated",
                details=f"order {order_id} has {len(pending)} pending proposals",
            )

    def reject_all_pending(self, db, order_id: int) -> List[int]:
        closed: List[int] = []
        for proposal in self.pending(db, order_id):
            if self.proposals.set_status(
                db,
                int(proposal["id"]),
                new_status=ProposalStatus.REJECTED.value,
                expected_status=ProposalStatus.PENDING.value,
            ):
                closed.append(int(proposal["id"]))
        return closed

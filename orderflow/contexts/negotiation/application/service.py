from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List

from flask import current_app

from orderflow.contexts.coverage.domain.coverage import coverage_inputs, suggest_quantity
from orderflow.contexts.erp.application.sync_client import ErpSyncClient, SyncOutcome, SyncResult
from orderflow.contexts.negotiation.application.notifications import build_recipient_payload, public_order_summary
from orderflow.contexts.negotiation.application.proposal_ledger import ProposalLedger
from orderflow.contexts.negotiation.application.timeline import TimelineRecorder, describe_with_sync
from orderflow.contexts.negotiation.domain.model import (
    LOCKED_EXTERNAL_STATUSES,
    AuthorRole,
    ExternalStatus,
    OrderEvent,
    OrderStatus,
    ProposalDraft,
    ProposalStatus,
)
from orderflow.contexts.negotiation.domain.state_machine import allowed_events, resolve_transition
from orderflow.contexts.negotiation.infrastructure.repositories import (
    CounterpartRepository,
    PurchaseOrderRepository,
)
from orderflow.db import get_db
from orderflow.domain.contracts import CancelOrderInput, ExternalStatusInput, ServiceOutput
from orderflow.errors import ConflictError, NotFoundError, ValidationError, integration_error_for_sync
from orderflow.observability import current_request_id, observe_order_conflict, observe_order_transition
from orderflow.policies import ActorContext, ActorRole, require_order_scope, require_roles
from orderflow.ui_strings import (
    external_status_label,
    status_label,
    success_message,
    timeline_event_label,
    warning_message,
)


# External status the ERP should hold once the order reaches each internal status.
EXTERNAL_STATUS_FOR_INTERNAL: Dict[OrderStatus, ExternalStatus] = {
    OrderStatus.ACCEPTED: ExternalStatus.IN_PROGRESS,
    OrderStatus.FINALIZED: ExternalStatus.FULFILLED,
    OrderStatus.CANCELED: ExternalStatus.CANCELED,
}

_SYNC_WARNINGS: Dict[str, str] = {
    SyncOutcome.RATE_LIMITED.value: "erp_rate_limited",
    SyncOutcome.UNAVAILABLE.value: "erp_not_connected",
    SyncOutcome.FAILED.value: "erp_sync_pending",
}

# Lineage whose pending proposal an accept/reject acts on, by current status.
_PENDING_LINEAGE: Dict[OrderStatus, AuthorRole] = {
    OrderStatus.PROPOSAL_PENDING: AuthorRole.SUPPLIER,
    OrderStatus.COUNTER_PROPOSAL_PENDING: AuthorRole.BUYER,
}


@dataclass(frozen=True)
class _Committed:
    order: dict
    previous_status: OrderStatus
    status: OrderStatus
    version: int
    result: Any = None


class NegotiationService:
    """Negotiation use cases for one tenant.

    Every transition commits locally first (compare-and-swap on status and
    version), then mirrors the external status to the ERP outside the
    transaction, then appends to the timeline. ERP trouble is reported in the
    ``erp_sync`` block of the response and never undoes the local commit.
    """

    def __init__(
        self,
        tenant_id: str,
        *,
        sync_client: ErpSyncClient,
        db=None,
        orders: PurchaseOrderRepository | None = None,
        counterparts: CounterpartRepository | None = None,
        ledger: ProposalLedger | None = None,
        timeline: TimelineRecorder | None = None,
        public_base_url: str | None = None,
    ) -> None:
        self.tenant_id = tenant_id
        self.sync_client = sync_client
        self._db = db
        self.orders = orders or PurchaseOrderRepository(tenant_id=tenant_id)
        self.counterparts = counterparts or CounterpartRepository(tenant_id=tenant_id)
        self.ledger = ledger or ProposalLedger(tenant_id, orders=self.orders)
        self.timeline_recorder = timeline or TimelineRecorder(tenant_id)
        self.public_base_url = public_base_url

    @property
    def db(self):
        return self._db if self._db is not None else get_db()

    def _load_order(self, actor: ActorContext, order_id: int) -> dict:
        return require_order_scope(actor, self.orders.get_by_id(self.db, order_id))

    def _transition(
        self,
        actor: ActorContext,
        order_id: int,
        event: OrderEvent,
        *,
        cancel_reason: str | None = None,
        changes: Dict[str, Any] | None = None,
        mutate: Callable[[Any, dict], Any] | None = None,
    ) -> _Committed:
        db = self.db
        order = self._load_order(actor, order_id)
        items = self.orders.list_items(db, order_id)
        facts = self.ledger.transition_facts(db, order, item_count=len(items), cancel_reason=cancel_reason)
        previous = OrderStatus(order["internal_status"])
        target = resolve_transition(previous, event, actor.role, facts)

        try:
            with db.transaction():
                # The CAS runs first so ledger writes only happen for the winning writer.
                version = self.orders.transition_status(
                    db,
                    order_id,
                    expected_status=previous.value,
                    expected_version=int(order["version"]),
                    new_status=target.value,
                    changes=changes,
                )
                result = mutate(db, order) if mutate is not None else None
        except ConflictError:
            observe_order_conflict()
            current_app.logger.warning(
                "order_transition_conflict",
                extra={
                    "request_id": current_request_id(default="n/a"),
                    "tenant_id": self.tenant_id,
                    "order_id": order_id,
                    "event": event.value,
                    "expected_status": previous.value,
                    "expected_version": int(order["version"]),
                },
            )
            raise

        observe_order_transition(previous.value, target.value)
        current_app.logger.info(
            "order_transition",
            extra={
                "request_id": current_request_id(default="n/a"),
                "tenant_id": self.tenant_id,
                "order_id": order_id,
                "event": event.value,
                "from_status": previous.value,
                "to_status": target.value,
                "actor_role": actor.role.value,
            },
        )
        return _Committed(order=order, previous_status=previous, status=target, version=version, result=result)

    def _sync_external(self, order: dict, status: ExternalStatus) -> SyncResult:
        db = self.db
        result = self.sync_client.set_order_status(db, self.tenant_id, order.get("external_order_ref"), int(status))
        try:
            with db.transaction():
                self.orders.record_sync(
                    db,
                    int(order["id"]),
                    outcome=result.outcome,
                    error=result.error,
                    external_status=int(status) if result.success else None,
                )
        except Exception:  # noqa: BLE001
            current_app.logger.warning(
                "erp_sync_record_failed",
                extra={
                    "request_id": current_request_id(default="n/a"),
                    "tenant_id": self.tenant_id,
                    "order_id": int(order["id"]),
                    "outcome": result.outcome,
                },
                exc_info=True,
            )
        return result

    def _record(
        self,
        actor: ActorContext,
        order_id: int,
        event_type: str,
        sync: SyncResult | None = None,
        detail: str | None = None,
    ) -> None:
        description = timeline_event_label(event_type)
        if detail:
            description = f"{description}: {detail}"
        outcome = sync.outcome if sync is not None else None
        self.timeline_recorder.append(
            self.db,
            order_id,
            event_type,
            describe_with_sync(description, outcome),
            actor.role,
            actor.display_name,
            erp_sync_outcome=outcome,
        )

    @staticmethod
    def _sync_block(sync: SyncResult | None) -> tuple[dict | None, str | None]:
        if sync is None:
            return None, None
        warning_key = _SYNC_WARNINGS.get(sync.outcome)
        return sync.to_dict(), warning_key

    def _output(
        self,
        committed: _Committed,
        message_key: str,
        sync: SyncResult | None = None,
        **extra: Any,
    ) -> ServiceOutput:
        erp_sync, warning_key = self._sync_block(sync)
        payload: Dict[str, Any] = {
            "order_id": int(committed.order["id"]),
            "status": committed.status.value,
            "status_label": status_label("pedido", committed.status.value),
            "previous_status": committed.previous_status.value,
            "version": committed.version,
            "message": success_message(message_key),
            "erp_sync": erp_sync,
            "warning": warning_key,
            "warning_message": warning_message(warning_key) if warning_key else None,
        }
        payload.update(extra)
        return ServiceOutput(payload=payload, status_code=200)

    def _finish_with_sync(
        self,
        actor: ActorContext,
        committed: _Committed,
        event_type: str,
        *,
        detail: str | None = None,
        **extra: Any,
    ) -> ServiceOutput:
        sync = None
        external = EXTERNAL_STATUS_FOR_INTERNAL.get(committed.status)
        if external is not None:
            sync = self._sync_external(committed.order, external)
        self._record(actor, int(committed.order["id"]), event_type, sync, detail)
        return self._output(committed, event_type, sync, **extra)

    def send_to_supplier(self, actor: ActorContext, order_id: int) -> ServiceOutput:
        committed = self._transition(actor, order_id, OrderEvent.SEND)
        return self._finish_with_sync(actor, committed, "order_sent")

    def submit_proposal(self, actor: ActorContext, order_id: int, draft: ProposalDraft) -> ServiceOutput:
        return self._submit(actor, order_id, draft, OrderEvent.PROPOSE, AuthorRole.SUPPLIER, "proposal_submitted")

    def counter_propose(self, actor: ActorContext, order_id: int, draft: ProposalDraft) -> ServiceOutput:
        return self._submit(
            actor, order_id, draft, OrderEvent.COUNTER, AuthorRole.BUYER, "counter_proposal_submitted"
        )

    def _submit(
        self,
        actor: ActorContext,
        order_id: int,
        draft: ProposalDraft,
        event: OrderEvent,
        author_role: AuthorRole,
        event_type: str,
    ) -> ServiceOutput:
        terms = draft.terms

        def _mutate(db, order):
            return self.ledger.submit(
                db,
                order_id=order_id,
                author_role=author_role,
                actor=actor,
                draft=draft,
                order_items=self.orders.list_items(db, order_id),
            )

        changes = {
            "min_order_value": terms.min_order_value,
            "delivery_lead_days": terms.delivery_lead_days,
            "proposal_valid_until": terms.valid_until,
        }
        committed = self._transition(
            actor,
            order_id,
            event,
            changes={key: value for key, value in changes.items() if value is not None},
            mutate=_mutate,
        )
        submitted = committed.result
        return self._finish_with_sync(
            actor,
            committed,
            event_type,
            proposal_id=submitted.proposal_id,
            superseded_proposal_ids=submitted.superseded_ids,
        )

    def _pending_target(self, actor: ActorContext, order_id: int, proposal_id: int) -> tuple[dict, AuthorRole]:
        order = self._load_order(actor, order_id)
        proposal = self.ledger.get(self.db, order_id, proposal_id)
        lineage = _PENDING_LINEAGE.get(OrderStatus(order["internal_status"]))
        if (
            lineage is not None
            and proposal["status"] == ProposalStatus.PENDING.value
            and proposal["author_role"] != lineage.value
        ):
            raise ValidationError(
                code="proposal_not_pending",
                http_status=409,
                payload={"proposal_id": proposal_id, "author_role": proposal["author_role"]},
            )
        return proposal, lineage or AuthorRole(proposal["author_role"])

    def accept_proposal(self, actor: ActorContext, order_id: int, proposal_id: int) -> ServiceOutput:
        _, lineage = self._pending_target(actor, order_id, proposal_id)

        def _mutate(db, order):
            accepted = self.ledger.accept(db, order_id=order_id, proposal_id=proposal_id)
            self.orders.set_totals(db, order_id, products_total=accepted.products_total, total=accepted.total)
            return accepted

        committed = self._transition(actor, order_id, OrderEvent.ACCEPT, mutate=_mutate)
        accepted = committed.result
        event_type = "counter_proposal_accepted" if lineage == AuthorRole.BUYER else "proposal_accepted"
        return self._finish_with_sync(
            actor,
            committed,
            event_type,
            proposal_id=proposal_id,
            products_total=accepted.products_total,
            total=accepted.total,
            items=accepted.lines,
        )

    def reject_proposal(self, actor: ActorContext, order_id: int, proposal_id: int) -> ServiceOutput:
        _, lineage = self._pending_target(actor, order_id, proposal_id)

        def _mutate(db, order):
            self.ledger.reject(db, order_id=order_id, proposal_id=proposal_id)
            if lineage == AuthorRole.BUYER:
                return self.ledger.reactivate_latest_rejected(db, order_id=order_id, author_role=AuthorRole.SUPPLIER)
            return None

        committed = self._transition(actor, order_id, OrderEvent.REJECT, mutate=_mutate)
        reactivated = committed.result
        event_type = "counter_proposal_rejected" if lineage == AuthorRole.BUYER else "proposal_rejected"
        return self._finish_with_sync(
            actor,
            committed,
            event_type,
            proposal_id=proposal_id,
            reactivated_proposal_id=int(reactivated["id"]) if reactivated else None,
        )

    def respond_to_counter(
        self,
        actor: ActorContext,
        order_id: int,
        proposal_id: int,
        response: str,
    ) -> ServiceOutput:
        normalized = str(response or "").strip().lower()
        if normalized in ("accept", "aceitar"):
            return self.accept_proposal(actor, order_id, proposal_id)
        if normalized in ("reject", "recusar"):
            return self.reject_proposal(actor, order_id, proposal_id)
        raise ValidationError(code="response_invalid", payload={"allowed": ["accept", "reject"]})

    def finalize(self, actor: ActorContext, order_id: int) -> ServiceOutput:
        committed = self._transition(
            actor,
            order_id,
            OrderEvent.FINALIZE,
            mutate=lambda db, order: self.ledger.reject_all_pending(db, order_id),
        )
        return self._finish_with_sync(actor, committed, "order_finalized", closed_proposal_ids=committed.result)

    def cancel(self, actor: ActorContext, data: CancelOrderInput) -> ServiceOutput:
        reason = str(data.reason or "").strip()
        committed = self._transition(
            actor,
            data.order_id,
            OrderEvent.CANCEL,
            cancel_reason=reason,
            changes={"cancel_reason": reason},
            mutate=lambda db, order: self.ledger.reject_all_pending(db, data.order_id),
        )
        return self._finish_with_sync(
            actor,
            committed,
            "order_canceled",
            detail=reason,
            cancel_reason=reason,
            closed_proposal_ids=committed.result,
        )

    def set_external_status(self, actor: ActorContext, data: ExternalStatusInput) -> ServiceOutput:
        """Push an explicit ERP status. Here the ERP call is the request, so sync trouble raises."""
        require_roles(actor, ActorRole.BUYER, ActorRole.SYSTEM)
        try:
            status = ExternalStatus(int(data.status_code))
        except (TypeError, ValueError) as exc:
            raise ValidationError(
                code="external_status_invalid",
                payload={"allowed": [int(item) for item in ExternalStatus]},
            ) from exc
        order = self._load_order(actor, data.order_id)
        if not str(order.get("external_order_ref") or "").strip():
            raise ValidationError(code="erp_order_not_linked")
        current = order.get("external_status")
        if current is not None and int(current) in LOCKED_EXTERNAL_STATUSES and int(current) != int(status):
            raise ValidationError(
                code="external_status_locked",
                http_status=409,
                payload={"external_status": int(current)},
            )

        sync = self._sync_external(order, status)
        self._record(actor, data.order_id, "external_status_changed", sync, external_status_label(int(status)))
        if not sync.success:
            raise integration_error_for_sync(sync.outcome, sync.error)
        erp_sync, _ = self._sync_block(sync)
        return ServiceOutput(
            payload={
                "order_id": int(order["id"]),
                "external_status": int(status),
                "external_status_label": external_status_label(int(status)),
                "message": success_message("external_status_changed"),
                "erp_sync": erp_sync,
            },
            status_code=200,
        )

    def resync_external_status(self, actor: ActorContext, order_id: int) -> ServiceOutput:
        require_roles(actor, ActorRole.BUYER, ActorRole.SYSTEM)
        order = self._load_order(actor, order_id)
        internal = OrderStatus(order["internal_status"])
        external = EXTERNAL_STATUS_FOR_INTERNAL.get(internal)
        if external is None:
            raise ValidationError(code="status_invalid", http_status=409, payload={"status": internal.value})

        sync = self._sync_external(order, external)
        self._record(actor, order_id, "external_status_resynced", sync, external_status_label(int(external)))
        erp_sync, warning_key = self._sync_block(sync)
        return ServiceOutput(
            payload={
                "order_id": order_id,
                "status": internal.value,
                "external_status": int(external) if sync.success else order.get("external_status"),
                "message": success_message("external_status_resynced"),
                "erp_sync": erp_sync,
                "warning": warning_key,
                "warning_message": warning_message(warning_key) if warning_key else None,
            },
            status_code=200,
        )

    def get_order(self, actor: ActorContext, order_id: int) -> ServiceOutput:
        db = self.db
        order = self._load_order(actor, order_id)
        status = OrderStatus(order["internal_status"])
        pending = self.ledger.pending(db, order_id)
        order.update(
            {
                "status_label": status_label("pedido", status.value),
                "external_status_label": external_status_label(order.get("external_status")),
                "items": self.orders.list_items(db, order_id),
                "pending_proposal": pending[0] if pending else None,
                "allowed_events": [event.value for event in allowed_events(status, actor.role)],
            }
        )
        return ServiceOutput(payload=order, status_code=200)

    def list_proposals(self, actor: ActorContext, order_id: int) -> ServiceOutput:
        self._load_order(actor, order_id)
        items = self.ledger.history(self.db, order_id)
        for item in items:
            item["status_label"] = status_label("proposta", item["status"])
        return ServiceOutput(payload={"items": items}, status_code=200)

    def timeline(self, actor: ActorContext, order_id: int, *, limit: int = 200) -> ServiceOutput:
        self._load_order(actor, order_id)
        events = self.timeline_recorder.history(self.db, order_id, limit=limit)
        for event in events:
            event["label"] = timeline_event_label(event["event_type"])
        return ServiceOutput(payload={"items": events}, status_code=200)

    def suggest_quantities(
        self,
        actor: ActorContext,
        order_id: int,
        products: List[Dict[str, Any]],
        *,
        lead_time_days: float | None = None,
        default_lead_time_days: float = 15,
    ) -> ServiceOutput:
        """Coverage-based quantity per order line, keyed by the line's product_id."""
        order = self._load_order(actor, order_id)
        lead = lead_time_days if lead_time_days is not None else order.get("delivery_lead_days")
        lead = None if lead is None else float(lead)
        metrics: Dict[str, Dict[str, Any]] = {}
        for product in products or []:
            inputs = coverage_inputs(product, lead)
            metrics[str(inputs["product_id"])] = inputs
        lines: List[Dict[str, Any]] = []
        for item in self.orders.list_items(self.db, order_id):
            inputs = metrics.get(str(item.get("product_id")))
            if inputs is None:
                continue
            lines.append(
                {
                    "order_item_id": int(item["id"]),
                    "product_id": item.get("product_id"),
                    "current_quantity": item.get("quantity"),
                    "suggested_quantity": suggest_quantity(
                        inputs["stock"],
                        inputs["qty_sold_90d"],
                        inputs["lead_time_days"],
                        inputs["class_by_revenue"],
                        inputs["class_by_volume"],
                        items_per_box=item.get("items_per_box"),
                        default_lead_time_days=default_lead_time_days,
                    ),
                }
            )
        return ServiceOutput(payload={"order_id": order_id, "lines": lines}, status_code=200)

    def recipient_payload(self, actor: ActorContext, order_id: int, *, base_url: str | None = None) -> ServiceOutput:
        require_roles(actor, ActorRole.BUYER, ActorRole.SYSTEM)
        db = self.db
        order = self._load_order(actor, order_id)
        payload = build_recipient_payload(
            order,
            supplier=self.counterparts.get_supplier(db, order.get("supplier_id")),
            representative=self.counterparts.get_representative(db, order.get("representative_id")),
            base_url=base_url or self.public_base_url or "",
        )
        return ServiceOutput(payload=payload, status_code=200)

    def public_order(self, order_id: int) -> ServiceOutput:
        db = self.db
        order = self.orders.get_by_id(db, order_id)
        if order is None:
            raise NotFoundError(code="order_not_found", message_key="order_not_found")
        payload = public_order_summary(
            order,
            items=self.orders.list_items(db, order_id),
            supplier=self.counterparts.get_supplier(db, order.get("supplier_id")),
            representative=self.counterparts.get_representative(db, order.get("representative_id")),
        )
        payload["status_label"] = status_label("pedido", order.get("internal_status"))
        return ServiceOutput(payload=payload, status_code=200)

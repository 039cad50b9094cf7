from __future__ import annotations

from flask import current_app

from orderflow.contexts.negotiation.infrastructure.repositories import TimelineRepository
from orderflow.observability import current_request_id
from orderflow.policies import ActorRole
from orderflow.ui_strings import sync_outcome_label


class TimelineRecorder:
    """Append-only audit trail. A failed append is logged, never raised to the caller."""

    def __init__(self, tenant_id: str, repository: TimelineRepository | None = None) -> None:
        self.tenant_id = tenant_id
        self.repository = repository or TimelineRepository(tenant_id=tenant_id)

    def append(
        self,
        db,
        order_id: int,
        event_type: str,
        description: str,
        actor_role: ActorRole,
        actor_name: str | None,
        *,
        erp_sync_outcome: str | None = None,
    ) -> int | None:
        try:
            with db.transaction():
                return self.repository.add_event(
                    db,
                    order_id=order_id,
                    event_type=event_type,
                    description=description,
                    actor_role=actor_role.value,
                    actor_name=actor_name,
                    erp_sync_outcome=erp_sync_outcome,
                )
        except Exception:  # noqa: BLE001
            current_app.logger.warning(
                "timeline_append_failed",
                extra={
                    "request_id": current_request_id(default="n/a"),
                    "tenant_id": self.tenant_id,
                    "order_id": order_id,
                    "event_type": event_type,
                },
                exc_info=True,
            )
            return None

    def history(self, db, order_id: int, *, limit: int = 200) -> list[dict]:
        return self.repository.list_for_order(db, order_id, limit=limit)


def describe_with_sync(description: str, erp_sync_outcome: str | None) -> str:
    if not erp_sync_outcome:
        return description
    return f"{description} ({sync_outcome_label(erp_sync_outcome)})"

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Iterable

from flask import g, request, session

from orderflow.errors import NotFoundError
from orderflow.errors import PermissionError as AppPermissionError
from orderflow.tenant import scoped_tenant_id


class ActorRole(str, Enum):
    BUYER = "buyer"
    SUPPLIER = "supplier"
    REPRESENTATIVE = "representative"
    SYSTEM = "system"


SUPPLIER_SIDE_ROLES: FrozenSet[ActorRole] = frozenset({ActorRole.SUPPLIER, ActorRole.REPRESENTATIVE})


def normalize_role(role: str | ActorRole | None, default: ActorRole | None = ActorRole.BUYER) -> ActorRole | None:
    if isinstance(role, ActorRole):
        return role
    normalized = str(role or "").strip().lower()
    try:
        return ActorRole(normalized)
    except ValueError:
        return default


@dataclass(frozen=True)
class ActorContext:
    """Who is acting and which orders they may see, as resolved by the auth layer."""

    tenant_id: str
    role: ActorRole
    name: str = ""
    supplier_ids: FrozenSet[int] = field(default_factory=frozenset)
    representative_id: int | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.role.value

    def can_access_order(self, order: dict) -> bool:
        if str(order.get("tenant_id") or "") != self.tenant_id:
            return False
        if self.role in (ActorRole.BUYER, ActorRole.SYSTEM):
            return True
        if self.role == ActorRole.SUPPLIER:
            return int(order.get("supplier_id") or 0) in self.supplier_ids
        if self.role == ActorRole.REPRESENTATIVE:
            representative_id = order.get("representative_id")
            return representative_id is not None and int(representative_id) == self.representative_id
        return False


def _parse_ids(value: object) -> FrozenSet[int]:
    if value is None:
        return frozenset()
    if isinstance(value, (list, tuple, set, frozenset)):
        raw_items: Iterable[object] = value
    else:
        raw_items = str(value).split(",")
    parsed = set()
    for item in raw_items:
        try:
            number = int(str(item).strip())
        except (TypeError, ValueError):
            continue
        if number > 0:
            parsed.add(number)
    return frozenset(parsed)


def _parse_optional_id(value: object) -> int | None:
    ids = _parse_ids(value)
    return min(ids) if ids else None


def current_actor() -> ActorContext:
    """Session first; headers are accepted for service-to-service calls and tests."""
    cached = getattr(g, "actor", None)
    if isinstance(cached, ActorContext):
        return cached

    raw_role = session.get("actor_role") or request.headers.get("X-Actor-Role")
    role = normalize_role(raw_role, default=None if raw_role else ActorRole.BUYER)
    if role is None:
        raise AppPermissionError(code="actor_role_invalid", message_key="actor_role_invalid")

    actor = ActorContext(
        tenant_id=scoped_tenant_id(),
        role=role,
        name=str(session.get("display_name") or request.headers.get("X-Actor-Name") or "").strip(),
        supplier_ids=_parse_ids(session.get("supplier_ids") or request.headers.get("X-Supplier-Ids")),
        representative_id=_parse_optional_id(
            session.get("representative_id") or request.headers.get("X-Representative-Id")
        ),
    )
    g.actor = actor
    return actor


def require_roles(actor: ActorContext, *allowed_roles: ActorRole) -> ActorRole:
    if not allowed_roles or actor.role in allowed_roles:
        return actor.role
    raise AppPermissionError(
        code="permission_denied",
        message_key="permission_denied",
        http_status=403,
        critical=False,
        payload={"role": actor.role.value, "allowed_roles": sorted(role.value for role in allowed_roles)},
    )


def require_order_scope(actor: ActorContext, order: dict | None) -> dict:
    # Out-of-scope orders are reported as missing so their existence is not leaked.
    if order is None or not actor.can_access_order(order):
        raise NotFoundError(code="order_not_found", message_key="order_not_found")
    return order

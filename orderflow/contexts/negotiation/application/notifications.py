from __future__ import annotations

import re
from urllib.parse import urlencode


_NON_DIGITS = re.compile(r"\D")


def normalize_phone(phone: str | None) -> str | None:
    """Digits only; anything shorter than area code plus number is unusable."""
    if not phone:
        return None
    digits = _NON_DIGITS.sub("", str(phone))
    return digits if len(digits) >= 10 else None


def public_order_link(base_url: str, order_id: int, tenant_id: str | None = None) -> str:
    link = f"{str(base_url or '').rstrip('/')}/public/orders/{int(order_id)}"
    if tenant_id:
        link = f"{link}?{urlencode({'tenant': tenant_id})}"
    return link


def public_order_summary(order: dict, *, items: list[dict], supplier: dict | None, representative: dict | None) -> dict:
    """Read-only view for whoever opens the public link; no sync or negotiation internals."""
    return {
        "id": int(order["id"]),
        "number": order.get("number"),
        "created_at": order.get("created_at"),
        "internal_status": order.get("internal_status"),
        "supplier_name": (supplier or {}).get("name"),
        "products_total": order.get("products_total"),
        "discount": order.get("discount"),
        "freight": order.get("freight"),
        "total": order.get("total"),
        "delivery_lead_days": order.get("delivery_lead_days"),
        "representative": None
        if representative is None
        else {
            "id": representative.get("id"),
            "name": representative.get("name"),
            "access_code": representative.get("invite_code"),
        },
        "items": [
            {
                "product_id": item.get("product_id"),
                "description": item.get("description"),
                "quantity": item.get("quantity"),
                "bonus_quantity": item.get("bonus_quantity"),
                "unit_price": item.get("effective_unit_price")
                if item.get("effective_unit_price") is not None
                else item.get("unit_price"),
            }
            for item in items
        ],
    }


def invite_link(base_url: str, invite_code: str | None) -> str | None:
    if not invite_code:
        return None
    return f"{str(base_url or '').rstrip('/')}/representative/invite/{invite_code}"


def build_recipient_payload(
    order: dict,
    *,
    supplier: dict | None,
    representative: dict | None,
    base_url: str,
) -> dict:
    """Who should hear about this order and where they can open it.

    Orders routed through a representative go to the representative; an
    unregistered representative also gets the invite link to create an account.
    """
    link = public_order_link(base_url, int(order["id"]), order.get("tenant_id"))
    if representative is not None:
        registered = bool(representative.get("registered"))
        return {
            "recipient_type": "representative",
            "recipient_name": representative.get("name"),
            "phone": normalize_phone(representative.get("phone")),
            "registered": registered,
            "public_order_link": link,
            "invite_link": None if registered else invite_link(base_url, representative.get("invite_code")),
        }
    return {
        "recipient_type": "supplier",
        "recipient_name": (supplier or {}).get("name"),
        "phone": normalize_phone((supplier or {}).get("phone")),
        "registered": bool((supplier or {}).get("registered")),
        "public_order_link": link,
        "invite_link": None,
    }

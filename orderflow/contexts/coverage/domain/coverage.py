"""Stock coverage: how many days current stock lasts at recent sales velocity.

Urgency compares coverage with the supplier lead time plus a safety margin sized
by the product's ABC class (the more critical of its revenue and volume classes).
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Tuple

from orderflow.errors import ValidationError

SALES_WINDOW_DAYS = 90
DEFAULT_LEAD_TIME_DAYS = 15
HEALTHY_COVERAGE_FACTOR = 1.5

ABC_ORDER = ("A", "B", "C", "D")
SAFETY_MARGIN_BY_CLASS: Dict[str, float] = {
    "A": 0.50,
    "B": 0.30,
    "C": 0.20,
    "D": 0.10,
}


class UrgencyTier(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    OK = "OK"


@dataclass(frozen=True)
class CoverageAssessment:
    daily_average_sales: float
    days_of_coverage: float | None
    days_required: float
    urgency_tier: UrgencyTier
    effective_class: str
    lead_time_days: float

    @property
    def in_stockout(self) -> bool:
        return self.urgency_tier in (UrgencyTier.CRITICAL, UrgencyTier.HIGH)

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["urgency_tier"] = self.urgency_tier.value
        payload["in_stockout"] = self.in_stockout
        return payload


def _normalize_class(label: str | None) -> str:
    normalized = str(label or "").strip().upper()
    return normalized if normalized in SAFETY_MARGIN_BY_CLASS else "D"


def most_critical_class(class_by_revenue: str | None, class_by_volume: str | None) -> str:
    revenue = _normalize_class(class_by_revenue)
    volume = _normalize_class(class_by_volume)
    return revenue if ABC_ORDER.index(revenue) <= ABC_ORDER.index(volume) else volume


def safety_margin(abc_class: str | None) -> float:
    return SAFETY_MARGIN_BY_CLASS[_normalize_class(abc_class)]


def assess(
    stock: float,
    qty_sold_trailing_90d: float,
    lead_time_days: float | None,
    class_by_revenue: str | None,
    class_by_volume: str | None,
    *,
    default_lead_time_days: float = DEFAULT_LEAD_TIME_DAYS,
) -> CoverageAssessment:
    daily_average = float(qty_sold_trailing_90d or 0) / SALES_WINDOW_DAYS
    lead_time = float(default_lead_time_days if lead_time_days is None else lead_time_days)
    effective_class = most_critical_class(class_by_revenue, class_by_volume)
    days_required = lead_time * (1 + safety_margin(effective_class))
    # Negative stock is an upstream data artifact; treat it as empty.
    effective_stock = max(0.0, float(stock or 0))

    if daily_average == 0:
        return CoverageAssessment(
            daily_average_sales=0.0,
            days_of_coverage=None,
            days_required=round(days_required, 1),
            urgency_tier=UrgencyTier.OK if effective_stock > 0 else UrgencyTier.MEDIUM,
            effective_class=effective_class,
            lead_time_days=lead_time,
        )

    days_of_coverage = effective_stock / daily_average
    if days_of_coverage < lead_time:
        tier = UrgencyTier.CRITICAL
    elif days_of_coverage < days_required:
        tier = UrgencyTier.HIGH
    elif days_of_coverage < days_required * HEALTHY_COVERAGE_FACTOR:
        tier = UrgencyTier.MEDIUM
    else:
        tier = UrgencyTier.OK

    return CoverageAssessment(
        daily_average_sales=round(daily_average, 2),
        days_of_coverage=round(days_of_coverage, 1),
        days_required=round(days_required, 1),
        urgency_tier=tier,
        effective_class=effective_class,
        lead_time_days=lead_time,
    )


def _metric(value: object, field_name: str, *, optional: bool = False) -> float | None:
    if value in (None, ""):
        return None if optional else 0.0
    try:
        parsed = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValidationError(code="validation_error", payload={"field": field_name}) from exc
    if not math.isfinite(parsed):
        raise ValidationError(code="validation_error", payload={"field": field_name})
    return parsed


def coverage_inputs(product: object, lead_time_days: float | None = None) -> Dict[str, Any]:
    """Validated numeric inputs for one product entry of a request body."""
    if not isinstance(product, Mapping):
        raise ValidationError(code="validation_error", payload={"field": "products"})
    lead = _metric(product.get("lead_time_days"), "lead_time_days", optional=True)
    box = _metric(product.get("items_per_box"), "items_per_box", optional=True)
    return {
        "product_id": product.get("product_id"),
        "stock": _metric(product.get("stock"), "stock"),
        "qty_sold_90d": _metric(product.get("qty_sold_90d"), "qty_sold_90d"),
        "lead_time_days": lead_time_days if lead is None else lead,
        "class_by_revenue": product.get("class_by_revenue"),
        "class_by_volume": product.get("class_by_volume"),
        "items_per_box": None if box is None else int(box),
    }


def assess_batch(
    products: Iterable[object],
    lead_time_days: float | None,
    *,
    default_lead_time_days: float = DEFAULT_LEAD_TIME_DAYS,
) -> List[Tuple[Dict[str, Any], CoverageAssessment]]:
    """Assess every product in request order; a per-product lead time wins over the batch one."""
    results: List[Tuple[Dict[str, Any], CoverageAssessment]] = []
    for product in products:
        inputs = coverage_inputs(product, lead_time_days)
        assessment = assess(
            inputs["stock"],
            inputs["qty_sold_90d"],
            inputs["lead_time_days"],
            inputs["class_by_revenue"],
            inputs["class_by_volume"],
            default_lead_time_days=default_lead_time_days,
        )
        results.append((inputs, assessment))
    return results


def suggest_quantity(
    stock: float,
    qty_sold_trailing_90d: float,
    lead_time_days: float | None,
    class_by_revenue: str | None,
    class_by_volume: str | None,
    *,
    items_per_box: int | None = None,
    default_lead_time_days: float = DEFAULT_LEAD_TIME_DAYS,
) -> int:
    """Units to order so coverage reaches the healthy band, rounded up to whole boxes."""
    daily_average = float(qty_sold_trailing_90d or 0) / SALES_WINDOW_DAYS
    if daily_average <= 0:
        return 0
    lead_time = float(default_lead_time_days if lead_time_days is None else lead_time_days)
    days_required = lead_time * (1 + safety_margin(most_critical_class(class_by_revenue, class_by_volume)))
    target_stock = daily_average * days_required * HEALTHY_COVERAGE_FACTOR
    missing = math.ceil(round(target_stock - max(0.0, float(stock or 0)), 6))
    if missing <= 0:
        return 0
    box = int(items_per_box or 0)
    if box > 1:
        return math.ceil(missing / box) * box
    return missing

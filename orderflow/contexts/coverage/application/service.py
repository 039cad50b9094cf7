from __future__ import annotations

from typing import Any, Dict, List

from orderflow.contexts.coverage.domain.coverage import DEFAULT_LEAD_TIME_DAYS, assess_batch, suggest_quantity
from orderflow.domain.contracts import CoverageRequestInput, ServiceOutput
from orderflow.errors import ValidationError


class CoverageService:
    """Urgency and suggested purchase quantity for a batch of products."""

    def __init__(self, default_lead_time_days: float = DEFAULT_LEAD_TIME_DAYS) -> None:
        self.default_lead_time_days = float(default_lead_time_days)

    def assess_products(self, data: CoverageRequestInput) -> ServiceOutput:
        if not data.products:
            raise ValidationError(code="items_required")
        items: List[Dict[str, Any]] = []
        summary: Dict[str, int] = {}
        for inputs, assessment in assess_batch(
            data.products,
            data.lead_time_days,
            default_lead_time_days=self.default_lead_time_days,
        ):
            if inputs["product_id"] in (None, ""):
                raise ValidationError(code="validation_error", payload={"field": "product_id"})
            item = assessment.to_dict()
            item["product_id"] = inputs["product_id"]
            item["suggested_quantity"] = suggest_quantity(
                inputs["stock"],
                inputs["qty_sold_90d"],
                inputs["lead_time_days"],
                inputs["class_by_revenue"],
                inputs["class_by_volume"],
                items_per_box=inputs["items_per_box"],
                default_lead_time_days=self.default_lead_time_days,
            )
            items.append(item)
            summary[item["urgency_tier"]] = summary.get(item["urgency_tier"], 0) + 1
        return ServiceOutput(payload={"items": items, "summary": summary}, status_code=200)

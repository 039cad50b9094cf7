from __future__ import annotations

import math
from typing import Any, Dict

from flask import Blueprint, current_app, jsonify, request

from orderflow.contexts.coverage.application.service import CoverageService
from orderflow.domain.contracts import CoverageRequestInput
from orderflow.errors import ValidationError
from orderflow.policies import current_actor


coverage_bp = Blueprint("coverage", __name__)


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


@coverage_bp.route("/api/coverage/assess", methods=["POST"])
def coverage_assess():
    current_actor()
    payload = _json_body()
    products = payload.get("products")
    if not isinstance(products, list):
        raise ValidationError(code="items_required")
    raw_lead = payload.get("lead_time_days")
    try:
        lead_time_days = None if raw_lead in (None, "") else float(raw_lead)
    except (TypeError, ValueError) as exc:
        raise ValidationError(code="validation_error", payload={"field": "lead_time_days"}) from exc
    if lead_time_days is not None and not math.isfinite(lead_time_days):
        raise ValidationError(code="validation_error", payload={"field": "lead_time_days"})

    service = CoverageService(current_app.config.get("COVERAGE_DEFAULT_LEAD_TIME_DAYS") or 15)
    result = service.assess_products(CoverageRequestInput(products=products, lead_time_days=lead_time_days))
    return jsonify(result.payload), result.status_code

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass(frozen=True)
class ServiceOutput:
    payload: Dict[str, Any]
    status_code: int = 200


@dataclass(frozen=True)
class CancelOrderInput:
    order_id: int
    reason: str


@dataclass(frozen=True)
class ExternalStatusInput:
    order_id: int
    status_code: int


@dataclass(frozen=True)
class CoverageRequestInput:
    products: List[Dict[str, Any]] = field(default_factory=list)
    lead_time_days: float | None = None

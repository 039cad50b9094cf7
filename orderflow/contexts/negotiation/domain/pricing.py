from __future__ import annotations

import math
from typing import Iterable, Mapping

from orderflow.errors import ValidationError


def _money(value: float) -> float:
    return round(float(value), 2)


def _finite(value) -> bool:
    return value is not None and math.isfinite(float(value))


def validate_line_terms(quantity: float, discount_pct: float, bonus_quantity: float) -> None:
    if not _finite(quantity) or float(quantity) <= 0:
        raise ValidationError(code="quantity_invalid")
    if not _finite(discount_pct) or not 0 <= float(discount_pct) <= 100:
        raise ValidationError(code="discount_invalid")
    if not _finite(bonus_quantity) or float(bonus_quantity) < 0:
        raise ValidationError(code="bonus_invalid")


def effective_unit_price(unit_price: float, discount_pct: float) -> float:
    """Bonus units never touch price; only the percentage discount does."""
    return round(float(unit_price) * (1 - float(discount_pct or 0) / 100), 4)


def shipped_quantity(quantity: float, bonus_quantity: float) -> float:
    return float(quantity) + float(bonus_quantity or 0)


def line_total(line: Mapping[str, object]) -> float:
    price = line.get("effective_unit_price")
    if price is None:
        price = line.get("unit_price") or 0
    return _money(float(price) * float(line.get("quantity") or 0))


def products_total(lines: Iterable[Mapping[str, object]]) -> float:
    return _money(sum(line_total(line) for line in lines))

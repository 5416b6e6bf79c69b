import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from app.config import settings

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def _money(value) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        logger.error("Invalid penalty amount %r", value)
        return None


def default_formula() -> dict:
    return {
        "type": "per_day",
        "per_day": settings.default_penalty_per_day,
        "max": settings.default_penalty_cap,
    }


def penalty_for(formula: dict | None, days_late: int) -> Decimal:
    """Penalty owed for ``days_late`` days past due.

    ``per_day`` multiplies the daily rate and clamps to ``min``/``max``;
    ``fixed`` charges ``amount`` once the obligation is late at all.
    """
    if days_late <= 0:
        return ZERO
    formula = formula or default_formula()
    kind = formula.get("type", "per_day")

    if kind == "fixed":
        return _money(formula.get("amount")) or ZERO

    if kind != "per_day":
        logger.error("Unknown penalty formula type %r, using default", kind)
        formula = default_formula()

    per_day = _money(formula.get("per_day")) or ZERO
    amount = per_day * days_late
    minimum = _money(formula.get("min"))
    maximum = _money(formula.get("max"))
    if minimum is not None and amount < minimum:
        amount = minimum
    if maximum is not None and amount > maximum:
        amount = maximum
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)

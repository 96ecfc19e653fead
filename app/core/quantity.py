import logging
import math
from decimal import Decimal, ROUND_HALF_UP
from typing import NamedTuple

from app.models.schemas import DoseSpecification, QuantityBreakdown, QuantityRequirement

logger = logging.getLogger(__name__)

# satuan padat: bisa dihitung per butir, saling tukar 1:1
DISCRETE_UNITS = {"tablet", "capsule", "pill", "softgel", "caplet"}

# satuan cair, faktor ke ml
VOLUMETRIC_UNITS = {"ml": 1.0, "l": 1000.0, "oz": 29.5735}


class UnitConversion(NamedTuple):
    quantity: float
    unit: str
    converted: bool


def _safe(value: float) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(value) or value < 0:
        return 0.0
    return value


def resolve(dose: DoseSpecification, days_supply: float) -> QuantityRequirement:
    """
    total_quantity = dose_amount × frequency_per_day × days_supply.
    Satuan diteruskan apa adanya (tidak dikonversi).

    Input NaN / Infinity / negatif di-clamp ke kebutuhan nol, tidak pernah melempar error.
    """
    dose_amount = _safe(dose.dose_amount)
    frequency = _safe(dose.frequency_per_day)
    days = _safe(days_supply)

    total = dose_amount * frequency * days
    if not math.isfinite(total):
        total = 0.0

    if (dose_amount, frequency, days) != (dose.dose_amount, dose.frequency_per_day, days_supply):
        logger.warning(
            "Invalid dosing input clamped to zero: dose=%r frequency=%r days=%r",
            dose.dose_amount, dose.frequency_per_day, days_supply,
        )

    return QuantityRequirement(
        total_quantity=total,
        unit=dose.dose_unit,
        breakdown=QuantityBreakdown(
            dose_amount=dose_amount,
            frequency_per_day=frequency,
            days_supply=days,
        ),
    )


def convert_unit(quantity: float, from_unit: str, to_unit: str) -> UnitConversion:
    src = (from_unit or "").strip().lower()
    dst = (to_unit or "").strip().lower()

    if src == dst:
        return UnitConversion(quantity, to_unit, True)

    if src in DISCRETE_UNITS and dst in DISCRETE_UNITS:
        return UnitConversion(quantity, to_unit, True)

    if src in VOLUMETRIC_UNITS and dst in VOLUMETRIC_UNITS:
        factor = VOLUMETRIC_UNITS[src] / VOLUMETRIC_UNITS[dst]
        return UnitConversion(quantity * factor, to_unit, True)

    logger.warning("Unit conversion not supported: %s -> %s", from_unit, to_unit)
    return UnitConversion(quantity, from_unit, False)


def _round_half_up(quantity: float, places: str) -> float:
    return float(Decimal(str(quantity)).quantize(Decimal(places), rounding=ROUND_HALF_UP))


def round_for_dispensing(quantity: float, unit: str) -> float:
    """
    - tablet/capsule/...: dibulatkan ke atas (tidak bisa menyerahkan setengah tablet)
    - ml/l/oz: 1 desimal
    - lainnya: 2 desimal
    NaN / Infinity → 0, sama seperti resolve.
    """
    if not math.isfinite(quantity):
        return 0.0

    key = (unit or "").strip().lower()
    if key in DISCRETE_UNITS:
        # buang noise floating point dulu supaya 30.000000000001 tetap 30
        return float(math.ceil(round(quantity, 9)))
    if key in VOLUMETRIC_UNITS:
        return _round_half_up(quantity, "0.1")
    return _round_half_up(quantity, "0.01")

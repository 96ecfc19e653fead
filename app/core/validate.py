import re
from typing import Any, Dict, List, Optional

import pandas as pd

from app.core.config import get_section
from app.core.errors import ValidationError
from app.models.schemas import CalculationRequest

_NDC_PATTERNS = (
    re.compile(r"^\d{5}-\d{4}-\d{2}$"),  # 5-4-2
    re.compile(r"^\d{5}-\d{3}-\d{2}$"),  # 5-3-2
)

PACKAGE_COLUMNS = ["identifier", "size", "unit", "lifecycle_status"]


def is_valid_ndc_format(ndc: str) -> bool:
    return any(p.match(ndc or "") for p in _NDC_PATTERNS)


def sanitize_input(value: str) -> str:
    """Trim spasi dan buang karakter < > supaya aman dipakai di query eksternal."""
    return re.sub(r"[<>]", "", (value or "").strip())


def validate_prescription_input(request: CalculationRequest, config: Optional[Dict[str, Any]] = None) -> None:
    """
    Validasi aturan bisnis untuk input resep. Gagal → ValidationError (tidak di-retry).
    """
    limits = get_section(config, "input")
    name_max = int(limits["drug_name_max_length"])
    sig_max = int(limits["sig_max_length"])
    days_min = int(limits["days_supply_min"])
    days_max = int(limits["days_supply_max"])

    if not request.drug_name and not request.ndc:
        raise ValidationError("Either drug name or NDC must be provided")

    if request.drug_name and len(request.drug_name) > name_max:
        raise ValidationError(f"Drug name must be {name_max} characters or less")

    if request.ndc and not is_valid_ndc_format(request.ndc):
        raise ValidationError("NDC must be in format XXXXX-XXXX-XX or XXXXX-XXX-XX")

    if not request.sig or not request.sig.strip():
        raise ValidationError("SIG (prescription directions) is required")

    if len(request.sig) > sig_max:
        raise ValidationError(f"SIG must be {sig_max} characters or less")

    if request.days_supply < days_min or request.days_supply > days_max:
        raise ValidationError(f"Days supply must be between {days_min} and {days_max}")


# =====================================================
#  CATALOG FRAMES
# =====================================================

def _ensure_columns(df: "pd.DataFrame", required: List[str], name: str) -> None:
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ValidationError(f"{name} missing required columns: {missing}")


def validate_packages_df(df: "pd.DataFrame") -> None:
    _ensure_columns(df, PACKAGE_COLUMNS, "packages")
    errors = []
    sizes = pd.to_numeric(df["size"], errors="coerce")
    if sizes.isna().any(): errors.append("size must be numeric")
    if (sizes <= 0).any(): errors.append("size must be > 0")
    if df["identifier"].isna().any(): errors.append("identifier is required")
    status = df["lifecycle_status"].astype(str).str.upper()
    if (~status.isin(["ACTIVE", "INACTIVE"])).any(): errors.append("lifecycle_status must be ACTIVE or INACTIVE")
    if errors: raise ValidationError("; ".join(errors))

import math
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer


class LifecycleStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class Severity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class WarningCategory(str, Enum):
    NO_MATCH = "NO_MATCH"
    INACTIVE_ONLY = "INACTIVE_ONLY"
    NO_UNIT_MATCH = "NO_UNIT_MATCH"
    OVERFILL = "OVERFILL"
    MULTIPLE_PACKAGES = "MULTIPLE_PACKAGES"
    OVERFILL_TOLERANCE_EXCEEDED = "OVERFILL_TOLERANCE_EXCEEDED"
    UNIT_CONVERSION = "UNIT_CONVERSION"
    ADVISORY = "ADVISORY"


class Warning(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: WarningCategory
    message: str
    severity: Severity


# =====================================================
#  DOSING & QUANTITY
# =====================================================

class DoseSpecification(BaseModel):
    """
    Hasil parsing SIG (aturan pakai) dari collaborator eksternal.
    Hanya dibaca di sini, tidak pernah diubah.
    """
    model_config = ConfigDict(frozen=True)

    dose_amount: float
    dose_unit: str
    frequency_per_day: float
    route: str = ""
    explicit_duration_days: Optional[int] = None
    free_text_note: Optional[str] = None


class QuantityBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True)

    dose_amount: float
    frequency_per_day: float
    days_supply: float


class QuantityRequirement(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_quantity: float
    unit: str
    breakdown: QuantityBreakdown


# =====================================================
#  PACKAGES & SELECTIONS
# =====================================================

class PackageCandidate(BaseModel):
    model_config = ConfigDict(frozen=True)

    identifier: str
    size: float
    unit: str
    lifecycle_status: LifecycleStatus = LifecycleStatus.ACTIVE
    source_metadata: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.lifecycle_status == LifecycleStatus.ACTIVE


class SelectionLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    package_identifier: str
    unit: str
    units_per_package: float
    package_count: int = Field(ge=1)
    supplied_quantity: float
    overfill: float = Field(default=0.0, ge=0)


class SelectionBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    lines: List[SelectionLine] = Field(default_factory=list)
    total_supplied: float = 0.0
    total_waste: float = Field(default=0.0, ge=0)
    package_count: int = 0
    score: float = math.inf

    @field_serializer("score", when_used="json")
    def _serialize_score(self, score: float) -> Optional[float]:
        # JSON tidak punya Infinity: skor fallback / kosong dikirim sebagai null
        return score if math.isfinite(score) else None

    @property
    def is_empty(self) -> bool:
        return not self.lines

    @property
    def is_fallback(self) -> bool:
        return bool(self.lines) and not math.isfinite(self.score)


class DeterministicSelection(SelectionBase):
    provenance: Literal["deterministic"] = "deterministic"


class AdvisoryOverriddenSelection(SelectionBase):
    provenance: Literal["advisory"] = "advisory"
    rationale: str


OptimizationResult = DeterministicSelection

Selection = Annotated[
    Union[DeterministicSelection, AdvisoryOverriddenSelection],
    Field(discriminator="provenance"),
]


# =====================================================
#  ADVISORY OVERRIDE
# =====================================================

class AdvisoryLine(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    package_identifier: str = Field(min_length=1, alias="packageIdentifier")
    package_count: int = Field(ge=1, alias="packageCount")
    supplied_quantity: Optional[float] = Field(default=None, alias="suppliedQuantity")


class AdvisoryOverride(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    lines: List[AdvisoryLine] = Field(min_length=1)
    rationale: str = Field(min_length=1)
    advisory_warnings: List[Warning] = Field(default_factory=list, alias="warnings")


# =====================================================
#  REQUEST / RESULT
# =====================================================

class DrugIdentity(BaseModel):
    model_config = ConfigDict(frozen=True)

    canonical_id: str
    display_name: str


class CalculationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    drug_name: Optional[str] = Field(default=None, alias="drugName")
    ndc: Optional[str] = None
    sig: str
    days_supply: int = Field(alias="daysSupply")


class CalculationResult(BaseModel):
    success: bool
    requirement: Optional[QuantityRequirement] = None
    dispense_quantity: Optional[float] = None
    selection: Optional[Selection] = None
    warnings: List[Warning] = Field(default_factory=list)
    rationale: Optional[str] = None
    identity: Optional[DrugIdentity] = None
    dose: Optional[DoseSpecification] = None
    error_code: Optional[str] = None
    message: Optional[str] = None
    retryable: Optional[bool] = None


class HealthStatus(BaseModel):
    status: str
    timestamp: str
    config_sections: List[str] = Field(default_factory=list)
    missing_env: List[str] = Field(default_factory=list)
    details: Dict[str, Any] = Field(default_factory=dict)

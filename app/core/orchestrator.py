import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from app.core.config import get_section
from app.core.errors import (
    AppError,
    BusinessRuleError,
    ExternalServiceError,
    ValidationError,
    to_error_result,
)
from app.core.matching import select_packages
from app.core.quantity import convert_unit, resolve, round_for_dispensing
from app.core.solver import EPS, OptimizationCriteria, compute_score, lines_with_overfill_on_last
from app.core.validate import validate_prescription_input
from app.models.schemas import (
    AdvisoryOverride,
    AdvisoryOverriddenSelection,
    CalculationRequest,
    CalculationResult,
    DeterministicSelection,
    DrugIdentity,
    PackageCandidate,
    QuantityRequirement,
    Severity,
    Warning,
    WarningCategory,
)
from app.services.base import (
    AdvisoryOverrideService,
    CandidateCatalog,
    DoseParser,
    IdentityNormalizer,
)

logger = logging.getLogger(__name__)

NO_CANDIDATES_MESSAGE = "No matching packages found for this medication"
INVALID_PACKAGE_MESSAGE = "Invalid or inactive NDC provided"


class CalculationState(str, Enum):
    VALIDATE = "VALIDATE"
    RESOLVE_DOSE = "RESOLVE_DOSE"
    NORMALIZE_IDENTITY = "NORMALIZE_IDENTITY"
    FETCH_CANDIDATES = "FETCH_CANDIDATES"
    DETERMINISTIC_SELECT = "DETERMINISTIC_SELECT"
    ADVISORY_OVERRIDE = "ADVISORY_OVERRIDE"
    ASSEMBLE = "ASSEMBLE"
    DONE = "DONE"
    FAILED = "FAILED"


Validator = Callable[[CalculationRequest, Optional[Dict[str, Any]]], None]


# =====================================================
#  INPUT PARSING
# =====================================================

_FIELD_MESSAGES = {
    "sig": "SIG (prescription directions) is required",
    "days_supply": "Days supply must be a whole number of days",
    "daysSupply": "Days supply must be a whole number of days",
}


def parse_request(raw_input: Union[CalculationRequest, Mapping[str, Any]]) -> CalculationRequest:
    """
    Dict mentah → CalculationRequest. Error pydantic diterjemahkan ke
    ValidationError dengan pesan yang bisa dibaca pemanggil.
    """
    if isinstance(raw_input, CalculationRequest):
        return raw_input
    if not isinstance(raw_input, Mapping):
        raise ValidationError("Request body must be a JSON object")

    try:
        return CalculationRequest.model_validate(dict(raw_input))
    except PydanticValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        loc = first.get("loc") or ("input",)
        field = str(loc[0])
        message = _FIELD_MESSAGES.get(field) or f"Invalid value for {field}: {first.get('msg', 'invalid')}"
        raise ValidationError(message) from e


def _unit_key(unit: Optional[str]) -> str:
    return (unit or "").strip().lower()


def unit_warnings(requirement: QuantityRequirement, selection) -> List[Warning]:
    """
    Satuan kemasan terpilih berbeda dengan satuan kebutuhan (fallback satuan):
      - bisa dikonversi   → INFO, sebutkan jumlah setara
      - tidak bisa        → WARNING, jumlah harus dicek manual
    """
    warnings: List[Warning] = []
    required_unit = _unit_key(requirement.unit)
    seen = set()
    for line in selection.lines:
        unit = _unit_key(line.unit)
        if unit == required_unit or unit in seen:
            continue
        seen.add(unit)

        conversion = convert_unit(requirement.total_quantity, requirement.unit, line.unit)
        if conversion.converted:
            warnings.append(Warning(
                category=WarningCategory.UNIT_CONVERSION,
                message=f"Required {requirement.total_quantity:g} {requirement.unit} "
                        f"equals {conversion.quantity:g} {line.unit}",
                severity=Severity.INFO,
            ))
        else:
            warnings.append(Warning(
                category=WarningCategory.UNIT_CONVERSION,
                message=f"Cannot convert {requirement.unit} to {line.unit}; verify the dispensed quantity",
                severity=Severity.WARNING,
            ))
    return warnings


# =====================================================
#  ORCHESTRATOR
# =====================================================

class CalculationOrchestrator:
    """
    Alur per request (stateless):

      VALIDATE → RESOLVE_DOSE → NORMALIZE_IDENTITY → FETCH_CANDIDATES
        → DETERMINISTIC_SELECT → ADVISORY_OVERRIDE (opsional) → ASSEMBLE → DONE

    State mana pun bisa berakhir di FAILED. Kegagalan diubah menjadi
    CalculationResult(success=False), tidak pernah dilempar ke pemanggil.
    Advisor tidak pernah menggagalkan request: gagal / timeout / output tidak
    valid → seleksi deterministik dipakai.
    """

    def __init__(
        self,
        dose_parser: DoseParser,
        normalizer: IdentityNormalizer,
        catalog: CandidateCatalog,
        advisor: Optional[AdvisoryOverrideService] = None,
        config: Optional[Dict[str, Any]] = None,
        validator: Validator = validate_prescription_input,
    ):
        self.dose_parser = dose_parser
        self.normalizer = normalizer
        self.catalog = catalog
        self.advisor = advisor
        self.config = config
        self.validator = validator

        advisory_cfg = get_section(config, "advisory")
        self.advisory_enabled = bool(advisory_cfg.get("enabled", True))
        self.max_relative_overfill = float(advisory_cfg.get("max_relative_overfill", 1.2))
        self.advisory_timeout = float(get_section(config, "timeouts").get("advisory", 30.0))

    def calculate(self, raw_input: Union[CalculationRequest, Mapping[str, Any]]) -> CalculationResult:
        started = time.perf_counter()
        state = CalculationState.VALIDATE
        warnings: List[Warning] = []

        try:
            request = parse_request(raw_input)
            self.validator(request, self.config)
            logger.info("Processing calculation request: drug=%r ndc=%r days=%s",
                        request.drug_name, request.ndc, request.days_supply)

            state = CalculationState.RESOLVE_DOSE
            dose = self.dose_parser.parse(request.sig)
            requirement = resolve(dose, request.days_supply)

            state = CalculationState.NORMALIZE_IDENTITY
            identity = self._identify(request)

            state = CalculationState.FETCH_CANDIDATES
            candidates = self._fetch_candidates(identity, request)

            state = CalculationState.DETERMINISTIC_SELECT
            outcome = select_packages(requirement, candidates, self.config)
            warnings.extend(outcome.warnings)
            selection: Union[DeterministicSelection, AdvisoryOverriddenSelection] = outcome.selection
            rationale: Optional[str] = None

            if self.advisor is not None and self.advisory_enabled and not selection.is_empty:
                state = CalculationState.ADVISORY_OVERRIDE
                override = self._advisory_override(requirement, candidates, outcome.selection)
                if override is not None:
                    selection, advisory_warnings = override
                    warnings.extend(advisory_warnings)
                    rationale = selection.rationale

            state = CalculationState.ASSEMBLE
            warnings.extend(unit_warnings(requirement, selection))
            result = CalculationResult(
                success=True,
                requirement=requirement,
                dispense_quantity=round_for_dispensing(requirement.total_quantity, requirement.unit),
                selection=selection,
                warnings=warnings,
                rationale=rationale,
                identity=identity,
                dose=dose,
            )
            state = CalculationState.DONE
            logger.info(
                "Calculation completed in %.1f ms: %s %s, %d package(s), provenance=%s",
                (time.perf_counter() - started) * 1000,
                f"{requirement.total_quantity:g}", requirement.unit,
                selection.package_count, selection.provenance,
            )
            return result

        except Exception as e:
            if isinstance(e, AppError):
                logger.warning("%s -> %s: %s (%s)", state.value, CalculationState.FAILED.value, e.message, e.code)
            return to_error_result(e, warnings)

    # -------------------------------------------------
    #  NORMALIZE_IDENTITY
    # -------------------------------------------------

    def _identify(self, request: CalculationRequest) -> DrugIdentity:
        if request.drug_name:
            return self.normalizer.normalize(request.drug_name)

        if request.ndc:
            package = self.normalizer.validate_known_package(request.ndc)
            if package is None or not package.is_active:
                raise ValidationError(INVALID_PACKAGE_MESSAGE)
            name = package.source_metadata or package.identifier
            logger.info("Known package %s validated, searching by %r", package.identifier, name)
            return DrugIdentity(canonical_id=name, display_name=name)

        raise ValidationError("Either drug name or NDC must be provided")

    # -------------------------------------------------
    #  FETCH_CANDIDATES
    # -------------------------------------------------

    def _fetch_candidates(
        self,
        identity: DrugIdentity,
        request: CalculationRequest,
    ) -> List[PackageCandidate]:
        """
        Urutan pencarian: canonical id → display name → nama obat mentah
        (duplikat dilewati). Kosong semua → BUSINESS_RULE; semua key gagal
        di transport → ExternalServiceError terakhir dilempar ulang.
        """
        keys: List[str] = []
        for key in (identity.canonical_id, identity.display_name, request.drug_name):
            key = (key or "").strip()
            if key and key not in keys:
                keys.append(key)

        last_error: Optional[ExternalServiceError] = None
        for key in keys:
            try:
                candidates = list(self.catalog.fetch_candidates(key))
            except ExternalServiceError as e:
                logger.info("Candidate search by %r failed, trying next key: %s", key, e.message)
                last_error = e
                continue
            if candidates:
                logger.info("Found %d candidate(s) using %r", len(candidates), key)
                return candidates
            logger.info("No candidates for %r", key)

        if last_error is not None:
            raise last_error
        raise BusinessRuleError(NO_CANDIDATES_MESSAGE)

    # -------------------------------------------------
    #  ADVISORY_OVERRIDE
    # -------------------------------------------------

    def _call_advisor(
        self, requirement: QuantityRequirement, candidates: Sequence[PackageCandidate]
    ) -> Mapping[str, Any]:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="advisor")
        future = executor.submit(self.advisor.advise, requirement, candidates)
        try:
            return future.result(timeout=self.advisory_timeout)
        finally:
            # jangan menunggu panggilan yang sudah timeout
            executor.shutdown(wait=False, cancel_futures=True)

    def _advisory_override(
        self,
        requirement: QuantityRequirement,
        candidates: Sequence[PackageCandidate],
        deterministic: DeterministicSelection,
    ) -> Optional[Tuple[AdvisoryOverriddenSelection, List[Warning]]]:
        try:
            raw = self._call_advisor(requirement, candidates)
        except FutureTimeout:
            logger.warning("Advisory selection timed out after %ss, keeping deterministic selection",
                           self.advisory_timeout)
            return None
        except Exception as e:
            logger.warning("Advisory selection failed, keeping deterministic selection: %s", e)
            return None

        try:
            override = AdvisoryOverride.model_validate(raw)
        except PydanticValidationError as e:
            logger.warning("Advisory response rejected: invalid schema (%d error(s))", e.error_count())
            return None

        selection = self._accept(requirement, candidates, deterministic, override)
        if selection is None:
            return None
        logger.info("Using advisory selection: %d line(s), waste=%g",
                    len(selection.lines), selection.total_waste)
        return selection, list(override.advisory_warnings)

    @staticmethod
    def _unit_compatible(
        requirement: QuantityRequirement, candidate: PackageCandidate, same_unit_available: bool
    ) -> bool:
        if _unit_key(candidate.unit) == _unit_key(requirement.unit):
            return True
        if same_unit_available:
            return False
        return convert_unit(requirement.total_quantity, requirement.unit, candidate.unit).converted

    def _accept(
        self,
        requirement: QuantityRequirement,
        candidates: Sequence[PackageCandidate],
        deterministic: DeterministicSelection,
        override: AdvisoryOverride,
    ) -> Optional[AdvisoryOverriddenSelection]:
        """
        Syarat diterima:
          - tiap baris menyebut kandidat ACTIVE yang memang ditawarkan
          - satuan baris sama dengan satuan kebutuhan bila kandidat satuan itu
            ada; kalau tidak ada, satuannya harus bisa dikonversi
          - total suplai >= kebutuhan
          - overfill <= overfill deterministik × max_relative_overfill
        """
        active = {}
        for c in candidates:
            if c.is_active and c.size > 0:
                active.setdefault(c.identifier, c)

        required_unit = _unit_key(requirement.unit)
        same_unit_available = any(_unit_key(c.unit) == required_unit for c in active.values())

        parts: List[Tuple[PackageCandidate, int]] = []
        for line in override.lines:
            candidate = active.get(line.package_identifier)
            if candidate is None:
                logger.warning("Advisory response rejected: %s is not an active candidate",
                               line.package_identifier)
                return None
            if not self._unit_compatible(requirement, candidate, same_unit_available):
                logger.warning("Advisory response rejected: %s is in %s, required %s",
                               candidate.identifier, candidate.unit, requirement.unit)
                return None
            parts.append((candidate, line.package_count))

        required = requirement.total_quantity
        supplied = sum(c.size * n for c, n in parts)
        if supplied + EPS < required:
            logger.warning("Advisory response rejected: supplies %g of %g required", supplied, required)
            return None

        advisory_overfill = supplied - required
        limit = deterministic.total_waste * self.max_relative_overfill
        if advisory_overfill > limit + EPS:
            logger.info("Rejecting advisory selection due to excessive overfill: %g > %g",
                        advisory_overfill, limit)
            return None

        lines = lines_with_overfill_on_last(parts, required)
        package_count = sum(n for _, n in parts)

        return AdvisoryOverriddenSelection(
            lines=lines,
            total_supplied=float(supplied),
            total_waste=max(0.0, advisory_overfill),
            package_count=package_count,
            score=compute_score(max(0.0, advisory_overfill), package_count, OptimizationCriteria()),
            rationale=override.rationale,
        )

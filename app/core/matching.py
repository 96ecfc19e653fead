import logging
import math
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Tuple

from app.core.config import get_section
from app.core.solver import (
    EPS,
    INF,
    OptimizationCriteria,
    build_result,
    compute_score,
    criteria_from_config,
    empty_result,
    make_line,
    optimize,
)
from app.models.schemas import (
    DeterministicSelection,
    PackageCandidate,
    QuantityRequirement,
    SelectionLine,
    Severity,
    Warning,
    WarningCategory,
)

logger = logging.getLogger(__name__)

TIE_BREAK_CATALOG_ORDER = "catalog_order"
TIE_BREAK_IDENTIFIER = "identifier"


class MatchOutcome(NamedTuple):
    selection: DeterministicSelection
    warnings: List[Warning]


def _warn(category: WarningCategory, message: str, severity: Severity) -> Warning:
    return Warning(category=category, message=message, severity=severity)


def _fmt_qty(value: float) -> str:
    return f"{value:g}"


def _ordered(candidates: Sequence[PackageCandidate], tie_break: str) -> List[PackageCandidate]:
    if tie_break == TIE_BREAK_IDENTIFIER:
        return sorted(candidates, key=lambda c: c.identifier)
    return list(candidates)


def _candidate_pool(
    requirement: QuantityRequirement,
    candidates: Sequence[PackageCandidate],
    tie_break: str,
) -> Tuple[List[PackageCandidate], List[Warning]]:
    """
    Langkah 1-3: kandidat kosong, filter ACTIVE, filter satuan.
    Pool kosong berarti hasil akhir = seleksi kosong + warning error.
    """
    warnings: List[Warning] = []

    # kemasan berukuran 0 tidak bisa dipakai, diperlakukan seperti tidak ada
    usable = [c for c in _ordered(candidates, tie_break) if c.size > 0]
    if not usable:
        warnings.append(_warn(
            WarningCategory.NO_MATCH,
            "No matching packages found for this medication.",
            Severity.ERROR,
        ))
        return [], warnings

    active = [c for c in usable if c.is_active]
    if not active:
        warnings.append(_warn(
            WarningCategory.INACTIVE_ONLY,
            "Only inactive packages found. Contact prescriber for alternatives.",
            Severity.ERROR,
        ))
        return [], warnings

    unit = (requirement.unit or "").strip().lower()
    same_unit = [c for c in active if (c.unit or "").strip().lower() == unit]
    if not same_unit:
        warnings.append(_warn(
            WarningCategory.NO_UNIT_MATCH,
            f"No packages found with unit: {requirement.unit}",
            Severity.WARNING,
        ))
        # fallback ke semua kemasan ACTIVE; satuan kemasan terpilih yang berlaku
        return active, warnings

    return same_unit, warnings


def _overfill_warning(overfill: float, unit: str) -> Warning:
    return _warn(
        WarningCategory.OVERFILL,
        f"Overfill of {_fmt_qty(overfill)} {unit}",
        Severity.WARNING,
    )


def _multiple_packages_warning() -> Warning:
    return _warn(
        WarningCategory.MULTIPLE_PACKAGES,
        "Multiple packages required to meet quantity",
        Severity.INFO,
    )


def _greedy_fill(required: float, pool: Sequence[PackageCandidate]) -> List[SelectionLine]:
    """
    Greedy: kemasan terbesar dulu, ambil floor(sisa / size) per kandidat.
    Sisa yang masih ada ditutup dengan satu kemasan terkecil (overfill).
    """
    by_size_desc = sorted(pool, key=lambda c: -c.size)
    parts: List[List[Any]] = []
    remaining = required

    for pkg in by_size_desc:
        if remaining <= EPS:
            break
        n = int(math.floor(remaining / pkg.size + EPS))
        if n > 0:
            parts.append([pkg, n])
            remaining -= pkg.size * n

    overfill = 0.0
    topped_up: Optional[PackageCandidate] = None
    if remaining > EPS:
        smallest = min(pool, key=lambda c: c.size)
        overfill = smallest.size - remaining
        topped_up = smallest
        for part in parts:
            if part[0].identifier == smallest.identifier:
                part[1] += 1
                break
        else:
            parts.append([smallest, 1])

    lines = []
    for pkg, n in parts:
        line_overfill = overfill if topped_up is not None and pkg.identifier == topped_up.identifier else 0.0
        lines.append(make_line(pkg, n, overfill=line_overfill))
    return lines


def match(
    requirement: QuantityRequirement,
    candidates: Sequence[PackageCandidate],
    tie_break: str = TIE_BREAK_CATALOG_ORDER,
) -> MatchOutcome:
    """
    Prosedur keputusan deterministik:
      1. kandidat kosong → NO_MATCH
      2. tidak ada yang ACTIVE → INACTIVE_ONLY
      3. filter satuan (case-insensitive), kosong → NO_UNIT_MATCH + fallback
      4. ukuran persis sama → 1 kemasan, overfill 0
      5. kemasan tunggal terkecil yang >= kebutuhan (OVERFILL kalau lebih)
      6. greedy multi-kemasan (MULTIPLE_PACKAGES)
    """
    required = requirement.total_quantity
    logger.info(
        "Finding best package matches: required=%s %s, candidates=%d",
        _fmt_qty(required), requirement.unit, len(candidates),
    )

    if required <= 0:
        return MatchOutcome(empty_result(), [])

    pool, warnings = _candidate_pool(requirement, candidates, tie_break)
    if not pool:
        return MatchOutcome(empty_result(), warnings)

    default_criteria = OptimizationCriteria()

    exact = next((c for c in pool if abs(c.size - required) <= EPS), None)
    if exact is not None:
        logger.info("Exact package match found: %s", exact.identifier)
        lines = [make_line(exact, 1)]
        return MatchOutcome(build_result(lines, required, 0.0), warnings)

    # sort stabil: ukuran sama → urutan katalog
    closest = next((c for c in sorted(pool, key=lambda c: c.size) if c.size >= required), None)
    if closest is not None:
        overfill = closest.size - required
        if overfill > 0:
            warnings.append(_overfill_warning(overfill, closest.unit))
        lines = [make_line(closest, 1, overfill=overfill)]
        score = compute_score(overfill, 1, default_criteria)
        return MatchOutcome(build_result(lines, required, score), warnings)

    lines = _greedy_fill(required, pool)
    result = build_result(lines, required, 0.0)
    result = result.model_copy(update={
        "score": compute_score(result.total_waste, result.package_count, default_criteria),
    })

    if result.package_count > 1:
        warnings.append(_multiple_packages_warning())
    if result.total_waste > EPS:
        topped = next(line for line in lines if line.overfill > 0)
        warnings.append(_overfill_warning(result.total_waste, topped.unit))

    return MatchOutcome(result, warnings)


# =====================================================
#  STRATEGY SWITCH
# =====================================================

def _optimizer_outcome(
    requirement: QuantityRequirement,
    candidates: Sequence[PackageCandidate],
    criteria: OptimizationCriteria,
    tie_break: str,
) -> MatchOutcome:
    if requirement.total_quantity <= 0:
        return MatchOutcome(empty_result(), [])

    pool, warnings = _candidate_pool(requirement, candidates, tie_break)
    if not pool:
        return MatchOutcome(empty_result(), warnings)

    result = optimize(requirement, pool, criteria)

    if result.score == INF and result.lines:
        warnings.append(_warn(
            WarningCategory.OVERFILL_TOLERANCE_EXCEEDED,
            f"No package combination within {_fmt_qty(criteria.max_overfill_percent)}% overfill; "
            f"using the largest available package",
            Severity.WARNING,
        ))
    if result.package_count > 1:
        warnings.append(_multiple_packages_warning())
    if result.total_waste > EPS:
        warnings.append(_overfill_warning(result.total_waste, result.lines[-1].unit))

    return MatchOutcome(result, warnings)


def select_packages(
    requirement: QuantityRequirement,
    candidates: Sequence[PackageCandidate],
    config: Optional[Dict[str, Any]] = None,
) -> MatchOutcome:
    """
    Wrapper pemilihan strategi: greedy (matcher) | optimizer.
    Strategi tak dikenal → greedy.
    """
    selection_cfg = get_section(config, "selection")
    strategy = str(selection_cfg.get("strategy", "greedy")).lower()
    tie_break = str(selection_cfg.get("tie_break", TIE_BREAK_CATALOG_ORDER)).lower()

    if strategy == "optimizer":
        return _optimizer_outcome(requirement, candidates, criteria_from_config(config), tie_break)

    if strategy != "greedy":
        logger.warning("Unknown selection strategy %r, using greedy", strategy)
    return match(requirement, candidates, tie_break=tie_break)

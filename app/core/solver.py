import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from app.core.config import get_section
from app.models.schemas import (
    OptimizationResult,
    PackageCandidate,
    QuantityRequirement,
    SelectionLine,
)

logger = logging.getLogger(__name__)

INF = math.inf
EPS = 1e-9
COUNT_WEIGHT = 10.0


@dataclass(frozen=True)
class OptimizationCriteria:
    minimize_count: bool = True
    minimize_waste: bool = True
    allow_overfill: bool = True
    max_overfill_percent: float = 20.0
    # batas jumlah per jenis kemasan pada pencarian pasangan
    max_count_per_package: int = 10


def criteria_from_config(config: Optional[Dict[str, Any]]) -> OptimizationCriteria:
    cfg = get_section(config, "selection").get("criteria") or {}
    return OptimizationCriteria(
        minimize_count=bool(cfg.get("minimize_count", True)),
        minimize_waste=bool(cfg.get("minimize_waste", True)),
        allow_overfill=bool(cfg.get("allow_overfill", True)),
        max_overfill_percent=float(cfg.get("max_overfill_percent", 20.0)),
        max_count_per_package=int(cfg.get("max_count_per_package", 10)),
    )


# =====================================================
#  SCORING & RESULT BUILDING
# =====================================================

def compute_score(waste: float, package_count: int, criteria: OptimizationCriteria) -> float:
    """
    score = waste_term + count_term (semakin kecil semakin baik).
    count_term hanya dihitung kalau ada waste, jadi kombinasi tanpa waste
    selalu menang terhadap kombinasi yang ada waste-nya.
    """
    waste_term = waste if criteria.minimize_waste else 0.0
    count_term = package_count * COUNT_WEIGHT if criteria.minimize_count else 0.0
    return waste_term + (count_term if waste_term > 0 else 0.0)


def make_line(candidate: PackageCandidate, count: int, overfill: float = 0.0) -> SelectionLine:
    return SelectionLine(
        package_identifier=candidate.identifier,
        unit=candidate.unit,
        units_per_package=candidate.size,
        package_count=count,
        supplied_quantity=candidate.size * count,
        overfill=max(0.0, overfill),
    )


def build_result(lines: List[SelectionLine], required: float, score: float) -> OptimizationResult:
    total = float(sum(line.supplied_quantity for line in lines))
    waste = max(0.0, total - required) if lines else 0.0
    return OptimizationResult(
        lines=lines,
        total_supplied=total,
        total_waste=waste,
        package_count=int(sum(line.package_count for line in lines)),
        score=score,
    )


def empty_result() -> OptimizationResult:
    return OptimizationResult(lines=[], score=INF)


def lines_with_overfill_on_last(
    parts: List[Tuple[PackageCandidate, int]], required: float
) -> List[SelectionLine]:
    # overfill dicatat di baris terakhir sehingga Σ overfill == total waste
    total = sum(c.size * n for c, n in parts)
    waste = max(0.0, total - required)
    lines = [make_line(c, n) for c, n in parts[:-1]]
    last_c, last_n = parts[-1]
    lines.append(make_line(last_c, last_n, overfill=waste))
    return lines


# =====================================================
#  SEARCH
# =====================================================

def _max_overfill(required: float, criteria: OptimizationCriteria) -> float:
    if not criteria.allow_overfill:
        return 0.0
    return required * criteria.max_overfill_percent / 100.0


def _single_options(
    required: float, packages: Sequence[PackageCandidate], max_overfill: float
) -> List[Tuple[float, List[Tuple[PackageCandidate, int]]]]:
    options = []
    for pkg in packages:
        waste = pkg.size - required
        if waste >= -EPS and waste <= max_overfill + EPS:
            options.append((max(0.0, waste), [(pkg, 1)]))
    return options


def _pair_option(
    pkg1: PackageCandidate,
    pkg2: PackageCandidate,
    same: bool,
    required: float,
    max_overfill: float,
    criteria: OptimizationCriteria,
) -> Optional[Tuple[float, List[Tuple[PackageCandidate, int]]]]:
    """
    Evaluasi grid (count1 × count2), count 0..max_count_per_package, dengan numpy.
    Mengembalikan kombinasi terbaik untuk pasangan ini (atau None).
    """
    counts = np.arange(criteria.max_count_per_package + 1)
    c1 = counts[:, None]
    c2 = counts[None, :]

    totals = c1 * pkg1.size + c2 * pkg2.size
    waste = totals - required
    n_packages = c1 + c2

    feasible = (n_packages > 0) & (waste >= -EPS) & (waste <= max_overfill + EPS)
    if not feasible.any():
        return None

    waste = np.clip(waste, 0.0, None)
    waste_term = waste if criteria.minimize_waste else np.zeros_like(waste)
    count_term = n_packages * COUNT_WEIGHT if criteria.minimize_count else np.zeros_like(waste)
    scores = waste_term + np.where(waste_term > 0, count_term, 0.0)

    # infeasible → INF; urutkan (score, jumlah kemasan), argmin ambil yang pertama (row-major)
    scores = np.where(feasible, scores, np.inf)
    order = np.lexsort((n_packages.ravel(), scores.ravel()))
    i, j = np.unravel_index(order[0], scores.shape)
    n1, n2 = int(i), int(j)

    if same:
        parts = [(pkg1, n1 + n2)]
    else:
        parts = [(pkg, n) for pkg, n in ((pkg1, n1), (pkg2, n2)) if n > 0]
    return float(waste[i, j]), parts


def optimize(
    requirement: QuantityRequirement,
    candidates: Sequence[PackageCandidate],
    criteria: Optional[OptimizationCriteria] = None,
) -> OptimizationResult:
    """
    Pilih kombinasi kemasan dengan skor terkecil.

    Ruang pencarian:
      - satu kemasan dengan size >= kebutuhan dan overfill dalam toleransi
      - setiap pasangan kemasan (termasuk pasangan dengan dirinya sendiri),
        0..max_count_per_package per jenis, difilter dengan toleransi yang sama

    Kalau tidak ada kombinasi yang lolos toleransi → fallback kemasan terbesar
    × ceil(kebutuhan / size) dengan score = INF (best effort, bukan error).
    """
    criteria = criteria or OptimizationCriteria()
    required = requirement.total_quantity

    if required <= 0:
        return empty_result()

    active = [c for c in candidates if c.is_active and c.size > 0]
    if not active:
        return empty_result()

    max_overfill = _max_overfill(required, criteria)

    options = _single_options(required, active, max_overfill)
    for a in range(len(active)):
        for b in range(a, len(active)):
            found = _pair_option(active[a], active[b], a == b, required, max_overfill, criteria)
            if found is not None:
                options.append(found)

    if not options:
        return _fallback(required, active)

    scored = []
    for waste, parts in options:
        count = sum(n for _, n in parts)
        scored.append((compute_score(waste, count, criteria), count, parts))
    # sort stabil: kombinasi yang ditemukan lebih dulu menang kalau skornya sama
    scored.sort(key=lambda s: (s[0], s[1]))

    score, _, parts = scored[0]
    result = build_result(lines_with_overfill_on_last(parts, required), required, score)
    logger.info(
        "Optimal package selection: %d option(s), score=%.3f, packages=%d, waste=%.3f",
        len(options), result.score, result.package_count, result.total_waste,
    )
    return result


def _fallback(required: float, packages: Sequence[PackageCandidate]) -> OptimizationResult:
    largest = packages[0]
    for pkg in packages[1:]:
        if pkg.size > largest.size:
            largest = pkg

    count = max(1, math.ceil(required / largest.size - EPS))
    total = count * largest.size
    logger.info(
        "No combination within overfill tolerance; falling back to %d x %s",
        count, largest.identifier,
    )
    line = make_line(largest, count, overfill=total - required)
    return build_result([line], required, INF)

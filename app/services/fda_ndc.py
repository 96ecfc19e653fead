import logging
import re
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from app.core.errors import ExternalServiceError
from app.core.retry import RetryPolicy, retry_with_backoff
from app.core.validate import sanitize_input
from app.models.schemas import LifecycleStatus, PackageCandidate
from app.services.http import ApiClient, NotFound, is_transient

logger = logging.getLogger(__name__)

FDA_NDC_BASE = "https://api.fda.gov/drug/ndc.json"
SEARCH_LIMIT = 100

_LEADING_COUNT = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([A-Za-z]+)?")


def parse_package_description(description: str) -> Tuple[float, str]:
    """
    "100 TABLET in 1 BOTTLE"                               → (100, "tablet")
    "1 BOTTLE in 1 CARTON > 100 TABLET, FILM COATED in ..." → (100, "tablet")
    "3 BLISTER PACK in 1 CARTON > 10 TABLET in 1 BLISTER"   → (30, "tablet")

    Jumlah tiap tingkat kemasan dikalikan; satuan diambil dari tingkat paling dalam.
    Tidak bisa diparse → (1, "unit").
    """
    if not description or not isinstance(description, str):
        return 1.0, "unit"

    size = 1.0
    unit = "unit"
    parsed_any = False
    for segment in description.split(">"):
        m = _LEADING_COUNT.match(segment)
        if not m:
            continue
        parsed_any = True
        size *= float(m.group(1))
        if m.group(2):
            unit = m.group(2).lower()

    if not parsed_any:
        return 1.0, "unit"
    return size, unit


def _is_past(yyyymmdd: Optional[str]) -> bool:
    if not yyyymmdd or len(yyyymmdd) < 8 or not yyyymmdd[:8].isdigit():
        return False
    try:
        end = date(int(yyyymmdd[:4]), int(yyyymmdd[4:6]), int(yyyymmdd[6:8]))
    except ValueError:
        return False
    return end < date.today()


def _lifecycle(product: Dict[str, Any], package: Optional[Dict[str, Any]] = None) -> LifecycleStatus:
    status = str(product.get("marketing_status") or "").lower()
    if "inactive" in status or "discontinued" in status:
        return LifecycleStatus.INACTIVE
    if _is_past(product.get("marketing_end_date")):
        return LifecycleStatus.INACTIVE
    if package is not None and _is_past(package.get("marketing_end_date")):
        return LifecycleStatus.INACTIVE
    return LifecycleStatus.ACTIVE


def parse_candidates(results: List[Dict[str, Any]]) -> List[PackageCandidate]:
    candidates: List[PackageCandidate] = []
    for product in results or []:
        generic = product.get("generic_name") or product.get("brand_name")
        packaging = product.get("packaging") or []

        if not packaging:
            candidates.append(PackageCandidate(
                identifier=str(product.get("product_ndc")),
                size=1.0,
                unit="unit",
                lifecycle_status=_lifecycle(product),
                source_metadata=generic,
            ))
            continue

        for pkg in packaging:
            size, unit = parse_package_description(pkg.get("description", ""))
            candidates.append(PackageCandidate(
                identifier=str(pkg.get("package_ndc")),
                size=size,
                unit=unit,
                lifecycle_status=_lifecycle(product, pkg),
                source_metadata=generic,
            ))
    return candidates


class FdaNdcCatalog:
    """
    Katalog kemasan dari openFDA NDC Directory.

    fetch_candidates(canonical_id):
      - id numerik (RxCUI) → openfda.rxcui
      - selain itu dianggap nama generik → generic_name
    """

    def __init__(
        self,
        base_url: str = FDA_NDC_BASE,
        client: Optional[ApiClient] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.base_url = base_url
        self.client = client or ApiClient(timeout=10.0)
        self.retry_policy = retry_policy or RetryPolicy()

    def _search(self, query: str, limit: int) -> List[Dict[str, Any]]:
        try:
            data = self.client.get_json(self.base_url, params={"search": query, "limit": limit})
        except NotFound:
            # openFDA menjawab 404 kalau tidak ada hasil
            return []
        return data.get("results") or []

    def _search_with_retry(self, query: str, limit: int, failure_message: str) -> List[Dict[str, Any]]:
        try:
            return retry_with_backoff(
                lambda: self._search(query, limit),
                policy=self.retry_policy,
                should_retry=is_transient,
                description="openFDA search",
            )
        except Exception as e:
            logger.error("openFDA search failed for %s: %s", query, e)
            raise ExternalServiceError(failure_message) from e

    def fetch_candidates(self, canonical_id: str) -> List[PackageCandidate]:
        key = sanitize_input(canonical_id).replace('"', "")
        if not key:
            return []

        if key.isdigit():
            query = f'openfda.rxcui:"{key}"'
        else:
            query = f'generic_name:"{key}"'

        results = self._search_with_retry(query, SEARCH_LIMIT, "Failed to retrieve NDC data from FDA")
        candidates = parse_candidates(results)
        logger.info("NDC candidates found for %s: %d", key, len(candidates))
        return candidates

    def lookup_package(self, ndc: str) -> Optional[PackageCandidate]:
        key = sanitize_input(ndc).replace('"', "")
        if not key:
            return None

        results = self._search_with_retry(
            f'packaging.package_ndc:"{key}"', 1, "Failed to validate NDC with FDA",
        )
        if not results:
            results = self._search_with_retry(
                f'product_ndc:"{key}"', 1, "Failed to validate NDC with FDA",
            )
        candidates = parse_candidates(results)
        if not candidates:
            return None

        exact = next((c for c in candidates if c.identifier == key), None)
        return exact or candidates[0]

import logging
from typing import Any, Dict, Optional

from app.core.errors import AppError, ExternalServiceError, ValidationError
from app.core.retry import RetryPolicy, retry_with_backoff
from app.core.validate import sanitize_input
from app.models.schemas import DrugIdentity, PackageCandidate
from app.services.http import ApiClient, NotFound, is_transient

logger = logging.getLogger(__name__)

RXNORM_BASE = "https://rxnav.nlm.nih.gov/REST"


class RxNormNormalizer:
    """
    Normalisasi nama obat → RxCUI lewat RxNav REST API.

    validate_known_package didelegasikan ke package_lookup (katalog yang bisa
    mencari satu NDC, misalnya FdaNdcCatalog).
    """

    def __init__(
        self,
        base_url: str = RXNORM_BASE,
        client: Optional[ApiClient] = None,
        retry_policy: Optional[RetryPolicy] = None,
        package_lookup: Any = None,
        max_name_length: int = 200,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = client or ApiClient(timeout=10.0)
        self.retry_policy = retry_policy or RetryPolicy()
        self.package_lookup = package_lookup
        self.max_name_length = max_name_length

    def _lookup_rxcui(self, name: str) -> Optional[str]:
        try:
            data = self.client.get_json(f"{self.base_url}/rxcui.json", params={"name": name, "search": 1})
        except NotFound:
            return None
        ids = (data.get("idGroup") or {}).get("rxnormId") or []
        return str(ids[0]) if ids else None

    def get_properties(self, rxcui: str) -> Dict[str, Optional[str]]:
        """Properti tambahan (nama, sinonim, tty). Opsional: gagal → dict kosong."""
        if not rxcui or not rxcui.strip():
            return {}
        try:
            data = self.client.get_json(f"{self.base_url}/rxcui/{rxcui.strip()}/properties.json")
        except Exception as e:
            logger.warning("Failed to fetch RxCUI properties for %s: %s", rxcui, e)
            return {}
        props = data.get("properties") or {}
        return {"name": props.get("name"), "synonym": props.get("synonym"), "tty": props.get("tty")}

    def normalize(self, name: str) -> DrugIdentity:
        sanitized = sanitize_input(name)[: self.max_name_length]
        if not sanitized:
            raise ValidationError("Drug name cannot be empty")

        logger.info("Normalizing drug name to RxCUI: %s", sanitized)
        try:
            rxcui = retry_with_backoff(
                lambda: self._lookup_rxcui(sanitized),
                policy=self.retry_policy,
                should_retry=is_transient,
                description="RxNorm lookup",
            )
        except Exception as e:
            logger.error("Failed to normalize drug name %r: %s", sanitized, e)
            raise ExternalServiceError("Failed to normalize drug name with RxNorm") from e

        if not rxcui:
            raise ValidationError(f"Drug name not recognized: {sanitized}")

        props = self.get_properties(rxcui)
        return DrugIdentity(canonical_id=rxcui, display_name=props.get("name") or sanitized)

    def validate_known_package(self, identifier: str) -> Optional[PackageCandidate]:
        if self.package_lookup is None:
            logger.warning("No package lookup configured; cannot validate %s", identifier)
            return None
        try:
            return self.package_lookup.lookup_package(identifier)
        except AppError:
            raise
        except Exception as e:
            logger.error("Failed to validate package %s: %s", identifier, e)
            raise ExternalServiceError("Failed to validate NDC") from e

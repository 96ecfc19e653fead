import logging
from typing import Any, Dict, Optional

from app.core.catalog import CsvCandidateCatalog, SqlCandidateCatalog
from app.core.config import Settings, get_section
from app.core.orchestrator import CalculationOrchestrator
from app.core.retry import retry_policy_from_config
from app.db import get_engine
from app.services.fda_ndc import FdaNdcCatalog
from app.services.http import ApiClient
from app.services.openai_service import OpenAIAdvisor, OpenAIDoseParser
from app.services.rxnorm import RxNormNormalizer

logger = logging.getLogger(__name__)

CATALOG_SOURCES = ("fda", "csv", "sql")


def build_catalog(settings: Settings, config: Optional[Dict[str, Any]] = None):
    timeouts = get_section(config, "timeouts")
    source = settings.catalog_source

    if source == "csv":
        return CsvCandidateCatalog(settings.catalog_path)
    if source == "sql":
        return SqlCandidateCatalog(get_engine(settings.database_url))
    if source != "fda":
        logger.warning("Unknown CATALOG_SOURCE %r, using fda", source)

    return FdaNdcCatalog(
        base_url=settings.fda_base_url,
        client=ApiClient(timeout=float(timeouts["fda"])),
        retry_policy=retry_policy_from_config(config, "fda"),
    )


def build_orchestrator(settings: Settings, config: Optional[Dict[str, Any]] = None) -> CalculationOrchestrator:
    """
    Rakit orchestrator dari environment (Settings) + config JSON.
    Advisor hanya dipasang kalau advisory.enabled = true.
    """
    timeouts = get_section(config, "timeouts")
    input_cfg = get_section(config, "input")
    openai_retry = retry_policy_from_config(config, "openai")

    catalog = build_catalog(settings, config)

    normalizer = RxNormNormalizer(
        base_url=settings.rxnorm_base_url,
        client=ApiClient(timeout=float(timeouts["rxnorm"])),
        retry_policy=retry_policy_from_config(config, "rxnorm"),
        package_lookup=catalog,
        max_name_length=int(input_cfg["drug_name_max_length"]),
    )

    dose_parser = OpenAIDoseParser(
        api_key=settings.openai_api_key,
        model=settings.openai_model,
        timeout=float(timeouts["openai"]),
        retry_policy=openai_retry,
        max_sig_length=int(input_cfg["sig_max_length"]),
    )

    advisor = None
    if get_section(config, "advisory").get("enabled", True):
        advisor = OpenAIAdvisor(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            timeout=float(timeouts["openai"]),
            retry_policy=openai_retry,
        )

    logger.info("Orchestrator ready: catalog=%s advisor=%s", type(catalog).__name__, advisor is not None)
    return CalculationOrchestrator(
        dose_parser=dose_parser,
        normalizer=normalizer,
        catalog=catalog,
        advisor=advisor,
        config=config,
    )

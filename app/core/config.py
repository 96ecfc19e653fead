import copy
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()

DEFAULT_CONFIG_PATH = "data/config.json"

DEFAULT_CONFIG: Dict[str, Any] = {
    "selection": {
        "strategy": "greedy",
        "tie_break": "catalog_order",
        "criteria": {
            "minimize_count": True,
            "minimize_waste": True,
            "allow_overfill": True,
            "max_overfill_percent": 20.0,
            "max_count_per_package": 10,
        },
    },
    "retry": {
        "rxnorm": {"max_retries": 3, "base_delay": 1.0, "max_delay": 10.0},
        "fda": {"max_retries": 3, "base_delay": 1.0, "max_delay": 10.0},
        "openai": {"max_retries": 2, "base_delay": 1.0, "max_delay": 10.0},
    },
    "timeouts": {
        "rxnorm": 10.0,
        "fda": 10.0,
        "openai": 30.0,
        "advisory": 30.0,
    },
    "advisory": {
        "enabled": True,
        "max_relative_overfill": 1.2,
    },
    "rate_limit": {
        "max_requests": 100,
        "window_seconds": 60.0,
    },
    "input": {
        "drug_name_max_length": 200,
        "sig_max_length": 500,
        "days_supply_min": 1,
        "days_supply_max": 365,
    },
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Memuat konfigurasi JSON (strategi seleksi, retry, timeout, rate limit, batas input)
    lalu menimpanya di atas DEFAULT_CONFIG.

    - path eksplisit yang tidak ada → FileNotFoundError
    - tanpa path: pakai CONFIG_PATH / data/config.json, kalau tidak ada → default saja
    """
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found at {config_path.resolve()}")
    else:
        config_path = Path(os.getenv("CONFIG_PATH", DEFAULT_CONFIG_PATH))
        if not config_path.exists():
            return copy.deepcopy(DEFAULT_CONFIG)

    with config_path.open("r", encoding="utf-8") as f:
        data: Dict[str, Any] = json.load(f)

    return _deep_merge(DEFAULT_CONFIG, data)


def get_section(config: Optional[Dict[str, Any]], name: str) -> Dict[str, Any]:
    section = (config or {}).get(name)
    if not isinstance(section, dict):
        section = DEFAULT_CONFIG.get(name, {})
    return _deep_merge(DEFAULT_CONFIG.get(name, {}), section)


# =====================================================
#  ENVIRONMENT
# =====================================================

@dataclass(frozen=True)
class Settings:
    openai_api_key: str
    openai_model: str
    rxnorm_base_url: str
    fda_base_url: str
    api_key: str
    allow_origins: List[str]
    catalog_source: str
    catalog_path: str
    database_url: str
    log_level: str


def load_settings() -> Settings:
    return Settings(
        openai_api_key=os.getenv("OPENAI_API_KEY", "").strip(),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        rxnorm_base_url=os.getenv("RXNORM_API_BASE_URL", "https://rxnav.nlm.nih.gov/REST"),
        fda_base_url=os.getenv("FDA_NDC_API_BASE_URL", "https://api.fda.gov/drug/ndc.json"),
        api_key=os.getenv("API_KEY", "").strip(),
        allow_origins=[o.strip() for o in os.getenv("ALLOW_ORIGINS", "*").split(",") if o.strip()],
        catalog_source=os.getenv("CATALOG_SOURCE", "fda").strip().lower(),
        catalog_path=os.getenv("CATALOG_PATH", "data/packages.csv"),
        database_url=os.getenv("DATABASE_URL", "").strip(),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


def validate_env(settings: Settings) -> List[str]:
    """Daftar variabel environment wajib yang belum diset."""
    missing: List[str] = []
    if not settings.openai_api_key:
        missing.append("OPENAI_API_KEY")
    if settings.catalog_source == "sql" and not settings.database_url:
        missing.append("DATABASE_URL")
    return missing

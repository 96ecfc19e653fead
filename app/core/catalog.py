import logging
from pathlib import Path
from typing import List, Optional

import pandas as pd
from sqlalchemy import text
from sqlalchemy.engine import Engine

from app.core.validate import validate_packages_df
from app.models.schemas import LifecycleStatus, PackageCandidate

logger = logging.getLogger(__name__)


# =========================
# DATAFRAME → CANDIDATES
# =========================

def normalize_packages_df(df: pd.DataFrame) -> pd.DataFrame:
    """
    Validasi + rapikan tipe kolom katalog kemasan.

    Kolom wajib: identifier, size, unit, lifecycle_status
    Kolom opsional: drug_id, display_name (dipakai untuk pencarian)
    """
    validate_packages_df(df)
    df = df.copy()
    df["identifier"] = df["identifier"].astype(str).str.strip()
    df["size"] = pd.to_numeric(df["size"], errors="coerce")
    df["unit"] = df["unit"].astype(str).str.strip().str.lower()
    df["lifecycle_status"] = df["lifecycle_status"].astype(str).str.strip().str.upper()
    for col in ("drug_id", "display_name"):
        if col not in df.columns:
            df[col] = ""
        df[col] = df[col].fillna("").astype(str).str.strip()
    return df


def candidates_from_df(df: pd.DataFrame) -> List[PackageCandidate]:
    """Urutan baris dipertahankan (urutan katalog dipakai sebagai tie-break)."""
    return [
        PackageCandidate(
            identifier=row.identifier,
            size=float(row.size),
            unit=row.unit,
            lifecycle_status=LifecycleStatus(row.lifecycle_status),
            source_metadata=row.display_name or None,
        )
        for row in df.itertuples(index=False)
    ]


def _filter_by_key(df: pd.DataFrame, key: str) -> pd.DataFrame:
    key = (key or "").strip()
    if not key:
        return df.iloc[0:0]
    by_id = df["drug_id"] == key
    by_name = df["display_name"].str.lower() == key.lower()
    return df[by_id | by_name]


# =========================
# CSV CATALOG
# =========================

class CsvCandidateCatalog:
    """Katalog kemasan dari file CSV lokal (CATALOG_SOURCE=csv)."""

    def __init__(self, path: str = "data/packages.csv"):
        self.path = Path(path)
        self._df: Optional[pd.DataFrame] = None

    @property
    def df(self) -> pd.DataFrame:
        if self._df is None:
            if not self.path.exists():
                raise FileNotFoundError(f"packages catalog not found at {self.path.resolve()}")
            self._df = normalize_packages_df(pd.read_csv(self.path, dtype={"identifier": str, "drug_id": str}))
            logger.info("Loaded %d package rows from %s", len(self._df), self.path)
        return self._df

    def fetch_candidates(self, canonical_id: str) -> List[PackageCandidate]:
        return candidates_from_df(_filter_by_key(self.df, canonical_id))

    def lookup_package(self, identifier: str) -> Optional[PackageCandidate]:
        rows = self.df[self.df["identifier"] == (identifier or "").strip()]
        candidates = candidates_from_df(rows.head(1))
        return candidates[0] if candidates else None


# =========================
# SQL CATALOG
# =========================

PACKAGES_QUERY = """
    SELECT
        identifier,
        size,
        unit,
        lifecycle_status,
        drug_id,
        display_name
    FROM packages
"""


class SqlCandidateCatalog:
    """
    Katalog kemasan dari tabel packages (CATALOG_SOURCE=sql).
    Query di-parameterisasi; urutan stabil berdasarkan identifier.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def _query(self, condition: str, params: dict) -> pd.DataFrame:
        query = PACKAGES_QUERY + " WHERE " + condition + " ORDER BY identifier"
        df = pd.read_sql(text(query), self.engine, params=params)
        return normalize_packages_df(df)

    def fetch_candidates(self, canonical_id: str) -> List[PackageCandidate]:
        key = (canonical_id or "").strip()
        if not key:
            return []
        df = self._query(
            "drug_id = :key OR lower(display_name) = :name",
            {"key": key, "name": key.lower()},
        )
        return candidates_from_df(df)

    def lookup_package(self, identifier: str) -> Optional[PackageCandidate]:
        key = (identifier or "").strip()
        if not key:
            return None
        candidates = candidates_from_df(self._query("identifier = :key", {"key": key}))
        return candidates[0] if candidates else None

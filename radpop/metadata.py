from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Sequence

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

# Canonical column names of the sample metadata table.
ACCESSION_COL = "accession"
PLOIDY_COL = "ploidy"
LAT_COL = "latitude"
LON_COL = "longitude"
POP_COL = "population"
REGION_COL = "region"

# Accepted aliases (lower-case) for each canonical column.
_ALIASES: Dict[str, Sequence[str]] = {
    ACCESSION_COL: ("accession", "sample_id", "sample", "id"),
    PLOIDY_COL: ("ploidy",),
    LAT_COL: ("latitude", "lat", "lat_deg"),
    LON_COL: ("longitude", "lon", "long", "lon_deg"),
    POP_COL: ("population", "pop", "group"),
    REGION_COL: ("region",),
}

# Basic sanity bounds (used for validation)
LAT_MIN, LAT_MAX = -90.0, 90.0
LON_MIN, LON_MAX = -180.0, 180.0


def canonical_columns(df: pd.DataFrame) -> pd.DataFrame:
    cols = {c.lower(): c for c in df.columns}
    rename = {}
    for canon, aliases in _ALIASES.items():
        for alias in aliases:
            if alias in cols:
                rename[cols[alias]] = canon
                break
    return df.rename(columns=rename)


def load_sample_metadata(path: str | Path) -> pd.DataFrame:
    """Load a sample metadata CSV and normalise its column names."""
    df = canonical_columns(pd.read_csv(path))
    if ACCESSION_COL not in df.columns:
        raise ValueError(f"Metadata file {path} must have an accession/sample_id column.")
    df[ACCESSION_COL] = df[ACCESSION_COL].astype(str)
    if df[ACCESSION_COL].duplicated().any():
        dup = df.loc[df[ACCESSION_COL].duplicated(), ACCESSION_COL].iloc[0]
        raise ValueError(f"Duplicate accession '{dup}' in metadata file {path}.")

    if LAT_COL in df.columns:
        lat = df[LAT_COL].astype(float)
        if np.any((lat < LAT_MIN) | (lat > LAT_MAX)):
            raise ValueError("Latitude values out of bounds [-90, 90].")
        df[LAT_COL] = lat
    if LON_COL in df.columns:
        lon = df[LON_COL].astype(float)
        if np.any((lon < LON_MIN) | (lon > LON_MAX)):
            raise ValueError("Longitude values out of bounds [-180, 180].")
        df[LON_COL] = lon
    if PLOIDY_COL in df.columns:
        df[PLOIDY_COL] = df[PLOIDY_COL].astype(int)
    for col in (POP_COL, REGION_COL):
        if col in df.columns:
            df[col] = df[col].astype(str)
    return df


def align_metadata(
    meta: pd.DataFrame,
    sample_ids: Sequence[str],
    drop_missing: bool = False,
) -> pd.DataFrame:
    """Reorder metadata rows to follow sample_ids.

    With drop_missing, samples lacking metadata are left out of the result
    (callers must subset their depth data to match).
    """
    sample_ids = [str(s) for s in sample_ids]
    indexed = meta.set_index(ACCESSION_COL, drop=False)
    missing = [s for s in sample_ids if s not in indexed.index]
    if missing:
        if not drop_missing:
            raise ValueError(
                f"{len(missing)} samples have no metadata (first: '{missing[0]}')."
            )
        logger.warning("Dropping %d samples without metadata", len(missing))
        sample_ids = [s for s in sample_ids if s in indexed.index]
    out = indexed.loc[sample_ids].reset_index(drop=True)
    return out


def assert_aligned(meta: pd.DataFrame, sample_ids: Sequence[str]) -> None:
    """Raise if metadata rows are not in the same order as sample_ids."""
    acc = meta[ACCESSION_COL].astype(str).tolist()
    if len(acc) != len(sample_ids):
        raise ValueError(
            f"Metadata has {len(acc)} rows but there are {len(sample_ids)} samples."
        )
    for i, (a, s) in enumerate(zip(acc, sample_ids)):
        if a != str(s):
            raise ValueError(f"Metadata row {i} is '{a}' but sample {i} is '{s}'.")


def add_columns(meta: pd.DataFrame, **cols) -> pd.DataFrame:
    """Return a copy of meta with per-sample derived columns appended."""
    out = meta.copy()
    for name, values in cols.items():
        values = np.asarray(values)
        if values.shape[0] != out.shape[0]:
            raise ValueError(
                f"Column '{name}' has {values.shape[0]} values for {out.shape[0]} samples."
            )
        out[name] = values
    return out


def load_boundaries(path: str | Path) -> pd.DataFrame:
    """Load a map boundary table: one polygon per group, vertices in order."""
    raw = pd.read_csv(path)
    cols = {c.lower(): c for c in raw.columns}
    if "group" not in cols:
        raise ValueError(f"Boundary file {path} must have a 'group' column.")
    df = canonical_columns(raw.drop(columns=[cols["group"]]))
    df.insert(0, "group", raw[cols["group"]].astype(str))
    for col in (LON_COL, LAT_COL):
        if col not in df.columns:
            raise ValueError(f"Boundary file {path} must have '{col}' column.")
    if "order" in df.columns:
        df = df.sort_values(["group", "order"], kind="stable")
    return df[["group", LON_COL, LAT_COL]].reset_index(drop=True)

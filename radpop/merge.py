from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Dict

import numpy as np
import pandas as pd

from .io import RADData

logger = logging.getLogger(__name__)


@dataclass
class MergeMapping:
    """Mapping from original samples to merged sample IDs."""

    sample_ids: np.ndarray  # original sample IDs
    merge_ids: np.ndarray   # same length, new group IDs


def load_merge_mapping(csv_path: str) -> MergeMapping:
    """Load a sample -> merge mapping from CSV with columns sample_id, merge_id."""
    df = pd.read_csv(csv_path)
    cols = {c.lower(): c for c in df.columns}
    for name in ("sample_id", "sample", "accession"):
        if name in cols:
            sample_col = cols[name]
            break
    else:
        raise ValueError("Merge mapping must have a 'sample_id', 'sample' or 'accession' column.")

    if "merge_id" in cols:
        merge_col = cols["merge_id"]
    elif "group" in cols:
        merge_col = cols["group"]
    else:
        raise ValueError("Merge mapping must have 'merge_id' or 'group' column.")

    sample_ids = df[sample_col].astype(str).to_numpy()
    merge_ids = df[merge_col].astype(str).to_numpy()
    if len(set(sample_ids)) != len(sample_ids):
        raise ValueError("Merge mapping lists a sample more than once.")
    return MergeMapping(sample_ids=sample_ids, merge_ids=merge_ids)


def merge_ra_samples(ra: RADData, mapping: MergeMapping) -> RADData:
    """Merge technical replicates by summing their read depths.

    - Samples in the mapping but absent from ra are ignored with a warning.
    - Samples not present in the mapping are kept as their own group.
    - Replicates of one group must share a ploidy.
    """
    sample_ids = np.array(ra.sample_ids, dtype=str)
    map_dict: Dict[str, str] = {
        s: g for s, g in zip(mapping.sample_ids, mapping.merge_ids)
    }
    unknown = set(map_dict) - set(sample_ids)
    if unknown:
        logger.warning("%d mapped samples are not in the data: %s", len(unknown), sorted(unknown)[:5])

    group_ids = np.array([map_dict.get(s, s) for s in sample_ids], dtype=str)
    uniq_groups, inv = np.unique(group_ids, return_inverse=True)
    n_groups = uniq_groups.shape[0]

    ref_merged = np.zeros((n_groups, ra.n_snp), dtype=np.int32)
    alt_merged = np.zeros((n_groups, ra.n_snp), dtype=np.int32)
    ploidy = np.zeros(n_groups, dtype=np.int32)

    for g in range(n_groups):
        mask = inv == g
        pl = np.unique(ra.ploidy[mask])
        if pl.size != 1:
            raise ValueError(
                f"Samples merged into '{uniq_groups[g]}' have different ploidies {pl.tolist()}."
            )
        ploidy[g] = pl[0]
        ref_merged[g, :] = ra.ref[mask, :].sum(axis=0)
        alt_merged[g, :] = ra.alt[mask, :].sum(axis=0)

    logger.info("Merged %d samples into %d", ra.n_ind, n_groups)
    return replace(
        ra,
        sample_ids=[str(g) for g in uniq_groups],
        ref=ref_merged,
        alt=alt_merged,
        ploidy=ploidy,
    )

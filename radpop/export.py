from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional, Sequence

import numpy as np
import pandas as pd

from .genotyping import GenotypeCalls, most_probable_genotypes, posterior_mean_dosage

logger = logging.getLogger(__name__)

STRUCTURE_MISSING = -9


def _population_codes(populations: Sequence) -> np.ndarray:
    """Structure wants integer population IDs; map labels to 1..k."""
    labels = np.asarray(populations)
    if np.issubdtype(labels.dtype, np.integer):
        return labels.astype(int)
    _, inv = np.unique(labels.astype(str), return_inverse=True)
    return inv + 1


def export_structure(
    calls: GenotypeCalls,
    path: str | Path,
    populations: Optional[Sequence] = None,
    extra_cols: Optional[Dict[str, Sequence]] = None,
    min_prob: float = 0.0,
) -> None:
    """Write most probable genotypes in Structure format.

    - first line: locus names
    - max_ploidy rows per sample; row r carries allele 2 (alt) when r is
      below the called dosage, else allele 1 (ref)
    - -9 for missing calls and for rows beyond the sample's own ploidy
    - optional integer population column, then any extra columns
    """
    path = Path(path)
    geno = most_probable_genotypes(calls, min_prob=min_prob)
    ploidy = np.asarray(calls.ploidy, dtype=int)
    max_ploidy = int(ploidy.max())
    n_ind = calls.n_ind

    pop_codes = None
    if populations is not None:
        if len(populations) != n_ind:
            raise ValueError("populations must have one entry per sample.")
        pop_codes = _population_codes(populations)
    extra_cols = extra_cols or {}
    for name, values in extra_cols.items():
        if len(values) != n_ind:
            raise ValueError(f"Extra column '{name}' must have one entry per sample.")

    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w") as fh:
        fh.write(" ".join(calls.locus_names) + "\n")
        for i in range(n_ind):
            lead = [str(calls.sample_ids[i])]
            if pop_codes is not None:
                lead.append(str(int(pop_codes[i])))
            lead.extend(str(values[i]) for values in extra_cols.values())
            g = geno[i]
            for r in range(max_ploidy):
                if r >= ploidy[i]:
                    alleles = np.full(g.shape, STRUCTURE_MISSING)
                else:
                    alleles = np.where(r < g, 2, 1)
                    alleles[g < 0] = STRUCTURE_MISSING
                fh.write(" ".join(lead + [str(int(a)) for a in alleles]) + "\n")
    logger.info("Wrote Structure file %s (%d samples x %d loci)", path, n_ind, calls.n_snp)


def dosage_table(calls: GenotypeCalls) -> pd.DataFrame:
    """Posterior mean dosages in [0, 1] as a sample x locus DataFrame."""
    return pd.DataFrame(
        posterior_mean_dosage(calls),
        index=pd.Index(calls.sample_ids, name="accession"),
        columns=calls.locus_names,
    )


def write_dosage_csv(calls: GenotypeCalls, path: str | Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    dosage_table(calls).to_csv(path)

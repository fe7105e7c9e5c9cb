from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

DIFF_METRICS = ("Jost's D", "Gst", "G'st", "Fst")


@dataclass
class PopDiffResult:
    """Differentiation among populations (calcPopDiff analogue)."""

    metric: str
    global_value: float                  # multi-locus value over all populations
    per_locus: Optional[pd.Series]       # (n_snp,) values over all populations
    pairwise: Optional[pd.DataFrame]     # (n_pop, n_pop), zero diagonal


def _group_indices(labels: Sequence[str]) -> Tuple[np.ndarray, List[str]]:
    labels = np.asarray(labels).astype(str)
    uniq, inv = np.unique(labels, return_inverse=True)
    return inv, [str(u) for u in uniq]


def population_allele_freqs(
    dosage: np.ndarray,
    populations: Sequence[str],
    ploidy: Optional[np.ndarray] = None,
    locus_names: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """Alt allele frequency per population x locus from [0, 1] dosages.

    Samples are weighted by ploidy when it is given; NaN cells are ignored.
    """
    dosage = np.asarray(dosage, dtype=np.float64)
    n_ind, n_snp = dosage.shape
    inv, names = _group_indices(populations)
    if inv.size != n_ind:
        raise ValueError("populations must have one label per sample.")
    w = np.ones(n_ind) if ploidy is None else np.asarray(ploidy, dtype=np.float64)

    mask = ~np.isnan(dosage)
    wd = np.where(mask, dosage, 0.0) * w[:, None]
    wm = mask * w[:, None]
    freqs = np.full((len(names), n_snp), np.nan)
    for g in range(len(names)):
        rows = inv == g
        num = wd[rows].sum(axis=0)
        den = wm[rows].sum(axis=0)
        with np.errstate(divide="ignore", invalid="ignore"):
            freqs[g] = np.where(den > 0, num / den, np.nan)
    columns = list(locus_names) if locus_names is not None else list(range(n_snp))
    return pd.DataFrame(freqs, index=pd.Index(names, name="population"), columns=columns)


def population_allele_counts(
    dosage: np.ndarray,
    populations: Sequence[str],
    ploidy: Optional[np.ndarray] = None,
    locus_names: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """Allele copies sampled per population x locus (non-missing samples x ploidy)."""
    dosage = np.asarray(dosage, dtype=np.float64)
    n_ind, n_snp = dosage.shape
    inv, names = _group_indices(populations)
    w = np.full(n_ind, 2.0) if ploidy is None else np.asarray(ploidy, dtype=np.float64)
    wm = (~np.isnan(dosage)) * w[:, None]
    counts = np.vstack([wm[inv == g].sum(axis=0) for g in range(len(names))])
    columns = list(locus_names) if locus_names is not None else list(range(n_snp))
    return pd.DataFrame(counts, index=pd.Index(names, name="population"), columns=columns)


def expected_heterozygosity(freqs: pd.DataFrame | np.ndarray):
    """Expected heterozygosity 1 - sum_a p_a^2 = 2p(1-p) for biallelic loci."""
    if isinstance(freqs, pd.DataFrame):
        return 2.0 * freqs * (1.0 - freqs)
    p = np.asarray(freqs, dtype=np.float64)
    return 2.0 * p * (1.0 - p)


def _diff_terms(
    P: np.ndarray,
    metric: str,
    sizes: Optional[np.ndarray],
) -> Tuple[np.ndarray, np.ndarray]:
    """Per-locus numerator and denominator of a differentiation statistic.

    P is (k, n_snp); any locus missing in one population gives NaN.
    """
    k = P.shape[0]
    hs = np.mean(2.0 * P * (1.0 - P), axis=0)
    pbar = P.mean(axis=0)
    ht = 2.0 * pbar * (1.0 - pbar)

    if metric == "Gst":
        return ht - hs, ht
    if metric == "G'st":
        return (ht - hs) * (k - 1.0 + hs), ht * (k - 1.0) * (1.0 - hs)
    if metric == "Jost's D":
        return (ht - hs) * k, (1.0 - hs) * (k - 1.0)
    # Fst with the Nei & Chesser (1983) sample-size correction.
    if sizes is None:
        raise ValueError("metric 'Fst' needs allele sample sizes per population.")
    with np.errstate(divide="ignore", invalid="ignore"):
        n_h = k / np.sum(1.0 / sizes, axis=0)
        hs_c = n_h / (n_h - 1.0) * hs
        ht_c = ht + hs_c / (k * n_h)
    return ht_c - hs_c, ht_c


def _ratio(num: np.ndarray, den: np.ndarray) -> np.ndarray:
    with np.errstate(divide="ignore", invalid="ignore"):
        out = num / den
    out[~np.isfinite(out)] = np.nan
    return out


def _global(num: np.ndarray, den: np.ndarray, metric: str) -> float:
    ok = np.isfinite(num) & np.isfinite(den) & (den > 0)
    if not ok.any():
        return float("nan")
    if metric == "Jost's D":
        return float(np.mean(num[ok] / den[ok]))
    return float(num[ok].sum() / den[ok].sum())


def calc_pop_diff(
    freqs: pd.DataFrame,
    metric: str = "Jost's D",
    pairwise: bool = False,
    global_: bool = True,
    sizes: Optional[pd.DataFrame] = None,
) -> PopDiffResult:
    """Differentiation among populations from a pop x locus frequency table.

    Gst, G'st and Fst are combined over loci as a ratio of sums; Jost's D as
    the mean of per-locus values. With pairwise=True every pair of
    populations is compared on its own, giving a symmetric table.
    """
    if metric not in DIFF_METRICS:
        raise ValueError(f"Unknown metric '{metric}' (expected one of {DIFF_METRICS}).")
    if freqs.shape[0] < 2:
        raise ValueError("Differentiation needs at least two populations.")
    if sizes is not None and sizes.shape != freqs.shape:
        raise ValueError("sizes must have the same shape as freqs.")
    P = freqs.to_numpy(dtype=np.float64)
    N = None if sizes is None else sizes.to_numpy(dtype=np.float64)

    global_value = float("nan")
    per_locus = None
    if global_:
        num, den = _diff_terms(P, metric, N)
        per_locus = pd.Series(_ratio(num, den), index=freqs.columns, name=metric)
        global_value = _global(num, den, metric)
        logger.info("Global %s over %d populations: %.4f", metric, P.shape[0], global_value)

    table = None
    if pairwise:
        names = list(freqs.index)
        k = len(names)
        mat = np.zeros((k, k), dtype=np.float64)
        for i in range(k - 1):
            for j in range(i + 1, k):
                rows = [i, j]
                num, den = _diff_terms(P[rows], metric, None if N is None else N[rows])
                mat[i, j] = mat[j, i] = _global(num, den, metric)
        table = pd.DataFrame(mat, index=names, columns=names)

    return PopDiffResult(metric=metric, global_value=global_value, per_locus=per_locus, pairwise=table)

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

import numpy as np
import pandas as pd

from .config import PERMUTATIONS_DEFAULT
from .spatial import euclidean_distance

logger = logging.getLogger(__name__)


@dataclass
class AMOVAResult:
    """Analysis of molecular variance on squared Euclidean distances."""

    table: pd.DataFrame          # source, df, SSD, MSD, sigma, percent
    sigma: Dict[str, float]
    phi: Dict[str, float]
    p_values: Dict[str, float]


def _ssd(d2: np.ndarray, labels: np.ndarray) -> float:
    """Sum of squared deviations within groups: sum_g sum_{i,j in g} d2_ij / (2 n_g)."""
    total = 0.0
    for lab in np.unique(labels):
        idx = np.where(labels == lab)[0]
        total += d2[np.ix_(idx, idx)].sum() / (2.0 * idx.size)
    return total


def _one_level(d2: np.ndarray, pops: np.ndarray):
    n = pops.size
    uniq, sizes = np.unique(pops, return_counts=True)
    P = uniq.size
    ssd_total = d2.sum() / (2.0 * n)
    ssd_wp = _ssd(d2, pops)
    ssd_ap = ssd_total - ssd_wp
    df_ap, df_wp = P - 1, n - P
    msd_ap = ssd_ap / df_ap
    msd_wp = ssd_wp / df_wp if df_wp > 0 else float("nan")
    n_coef = (n - np.sum(sizes**2) / n) / (P - 1)
    sigma_b = msd_wp
    sigma_a = (msd_ap - msd_wp) / n_coef
    rows = [
        ("Among populations", df_ap, ssd_ap, msd_ap, sigma_a),
        ("Within populations", df_wp, ssd_wp, msd_wp, sigma_b),
        ("Total", n - 1, ssd_total, ssd_total / (n - 1), sigma_a + sigma_b),
    ]
    sigma = {"among_populations": sigma_a, "within_populations": sigma_b}
    phi = {"Phi_ST": sigma_a / (sigma_a + sigma_b)}
    return rows, sigma, phi


def _two_level(d2: np.ndarray, pops: np.ndarray, regions: np.ndarray):
    n = pops.size
    pop_names = np.unique(pops)
    reg_names = np.unique(regions)
    P, R = pop_names.size, reg_names.size

    ssd_total = d2.sum() / (2.0 * n)
    ssd_wr = _ssd(d2, regions)
    ssd_wp = _ssd(d2, pops)
    ssd_ar = ssd_total - ssd_wr
    ssd_apwr = ssd_wr - ssd_wp
    df_ar, df_apwr, df_wp = R - 1, P - R, n - P

    n_p = {p: np.sum(pops == p) for p in pop_names}
    pop_region = {p: regions[pops == p][0] for p in pop_names}
    n_r = {r: np.sum(regions == r) for r in reg_names}
    s1 = sum(sum(n_p[p] ** 2 for p in pop_names if pop_region[p] == r) / n_r[r] for r in reg_names)
    s2 = sum(v**2 for v in n_p.values()) / n
    s3 = sum(v**2 for v in n_r.values()) / n
    n1 = (n - s1) / df_apwr
    n2 = (s1 - s2) / df_ar
    n3 = (n - s3) / df_ar

    msd_ar = ssd_ar / df_ar
    msd_apwr = ssd_apwr / df_apwr
    msd_wp = ssd_wp / df_wp if df_wp > 0 else float("nan")
    sigma_c = msd_wp
    sigma_b = (msd_apwr - sigma_c) / n1
    sigma_a = (msd_ar - sigma_c - n2 * sigma_b) / n3
    total = sigma_a + sigma_b + sigma_c
    rows = [
        ("Among regions", df_ar, ssd_ar, msd_ar, sigma_a),
        ("Among populations within regions", df_apwr, ssd_apwr, msd_apwr, sigma_b),
        ("Within populations", df_wp, ssd_wp, msd_wp, sigma_c),
        ("Total", n - 1, ssd_total, ssd_total / (n - 1), total),
    ]
    sigma = {
        "among_regions": sigma_a,
        "among_populations_within_regions": sigma_b,
        "within_populations": sigma_c,
    }
    phi = {
        "Phi_ST": (sigma_a + sigma_b) / total,
        "Phi_SC": sigma_b / (sigma_b + sigma_c),
        "Phi_CT": sigma_a / total,
    }
    return rows, sigma, phi


def amova(
    X: np.ndarray,
    populations: Sequence,
    regions: Optional[Sequence] = None,
    permutations: int = PERMUTATIONS_DEFAULT,
    seed: Optional[int] = None,
) -> AMOVAResult:
    """AMOVA of a sample x locus dosage matrix.

    One level (populations) or two levels (regions > populations). Each
    Phi statistic is tested by permutation: samples among populations for
    Phi_ST, samples among populations within regions for Phi_SC, whole
    populations among regions for Phi_CT.
    """
    d2 = euclidean_distance(X) ** 2
    pops = np.asarray(populations).astype(str)
    n = pops.size
    if d2.shape[0] != n:
        raise ValueError("populations must have one label per sample.")
    if np.unique(pops).size < 2:
        raise ValueError("AMOVA requires at least two populations.")
    rng = np.random.default_rng(seed)

    if regions is None:
        rows, sigma, phi = _one_level(d2, pops)
        sims = np.array(
            [_one_level(d2, rng.permutation(pops))[2]["Phi_ST"] for _ in range(permutations)]
        )
        p_values = {"Phi_ST": float((np.sum(sims >= phi["Phi_ST"]) + 1.0) / (permutations + 1.0))}
    else:
        regs = np.asarray(regions).astype(str)
        if regs.size != n:
            raise ValueError("regions must have one label per sample.")
        for p in np.unique(pops):
            if np.unique(regs[pops == p]).size != 1:
                raise ValueError(f"Population '{p}' spans more than one region.")
        if np.unique(regs).size < 2:
            raise ValueError("Two-level AMOVA requires at least two regions.")
        if np.unique(pops).size <= np.unique(regs).size:
            raise ValueError("Two-level AMOVA requires more populations than regions.")
        rows, sigma, phi = _two_level(d2, pops, regs)

        counts = {"Phi_ST": 0, "Phi_SC": 0, "Phi_CT": 0}
        pop_names = np.unique(pops)
        pop_region = np.array([regs[pops == p][0] for p in pop_names])
        for _ in range(permutations):
            # Phi_ST: samples anywhere.
            perm_pops = rng.permutation(n)
            counts["Phi_ST"] += _two_level(d2, pops[perm_pops], regs[perm_pops])[2]["Phi_ST"] >= phi["Phi_ST"]
            # Phi_SC: samples among populations of the same region.
            shuffled = pops.copy()
            for r in np.unique(regs):
                idx = np.where(regs == r)[0]
                shuffled[idx] = pops[rng.permutation(idx)]
            counts["Phi_SC"] += _two_level(d2, shuffled, regs)[2]["Phi_SC"] >= phi["Phi_SC"]
            # Phi_CT: whole populations among regions.
            new_region = dict(zip(pop_names, rng.permutation(pop_region)))
            regs_perm = np.array([new_region[p] for p in pops])
            counts["Phi_CT"] += _two_level(d2, pops, regs_perm)[2]["Phi_CT"] >= phi["Phi_CT"]
        p_values = {k: float((v + 1.0) / (permutations + 1.0)) for k, v in counts.items()}

    table = pd.DataFrame(rows, columns=["source", "df", "SSD", "MSD", "sigma"])
    total_sigma = table["sigma"].iloc[-1]
    table["percent"] = 100.0 * table["sigma"] / total_sigma if total_sigma else np.nan
    logger.info("AMOVA: %s", ", ".join(f"{k}={v:.4f} (p={p_values[k]:.4f})" for k, v in phi.items()))
    return AMOVAResult(table=table, sigma=sigma, phi=phi, p_values=p_values)

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Optional, Tuple

import numpy as np

from .config import HINDHE_REPS_DEFAULT, OVERDISPERSION_DEFAULT
from .io import RADData
from .likelihood import expected_alt_proportion

logger = logging.getLogger(__name__)


@dataclass
class HindHeResult:
    """Hind/He per sample and locus, with its sample and locus means."""

    matrix: np.ndarray     # (n_ind, n_snp), NaN where depth < 2 or He == 0
    by_sample: np.ndarray  # (n_ind,)
    by_locus: np.ndarray   # (n_snp,)


@dataclass
class ExpectedHindHeResult:
    """Simulated distribution of per-locus mean Hind/He (ExpectedHindHe)."""

    ploidy: int
    inbreeding: float
    per_locus: np.ndarray  # (reps, n_snp)
    mean: float
    interval: Tuple[float, float]  # central 95% of per-locus values


def nan_mean(a: np.ndarray, axis: int) -> np.ndarray:
    """Mean of finite entries along axis; NaN where there are none."""
    mask = np.isfinite(a)
    num = np.where(mask, a, 0.0).sum(axis=axis)
    den = mask.sum(axis=axis)
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(den > 0, num / np.maximum(den, 1), np.nan)


def read_allele_freq(ref: np.ndarray, alt: np.ndarray) -> np.ndarray:
    """Alt allele frequency per locus: mean read proportion over samples with reads."""
    depth = (ref + alt).astype(np.float64)
    with np.errstate(divide="ignore", invalid="ignore"):
        frac = np.where(depth > 0, alt / depth, np.nan)
    return nan_mean(frac, axis=0)


def hind_he_matrix(ref: np.ndarray, alt: np.ndarray) -> np.ndarray:
    """Hind/He for every sample x locus cell.

    Hind is the probability that two reads drawn without replacement from one
    sample carry different alleles; He is the expected heterozygosity from the
    locus allele frequency.
    """
    ref = np.asarray(ref, dtype=np.float64)
    alt = np.asarray(alt, dtype=np.float64)
    depth = ref + alt

    with np.errstate(all="ignore"):
        same = ref * (ref - 1.0) + alt * (alt - 1.0)
        hind = np.where(depth >= 2, 1.0 - same / (depth * (depth - 1.0)), np.nan)

        p = read_allele_freq(ref, alt)
        he = 2.0 * p * (1.0 - p)
        he = np.where(he > 0, he, np.nan)
        out = hind / he[None, :]
    return out


def hind_he(ra: RADData) -> HindHeResult:
    """Hind/He for a RADData set (HindHe)."""
    mat = hind_he_matrix(ra.ref, ra.alt)
    by_sample = nan_mean(mat, axis=1)
    by_locus = nan_mean(mat, axis=0)
    return HindHeResult(matrix=mat, by_sample=by_sample, by_locus=by_locus)


def expected_hind_he(ploidy, inbreeding=0.0):
    """Expected Hind/He under HWE with inbreeding F: (1 - 1/ploidy)(1 - F)."""
    ploidy = np.asarray(ploidy, dtype=np.float64)
    return (1.0 - 1.0 / ploidy) * (1.0 - np.asarray(inbreeding, dtype=np.float64))


def inbreeding_from_hind_he(hindhe, ploidy):
    """Invert expected_hind_he: F = 1 - Hind/He * ploidy / (ploidy - 1)."""
    ploidy = np.asarray(ploidy, dtype=np.float64)
    if np.any(ploidy < 2):
        raise ValueError("Inbreeding from Hind/He requires ploidy >= 2.")
    return 1.0 - np.asarray(hindhe, dtype=np.float64) * ploidy / (ploidy - 1.0)


def _simulate_reads(
    depth: np.ndarray,
    p: np.ndarray,
    ploidy: int,
    inbreeding: float,
    overdispersion: Optional[float],
    contam_rate: float,
    rng: np.random.Generator,
) -> Tuple[np.ndarray, np.ndarray]:
    n_ind, n_snp = depth.shape
    p_mat = np.broadcast_to(p[None, :], (n_ind, n_snp))

    # Inbred cells are fully autozygous; the rest follow HWE.
    autozygous = rng.random((n_ind, n_snp)) < inbreeding
    hwe_dose = rng.binomial(ploidy, p_mat)
    auto_dose = ploidy * (rng.random((n_ind, n_snp)) < p_mat)
    dose = np.where(autozygous, auto_dose, hwe_dose)

    q_all = expected_alt_proportion(ploidy, p, contam_rate, error_rate=0.0)  # (n_snp, ploidy+1)
    q = np.take_along_axis(
        np.broadcast_to(q_all[None, :, :], (n_ind, n_snp, ploidy + 1)),
        dose[:, :, None],
        axis=2,
    )[:, :, 0]
    q = np.clip(q, 1e-9, 1.0 - 1e-9)
    if overdispersion and np.isfinite(overdispersion):
        q = rng.beta(q * overdispersion, (1.0 - q) * overdispersion)
    alt = rng.binomial(depth, q)
    return depth - alt, alt


def simulate_expected_hind_he(
    ra: RADData,
    ploidy: int = 2,
    inbreeding: float = 0.0,
    overdispersion: float = OVERDISPERSION_DEFAULT,
    contam_rate: Optional[float] = None,
    reps: int = HINDHE_REPS_DEFAULT,
    seed: Optional[int] = None,
) -> ExpectedHindHeResult:
    """Simulate per-locus Hind/He at the observed depths and allele frequencies.

    Gives the distribution of locus Hind/He expected for well-behaved loci,
    from which locus filtering thresholds can be taken.
    """
    if ploidy < 2:
        raise ValueError("Expected Hind/He requires ploidy >= 2.")
    if not 0.0 <= inbreeding <= 1.0:
        raise ValueError("inbreeding must be in [0, 1].")
    if reps < 1:
        raise ValueError("reps must be at least 1.")
    if contam_rate is None:
        contam_rate = ra.contam_rate

    rng = np.random.default_rng(seed)
    depth = ra.depth.astype(np.int64)
    p = read_allele_freq(ra.ref, ra.alt)
    p = np.where(np.isfinite(p), p, 0.0)

    per_locus = np.full((reps, ra.n_snp), np.nan, dtype=np.float64)
    for r in range(reps):
        ref_sim, alt_sim = _simulate_reads(
            depth, p, ploidy, inbreeding, overdispersion, contam_rate, rng
        )
        sim_ra = replace(ra, ref=ref_sim.astype(np.int32), alt=alt_sim.astype(np.int32))
        per_locus[r, :] = hind_he(sim_ra).by_locus

    finite = per_locus[np.isfinite(per_locus)]
    if finite.size == 0:
        mean = float("nan")
        interval = (float("nan"), float("nan"))
    else:
        mean = float(finite.mean())
        lo, hi = np.quantile(finite, [0.025, 0.975])
        interval = (float(lo), float(hi))
    logger.info(
        "Expected Hind/He (ploidy=%d, F=%.3f): mean %.4f, 95%% of loci in [%.4f, %.4f]",
        ploidy, inbreeding, mean, interval[0], interval[1],
    )
    return ExpectedHindHeResult(
        ploidy=int(ploidy),
        inbreeding=float(inbreeding),
        per_locus=per_locus,
        mean=mean,
        interval=interval,
    )

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
from scipy.special import logsumexp
from scipy.stats import binom

from .config import (
    CALL_MODES,
    ERROR_RATE_DEFAULT,
    MAX_ITER_DEFAULT,
    MIN_FREQ_DEFAULT,
    OVERDISPERSION_DEFAULT,
    TOL_DEFAULT,
)
from .hindhe import read_allele_freq
from .io import RADData
from .likelihood import (
    expected_alt_proportion,
    genotype_log_likelihoods,
    loglik_betabinom,
    make_read_model,
)
from .structure import pca

logger = logging.getLogger(__name__)

# Cap on PCs used to model allele-frequency structure when n_pc is not given.
MAX_STRUCTURE_PCS = 10


@dataclass
class GenotypeCalls:
    """Posterior genotype probabilities for every sample x locus.

    posterior[i, s, k] is the probability that sample i carries k copies of
    the alt allele at locus s; k runs to the largest ploidy in the set and
    is zero beyond each sample's own ploidy.
    """

    sample_ids: List[str]
    chrom: np.ndarray
    pos: np.ndarray
    ploidy: np.ndarray        # (n_ind,)
    posterior: np.ndarray     # (n_ind, n_snp, max_ploidy + 1)
    allele_freq: np.ndarray   # (n_snp,) or (n_ind, n_snp), alt allele
    mode: str
    n_iter: int = 1
    converged: bool = True

    @property
    def n_ind(self) -> int:
        return int(self.posterior.shape[0])

    @property
    def n_snp(self) -> int:
        return int(self.posterior.shape[1])

    @property
    def locus_names(self) -> List[str]:
        return [f"{c}_{p}" for c, p in zip(self.chrom, self.pos)]


@dataclass
class OverdispersionResult:
    candidates: np.ndarray
    loglik: np.ndarray
    best: float


def uniform_priors(ploidy: np.ndarray, n_snp: int) -> np.ndarray:
    """Even prior over dosages 0..ploidy for each sample."""
    ploidy = np.asarray(ploidy, dtype=np.int32)
    max_ploidy = int(ploidy.max())
    k = np.arange(max_ploidy + 1)
    valid = k[None, :] <= ploidy[:, None]  # (n_ind, K+1)
    pri = valid / (ploidy[:, None] + 1.0)
    return np.broadcast_to(pri[:, None, :], (ploidy.size, n_snp, max_ploidy + 1)).copy()


def hwe_priors(
    allele_freq: np.ndarray,
    ploidy: np.ndarray,
    inbreeding: float = 0.0,
) -> np.ndarray:
    """Hardy-Weinberg dosage priors, optionally with inbreeding.

    allele_freq is (n_snp,) for one population or (n_ind, n_snp) for
    per-sample frequencies. With inbreeding F, a fraction F of the prior
    mass is on the two fully homozygous dosages.
    """
    ploidy = np.asarray(ploidy, dtype=np.int32)
    n_ind = ploidy.size
    p = np.asarray(allele_freq, dtype=np.float64)
    if p.ndim == 1:
        p = np.broadcast_to(p[None, :], (n_ind, p.shape[0]))
    if p.shape[0] != n_ind:
        raise ValueError("allele_freq rows must match the number of samples.")
    n_snp = p.shape[1]
    max_ploidy = int(ploidy.max())

    pri = np.zeros((n_ind, n_snp, max_ploidy + 1), dtype=np.float64)
    for pl in np.unique(ploidy):
        rows = np.where(ploidy == pl)[0]
        k = np.arange(int(pl) + 1)
        p_sub = p[rows][:, :, None]
        block = (1.0 - inbreeding) * binom.pmf(k[None, None, :], int(pl), p_sub)
        block[:, :, 0] += inbreeding * (1.0 - p_sub[:, :, 0])
        block[:, :, int(pl)] += inbreeding * p_sub[:, :, 0]
        pri[rows, :, : int(pl) + 1] = block
    return pri


def posterior_from(prior: np.ndarray, loglik: np.ndarray) -> np.ndarray:
    """Normalise prior x likelihood over the dosage axis."""
    with np.errstate(divide="ignore"):
        logpost = np.log(prior) + loglik
    norm = logsumexp(logpost, axis=2, keepdims=True)
    with np.errstate(invalid="ignore"):
        post = np.exp(logpost - norm)
    post[~np.isfinite(post)] = 0.0
    return post


def _mean_dosage(posterior: np.ndarray, ploidy: np.ndarray) -> np.ndarray:
    k = np.arange(posterior.shape[2], dtype=np.float64)
    return (posterior * k[None, None, :]).sum(axis=2) / np.asarray(ploidy, dtype=np.float64)[:, None]


def posterior_mean_dosage(calls: GenotypeCalls) -> np.ndarray:
    """Posterior mean alt-allele dosage scaled to [0, 1] (weighted mean genotypes)."""
    return _mean_dosage(calls.posterior, calls.ploidy)


def most_probable_genotypes(calls: GenotypeCalls, min_prob: float = 0.0) -> np.ndarray:
    """Most probable dosage per sample x locus; -1 where below min_prob."""
    best = np.argmax(calls.posterior, axis=2)
    if min_prob > 0.0:
        best = np.where(calls.posterior.max(axis=2) >= min_prob, best, -1)
    return best.astype(np.int32)


def _population_freq(posterior: np.ndarray, ploidy: np.ndarray, min_freq: float) -> np.ndarray:
    k = np.arange(posterior.shape[2], dtype=np.float64)
    copies = (posterior * k[None, None, :]).sum(axis=2).sum(axis=0)
    p = copies / float(np.sum(ploidy))
    return np.clip(p, min_freq, 1.0 - min_freq)


def _initial_freq(ra: RADData, min_freq: float) -> np.ndarray:
    p = read_allele_freq(ra.ref, ra.alt)
    p = np.where(np.isfinite(p), p, 0.5)
    return np.clip(p, min_freq, 1.0 - min_freq)


def call_naive(
    ra: RADData,
    overdispersion: Optional[float] = OVERDISPERSION_DEFAULT,
    error_rate: float = ERROR_RATE_DEFAULT,
    min_freq: float = MIN_FREQ_DEFAULT,
) -> GenotypeCalls:
    """Genotype posteriors under an even prior (no population information)."""
    read_model = make_read_model("bb" if overdispersion else "binom", overdispersion)
    p = _initial_freq(ra, min_freq)
    ll = genotype_log_likelihoods(
        ra.ref, ra.alt, ra.ploidy, p, read_model, ra.contam_rate, error_rate
    )
    post = posterior_from(uniform_priors(ra.ploidy, ra.n_snp), ll)
    return GenotypeCalls(
        sample_ids=list(ra.sample_ids),
        chrom=ra.chrom,
        pos=ra.pos,
        ploidy=ra.ploidy.copy(),
        posterior=post,
        allele_freq=p,
        mode="naive",
    )


def call_hwe(
    ra: RADData,
    inbreeding: float = 0.0,
    overdispersion: Optional[float] = OVERDISPERSION_DEFAULT,
    error_rate: float = ERROR_RATE_DEFAULT,
    min_freq: float = MIN_FREQ_DEFAULT,
    tol: float = TOL_DEFAULT,
    max_iter: int = MAX_ITER_DEFAULT,
) -> GenotypeCalls:
    """Iterate HWE priors from one population-wide allele frequency per locus.

    Allele frequencies are re-estimated from posterior mean dosages until the
    largest change is below tol.
    """
    if not 0.0 <= inbreeding <= 1.0:
        raise ValueError("inbreeding must be in [0, 1].")
    if max_iter < 1:
        raise ValueError("max_iter must be at least 1.")
    read_model = make_read_model("bb" if overdispersion else "binom", overdispersion)
    p = _initial_freq(ra, min_freq)

    converged = False
    it = 0
    post = None
    while it < max_iter:
        it += 1
        ll = genotype_log_likelihoods(
            ra.ref, ra.alt, ra.ploidy, p, read_model, ra.contam_rate, error_rate
        )
        post = posterior_from(hwe_priors(p, ra.ploidy, inbreeding), ll)
        p_new = _population_freq(post, ra.ploidy, min_freq)
        delta = float(np.max(np.abs(p_new - p))) if p.size else 0.0
        p = p_new
        logger.debug("HWE iteration %d: max allele freq change %.3g", it, delta)
        if delta < tol:
            converged = True
            break

    if converged:
        logger.info("HWE genotype calling converged after %d iterations", it)
    else:
        logger.warning("HWE genotype calling did not converge in %d iterations", max_iter)

    return GenotypeCalls(
        sample_ids=list(ra.sample_ids),
        chrom=ra.chrom,
        pos=ra.pos,
        ploidy=ra.ploidy.copy(),
        posterior=post,
        allele_freq=p,
        mode="hwe",
        n_iter=it,
        converged=converged,
    )


def _broken_stick_npc(var_explained: np.ndarray) -> int:
    """Number of leading PCs explaining more variance than the broken-stick model."""
    m = var_explained.size
    stick = np.array([np.sum(1.0 / np.arange(k, m + 1)) / m for k in range(1, m + 1)])
    above = var_explained > stick
    if not above[0]:
        return 1
    return int(np.argmin(above)) if not above.all() else m


def structure_allele_freqs(
    dosage: np.ndarray,
    n_pc: Optional[int] = None,
    min_freq: float = MIN_FREQ_DEFAULT,
) -> tuple[np.ndarray, int]:
    """Per-sample allele frequencies predicted from genotype PCs.

    Each locus's dosage is regressed on the leading PC scores (with
    intercept); the fitted values become that sample's allele frequencies.
    """
    n_ind = dosage.shape[0]
    max_pc = max(1, min(MAX_STRUCTURE_PCS, n_ind - 2))
    res = pca(dosage, n_pc=max_pc)
    if n_pc is None:
        k = _broken_stick_npc(res.var_explained)
    else:
        k = n_pc
    k = int(max(1, min(k, res.scores.shape[1])))

    design = np.column_stack([np.ones(n_ind), res.scores[:, :k]])
    coef, *_ = np.linalg.lstsq(design, dosage, rcond=None)
    fitted = design @ coef
    return np.clip(fitted, min_freq, 1.0 - min_freq), k


def call_pop_struct(
    ra: RADData,
    n_pc: Optional[int] = None,
    overdispersion: Optional[float] = OVERDISPERSION_DEFAULT,
    error_rate: float = ERROR_RATE_DEFAULT,
    min_freq: float = MIN_FREQ_DEFAULT,
    tol: float = TOL_DEFAULT,
    max_iter: int = MAX_ITER_DEFAULT,
) -> GenotypeCalls:
    """Population-structure-aware iterative calling (IteratePopStruct).

    Starts from HWE posteriors, then repeatedly runs PCA on the posterior mean
    dosages, predicts per-sample allele frequencies from the PCs, and uses
    them as per-sample HWE priors until the frequencies stop changing.
    """
    if ra.n_ind < 3:
        raise ValueError("Population-structure calling needs at least 3 samples.")
    if max_iter < 1:
        raise ValueError("max_iter must be at least 1.")
    read_model = make_read_model("bb" if overdispersion else "binom", overdispersion)
    p_pop = _initial_freq(ra, min_freq)

    ll = genotype_log_likelihoods(
        ra.ref, ra.alt, ra.ploidy, p_pop, read_model, ra.contam_rate, error_rate
    )
    post = posterior_from(hwe_priors(p_pop, ra.ploidy), ll)
    p_ind = np.broadcast_to(p_pop[None, :], (ra.n_ind, ra.n_snp)).copy()

    converged = False
    it = 0
    while it < max_iter:
        it += 1
        dosage = _mean_dosage(post, ra.ploidy)
        p_new, k = structure_allele_freqs(dosage, n_pc=n_pc, min_freq=min_freq)

        # Contamination comes from the whole pool, so the likelihood keeps
        # the population-wide frequency.
        p_pop = _population_freq(post, ra.ploidy, min_freq)
        ll = genotype_log_likelihoods(
            ra.ref, ra.alt, ra.ploidy, p_pop, read_model, ra.contam_rate, error_rate
        )
        post = posterior_from(hwe_priors(p_new, ra.ploidy), ll)

        delta = float(np.max(np.abs(p_new - p_ind))) if p_new.size else 0.0
        p_ind = p_new
        logger.debug(
            "PopStruct iteration %d: %d PCs, max allele freq change %.3g", it, k, delta
        )
        if delta < tol:
            converged = True
            break

    if converged:
        logger.info("PopStruct genotype calling converged after %d iterations", it)
    else:
        logger.warning(
            "PopStruct genotype calling did not converge in %d iterations", max_iter
        )

    return GenotypeCalls(
        sample_ids=list(ra.sample_ids),
        chrom=ra.chrom,
        pos=ra.pos,
        ploidy=ra.ploidy.copy(),
        posterior=post,
        allele_freq=p_ind,
        mode="popstruct",
        n_iter=it,
        converged=converged,
    )


_COMMON_OPTIONS = {"overdispersion", "error_rate", "min_freq"}
_MODE_OPTIONS = {
    "naive": _COMMON_OPTIONS,
    "hwe": _COMMON_OPTIONS | {"inbreeding", "tol", "max_iter"},
    "popstruct": _COMMON_OPTIONS | {"n_pc", "tol", "max_iter"},
}


def call_genotypes(ra: RADData, mode: str = "popstruct", **kwargs) -> GenotypeCalls:
    """Dispatch to call_pop_struct, call_hwe or call_naive."""
    mode = mode.lower()
    if mode not in CALL_MODES:
        raise ValueError(f"Unknown genotype calling mode '{mode}' (expected one of {CALL_MODES}).")
    ignored = sorted(set(kwargs) - _MODE_OPTIONS[mode])
    if ignored:
        logger.debug("Options %s do not apply to mode %s", ignored, mode)
    kwargs = {k: v for k, v in kwargs.items() if k in _MODE_OPTIONS[mode]}
    logger.info("Calling genotypes (%s) for %d samples x %d loci", mode, ra.n_ind, ra.n_snp)
    if mode == "popstruct":
        return call_pop_struct(ra, **kwargs)
    if mode == "hwe":
        return call_hwe(ra, **kwargs)
    return call_naive(ra, **kwargs)


def estimate_overdispersion(
    ra: RADData,
    calls: GenotypeCalls,
    candidates: Optional[Sequence[float]] = None,
    min_prob: float = 0.95,
    error_rate: float = ERROR_RATE_DEFAULT,
) -> OverdispersionResult:
    """Pick the beta-binomial overdispersion that best explains confident calls.

    For each candidate value, sums the beta-binomial log-likelihood of the
    observed reads given the expected read proportion of each confidently
    called genotype (TestOverdispersion).
    """
    if candidates is None:
        candidates = np.arange(2.0, 21.0)
    candidates = np.asarray(candidates, dtype=np.float64)
    if np.any(candidates <= 0):
        raise ValueError("overdispersion candidates must be positive.")
    if ra.sample_ids != calls.sample_ids or ra.n_snp != calls.n_snp:
        raise ValueError("RADData and GenotypeCalls must describe the same samples and loci.")

    called = most_probable_genotypes(calls, min_prob=min_prob)
    depth = ra.depth
    use = (called >= 0) & (depth > 0)
    if not use.any():
        raise ValueError("No confidently called genotypes with reads to test.")

    p_pop = calls.allele_freq if calls.allele_freq.ndim == 1 else calls.allele_freq.mean(axis=0)
    q = np.zeros(called.shape, dtype=np.float64)
    for pl in np.unique(ra.ploidy):
        rows = np.where(ra.ploidy == pl)[0]
        q_all = expected_alt_proportion(int(pl), p_pop, ra.contam_rate, error_rate)
        dose = np.clip(called[rows], 0, int(pl))
        q[rows] = np.take_along_axis(
            np.broadcast_to(q_all[None, :, :], (rows.size,) + q_all.shape),
            dose[:, :, None],
            axis=2,
        )[:, :, 0]

    alt = ra.alt[use].astype(np.float64)
    dep = depth[use].astype(np.float64)
    qq = q[use]
    loglik = np.array(
        [float(np.sum(np.asarray(loglik_betabinom(alt, dep, qq, od)))) for od in candidates]
    )
    best = float(candidates[int(np.argmax(loglik))])
    logger.info("Best overdispersion parameter: %g", best)
    return OverdispersionResult(candidates=candidates, loglik=loglik, best=best)

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Tuple

import numpy as np

from .config import MAF_THRESH_DEFAULT, SAMPDEPTH_THRESH_DEFAULT, SNPDEPTH_THRESH_DEFAULT
from .hindhe import hind_he
from .io import RADData, select_samples, select_snps

logger = logging.getLogger(__name__)


@dataclass
class QCResult:
    """Outputs of a filtering step."""

    # masks into the input RADData
    keep_ind: np.ndarray  # shape (n_ind,), bool
    keep_snp: np.ndarray  # shape (n_snp,), bool

    # filtered data and alt allele frequencies of the kept loci
    ra: RADData
    p: np.ndarray  # (n_snp_keep,)


def reads_to_dosage(
    ref: np.ndarray,
    alt: np.ndarray,
    ploidy: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    """Hard dosage calls from read proportions.

    Returns:
        depth: (n_ind, n_snp) float32
        dosage: (n_ind, n_snp) float32 alt-allele copies, NaN where depth == 0.
    """
    ref = ref.astype(np.float32, copy=False)
    alt = alt.astype(np.float32, copy=False)
    depth = ref + alt
    ploidy = np.asarray(ploidy, dtype=np.float32)[:, None]

    with np.errstate(divide="ignore", invalid="ignore"):
        frac_alt = np.where(depth > 0, alt / depth, np.nan)
        dosage = np.round(frac_alt * ploidy)
    return depth.astype(np.float32), dosage.astype(np.float32)


def calcp_alleles(depth_ref: np.ndarray, depth_alt: np.ndarray) -> np.ndarray:
    """Alt allele frequency from pooled read counts (pmethod='A')."""
    num = depth_alt.sum(axis=0, dtype=np.float64)
    den = (depth_ref + depth_alt).sum(axis=0, dtype=np.float64)
    with np.errstate(divide="ignore", invalid="ignore"):
        p = num / den
    p[~np.isfinite(p)] = np.nan
    return p


def calcp_genotypes(dosage: np.ndarray, ploidy: np.ndarray) -> np.ndarray:
    """Alt allele frequency from hard calls (pmethod='G')."""
    mask = ~np.isnan(dosage)
    num = np.nansum(dosage, axis=0, dtype=np.float64)
    den = (mask * np.asarray(ploidy, dtype=np.float64)[:, None]).sum(axis=0)
    with np.errstate(divide="ignore", invalid="ignore"):
        p = num / den
    p[~np.isfinite(p)] = np.nan
    return p


def _allele_freq(ra: RADData, pmethod: str) -> np.ndarray:
    if pmethod.upper() == "A":
        return calcp_alleles(ra.ref, ra.alt)
    _, dosage = reads_to_dosage(ra.ref, ra.alt, ra.ploidy)
    return calcp_genotypes(dosage, ra.ploidy)


def run_qc(
    ra: RADData,
    sampdepth_thresh: float = SAMPDEPTH_THRESH_DEFAULT,
    snpdepth_thresh: float = SNPDEPTH_THRESH_DEFAULT,
    maf_thresh: float = MAF_THRESH_DEFAULT,
    pmethod: str = "A",
) -> QCResult:
    """Iterative read-depth filtering of samples and loci.

    - remove samples with max depth 0 or 1, or mean depth < sampdepth_thresh
    - compute allele frequencies p
    - remove loci with MAF < maf_thresh or mean depth < snpdepth_thresh
    - iterate until stable
    """
    ref = ra.ref.astype(np.float32, copy=False)
    alt = ra.alt.astype(np.float32, copy=False)

    n_ind, n_snp = ref.shape
    keep_ind = np.ones(n_ind, dtype=bool)
    keep_snp = np.ones(n_snp, dtype=bool)

    changed = True
    while changed and keep_ind.any() and keep_snp.any():
        changed = False

        ref_sub = ref[keep_ind][:, keep_snp]
        alt_sub = alt[keep_ind][:, keep_snp]
        depth_sub = ref_sub + alt_sub

        # Sample QC
        sampdepth_max = depth_sub.max(axis=1)
        sampdepth_mean = depth_sub.mean(axis=1)

        drop_ind = (sampdepth_max <= 1) | (sampdepth_mean < sampdepth_thresh)
        if drop_ind.any():
            changed = True
            drop_idx = np.where(keep_ind)[0][drop_ind]
            keep_ind[drop_idx] = False
            logger.debug("QC: dropping %d samples", drop_idx.size)
            continue  # recompute on updated masks

        # Locus QC
        sub = select_snps(select_samples(ra, keep_ind), keep_snp)
        p_sub = _allele_freq(sub, pmethod)

        maf = np.minimum(p_sub, 1.0 - p_sub)
        snpdepth = depth_sub.mean(axis=0)
        drop_snp = (maf < maf_thresh) | (snpdepth < snpdepth_thresh) | np.isnan(maf)
        if drop_snp.any():
            changed = True
            drop_idx = np.where(keep_snp)[0][drop_snp]
            keep_snp[drop_idx] = False
            logger.debug("QC: dropping %d loci", drop_idx.size)

    if not keep_ind.any() or not keep_snp.any():
        raise ValueError("Depth QC removed every sample or every locus.")

    ra_final = select_snps(select_samples(ra, keep_ind), keep_snp)
    logger.info(
        "Depth QC kept %d/%d samples and %d/%d loci",
        keep_ind.sum(), n_ind, keep_snp.sum(), n_snp,
    )
    return QCResult(
        keep_ind=keep_ind,
        keep_snp=keep_snp,
        ra=ra_final,
        p=_allele_freq(ra_final, pmethod),
    )


def filter_samples_hindhe(
    ra: RADData,
    lower: float,
    upper: float,
    relative: bool = True,
) -> QCResult:
    """Keep samples whose mean Hind/He lies within [lower, upper].

    With relative=True the bounds are multiples of each sample's expected
    Hind/He (1 - 1/ploidy), so mixed-ploidy sets share one threshold.
    """
    if upper <= lower:
        raise ValueError("upper must be greater than lower.")
    hh = hind_he(ra).by_sample
    if relative:
        hh = hh / (1.0 - 1.0 / np.maximum(ra.ploidy, 2))
    with np.errstate(invalid="ignore"):
        keep_ind = (hh >= lower) & (hh <= upper)
    if not keep_ind.any():
        raise ValueError("Hind/He filtering removed every sample.")
    logger.info(
        "Hind/He sample filter kept %d/%d samples", keep_ind.sum(), ra.n_ind
    )
    kept = select_samples(ra, keep_ind)
    return QCResult(
        keep_ind=keep_ind,
        keep_snp=np.ones(ra.n_snp, dtype=bool),
        ra=kept,
        p=calcp_alleles(kept.ref, kept.alt),
    )


def filter_loci_hindhe(ra: RADData, lower: float, upper: float) -> QCResult:
    """Keep loci whose mean Hind/He lies within [lower, upper].

    Bounds usually come from simulate_expected_hind_he(...).interval; loci
    above the range are likely paralogs, loci below it likely mis-merged or
    affected by null alleles.
    """
    if upper <= lower:
        raise ValueError("upper must be greater than lower.")
    hh = hind_he(ra).by_locus
    with np.errstate(invalid="ignore"):
        keep_snp = (hh >= lower) & (hh <= upper)
    if not keep_snp.any():
        raise ValueError("Hind/He filtering removed every locus.")
    logger.info("Hind/He locus filter kept %d/%d loci", keep_snp.sum(), ra.n_snp)
    kept = select_snps(ra, keep_snp)
    return QCResult(
        keep_ind=np.ones(ra.n_ind, dtype=bool),
        keep_snp=keep_snp,
        ra=kept,
        p=calcp_alleles(kept.ref, kept.alt),
    )


def remove_monomorphic(ra: RADData, min_freq: float = 0.0) -> QCResult:
    """Drop loci whose read-based minor allele frequency is <= min_freq."""
    p = calcp_alleles(ra.ref, ra.alt)
    maf = np.minimum(p, 1.0 - p)
    with np.errstate(invalid="ignore"):
        keep_snp = maf > min_freq
    kept = select_snps(ra, keep_snp)
    logger.info("Removed %d monomorphic loci", (~keep_snp).sum())
    return QCResult(
        keep_ind=np.ones(ra.n_ind, dtype=bool),
        keep_snp=keep_snp,
        ra=kept,
        p=p[keep_snp],
    )

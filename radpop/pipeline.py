from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Optional

import numpy as np
import pandas as pd

from . import plots
from .amova import AMOVAResult, amova
from .config import PipelineConfig
from .export import export_structure, write_dosage_csv
from .genotyping import GenotypeCalls, call_genotypes, posterior_mean_dosage
from .hindhe import (
    ExpectedHindHeResult,
    expected_hind_he,
    hind_he,
    inbreeding_from_hind_he,
    simulate_expected_hind_he,
)
from .io import RADData, read_depth_data, select_samples, with_ploidy
from .metadata import (
    ACCESSION_COL,
    LAT_COL,
    LON_COL,
    PLOIDY_COL,
    POP_COL,
    REGION_COL,
    add_columns,
    align_metadata,
    assert_aligned,
    load_boundaries,
    load_sample_metadata,
)
from .popgen import PopDiffResult, calc_pop_diff, population_allele_counts, population_allele_freqs
from .qc import filter_loci_hindhe, filter_samples_hindhe, remove_monomorphic, run_qc
from .spatial import (
    RandTestResult,
    SPCAResult,
    connection_network,
    euclidean_distance,
    great_circle_distance,
    mantel_test,
    spca,
    spca_tests,
)
from .structure import ClusterResult, DAPCResult, PCAResult, dapc, find_clusters, pca, umap_embedding

logger = logging.getLogger(__name__)

# PCs written to the per-sample table.
MAX_TABLE_PCS = 10


@dataclass
class PipelineResult:
    """Everything produced by run_pipeline."""

    ra: RADData
    samples: pd.DataFrame
    calls: GenotypeCalls
    dosage: np.ndarray
    pca: PCAResult
    clusters: ClusterResult
    expected_hindhe: Optional[ExpectedHindHeResult] = None
    dapc: Optional[DAPCResult] = None
    umap: Optional[np.ndarray] = None
    spca: Optional[SPCAResult] = None
    spca_global: Optional[RandTestResult] = None
    spca_local: Optional[RandTestResult] = None
    mantel: Optional[RandTestResult] = None
    amova: Optional[AMOVAResult] = None
    diff: Optional[PopDiffResult] = None
    outputs: Dict[str, Path] = field(default_factory=dict)


def _out(config: PipelineConfig, suffix: str) -> Path:
    path = Path(f"{config.prefix}.{suffix}")
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def _load(config: PipelineConfig):
    ra = read_depth_data(config.depth_path, ploidy=config.ploidy)
    ra = replace(ra, contam_rate=config.contam_rate)
    if config.metadata_path is None:
        meta = pd.DataFrame({ACCESSION_COL: ra.sample_ids})
        return ra, meta

    meta = align_metadata(load_sample_metadata(config.metadata_path), ra.sample_ids, drop_missing=True)
    if meta.shape[0] < ra.n_ind:
        have = set(meta[ACCESSION_COL])
        ra = select_samples(ra, np.array([s in have for s in ra.sample_ids]))
    assert_aligned(meta, ra.sample_ids)
    if PLOIDY_COL in meta.columns:
        ra = with_ploidy(ra, meta[PLOIDY_COL].to_numpy())
    return ra, meta


def _has_coords(meta: pd.DataFrame) -> bool:
    if LAT_COL not in meta.columns or LON_COL not in meta.columns:
        return False
    return bool(np.isfinite(meta[LAT_COL].to_numpy(dtype=float)).all()
                and np.isfinite(meta[LON_COL].to_numpy(dtype=float)).all())


def _sample_inbreeding(hindhe: np.ndarray, ploidy: np.ndarray) -> np.ndarray:
    F = np.full(hindhe.shape, np.nan)
    ok = ploidy >= 2
    if ok.any():
        F[ok] = inbreeding_from_hind_he(hindhe[ok], ploidy[ok])
    return F


def run_pipeline(config: PipelineConfig) -> PipelineResult:
    """Load, filter, call genotypes and run the multivariate and spatial analyses.

    Steps:
      1. read depths and metadata, align metadata to the samples
      2. depth QC, then Hind/He sample filtering (relative to expected)
      3. optional locus filtering against simulated expected Hind/He
      4. genotype calling in config.mode and posterior mean dosages
      5. PCA, cluster search, DAPC, optional UMAP
      6. sPCA with global/local tests and a Mantel test when coordinates exist
      7. AMOVA and differentiation when a population column exists
      8. Structure export, dosage table and the per-sample results table
    """
    outputs: Dict[str, Path] = {}
    ra, meta = _load(config)
    logger.info("Loaded %d samples x %d loci", ra.n_ind, ra.n_snp)

    # ---------- Filtering ----------
    qc = run_qc(ra, config.sampdepth_thresh, config.snpdepth_thresh, config.maf_thresh)
    ra = qc.ra
    meta = meta.loc[qc.keep_ind].reset_index(drop=True)

    hh_all = hind_he(ra).by_sample
    depth_all = ra.depth.mean(axis=1)
    ploidy_all = ra.ploidy.copy()
    lo, hi = config.hindhe_sample_bounds
    filt = filter_samples_hindhe(ra, lo, hi, relative=True)
    ra = filt.ra
    meta = meta.loc[filt.keep_ind].reset_index(drop=True)
    hh = hind_he(ra).by_sample
    inbreeding = _sample_inbreeding(hh, ra.ploidy)

    expected = None
    if config.hindhe_locus_filter:
        pl_vals, pl_counts = np.unique(ra.ploidy, return_counts=True)
        main_ploidy = int(pl_vals[np.argmax(pl_counts)])
        F = float(np.clip(np.nanmedian(inbreeding), 0.0, 1.0)) if np.isfinite(inbreeding).any() else 0.0
        expected = simulate_expected_hind_he(
            ra,
            ploidy=max(main_ploidy, 2),
            inbreeding=F,
            overdispersion=config.overdispersion,
            reps=config.hindhe_reps,
            seed=config.seed,
        )
        ra = filter_loci_hindhe(ra, *expected.interval).ra
    ra = remove_monomorphic(ra).ra

    # ---------- Genotype calling ----------
    calls = call_genotypes(
        ra,
        mode=config.mode,
        overdispersion=config.overdispersion,
        error_rate=config.error_rate,
        tol=config.tol,
        max_iter=config.max_iter,
        n_pc=config.n_pc,
    )
    dosage = posterior_mean_dosage(calls)
    write_dosage_csv(calls, _out(config, "dosage.csv"))
    outputs["dosage"] = _out(config, "dosage.csv")

    # ---------- Multivariate ----------
    pca_res = pca(dosage, perc_pca=config.perc_pca)
    clusters = find_clusters(pca_res.scores, max_k=config.max_k, seed=config.seed)
    cluster_labels = np.array([f"cluster{c + 1}" for c in clusters.labels])

    has_pops = POP_COL in meta.columns
    groups = meta[POP_COL].to_numpy() if has_pops else cluster_labels
    dapc_res = None
    if np.unique(groups).size >= 2:
        dapc_res = dapc(dosage, groups, ra.sample_ids, perc_pca=config.perc_pca)
        dapc_df = pd.DataFrame({"accession": dapc_res.sample_ids, "group": dapc_res.groups})
        for j in range(dapc_res.lda_scores.shape[1]):
            dapc_df[f"LD{j + 1}"] = dapc_res.lda_scores[:, j]
        dapc_df["assignment"] = dapc_res.assignment
        dapc_df.to_csv(_out(config, "dapc.csv"), index=False)
        outputs["dapc"] = _out(config, "dapc.csv")
    else:
        logger.warning("Only one group present; skipping DAPC")

    umap_xy = None
    if config.umap:
        umap_xy = umap_embedding(pca_res.scores, seed=config.seed)

    # ---------- Spatial ----------
    spca_res = glob = loc = mantel = None
    if _has_coords(meta) and ra.n_ind >= 3:
        lat = meta[LAT_COL].to_numpy(dtype=float)
        lon = meta[LON_COL].to_numpy(dtype=float)
        W = connection_network(lat, lon, kind="knn", k=min(config.knn, ra.n_ind - 1))
        spca_res = spca(dosage, W, nfposi=2, nfnega=1)
        glob, loc = spca_tests(dosage, W, permutations=config.permutations, seed=config.seed)
        mantel = mantel_test(
            euclidean_distance(dosage),
            great_circle_distance(lat, lon),
            permutations=config.permutations,
            seed=config.seed,
        )

    # ---------- Populations ----------
    amova_res = diff = None
    if has_pops and np.unique(groups).size >= 2:
        regions = None
        if REGION_COL in meta.columns:
            n_reg = meta[REGION_COL].nunique()
            if 2 <= n_reg < np.unique(groups).size:
                regions = meta[REGION_COL].to_numpy()
        amova_res = amova(dosage, groups, regions, permutations=config.permutations, seed=config.seed)
        amova_res.table.to_csv(_out(config, "amova.csv"), index=False)
        outputs["amova"] = _out(config, "amova.csv")

        freqs = population_allele_freqs(dosage, groups, ra.ploidy, calls.locus_names)
        sizes = population_allele_counts(dosage, groups, ra.ploidy, calls.locus_names)
        diff = calc_pop_diff(freqs, metric="Jost's D", pairwise=True, sizes=sizes)
        diff.pairwise.to_csv(_out(config, "diff.csv"))
        outputs["diff"] = _out(config, "diff.csv")

    structure_path = _out(config, "structure.txt")
    export_structure(calls, structure_path, populations=groups)
    outputs["structure"] = structure_path

    # ---------- Per-sample table ----------
    cols = {
        "ploidy": ra.ploidy,
        "HindHe": hh,
        "inbreeding": inbreeding,
        "cluster": cluster_labels,
    }
    for j in range(min(pca_res.n_pc, MAX_TABLE_PCS)):
        cols[f"PC{j + 1}"] = pca_res.scores[:, j]
    if dapc_res is not None:
        for j in range(dapc_res.lda_scores.shape[1]):
            cols[f"LD{j + 1}"] = dapc_res.lda_scores[:, j]
        cols["dapc_assignment"] = dapc_res.assignment
    if spca_res is not None:
        for j in range(spca_res.scores.shape[1]):
            cols[f"sPC{j + 1}"] = spca_res.scores[:, j]
    if umap_xy is not None:
        cols["UMAP1"] = umap_xy[:, 0]
        cols["UMAP2"] = umap_xy[:, 1]
    samples = add_columns(meta.drop(columns=[PLOIDY_COL], errors="ignore"), **cols)
    samples_path = _out(config, "samples.csv")
    samples.to_csv(samples_path, index=False)
    outputs["samples"] = samples_path
    logger.info("Wrote per-sample results to %s", samples_path)

    # ---------- Plots ----------
    if config.plots:
        color_by = POP_COL if has_pops else "cluster"
        p = _out(config, "hindhe.png")
        plots.plot_hindhe_hist(
            hh_all / expected_hind_he(np.maximum(ploidy_all, 2)),
            p,
            expected=1.0,
            bounds=config.hindhe_sample_bounds,
            title="Hind/He by sample (relative to expected)",
        )
        outputs["hindhe_plot"] = p
        p = _out(config, "hindhe_depth.png")
        plots.plot_hindhe_by_depth(hh_all, depth_all, p, labels=ploidy_all)
        outputs["hindhe_depth_plot"] = p
        if pca_res.n_pc >= 2:
            p = _out(config, "pca.png")
            plots.plot_scatter(samples, p, "PC1", "PC2", color_by=color_by, title="PCA")
            outputs["pca_plot"] = p
        if dapc_res is not None:
            p = _out(config, "dapc.png")
            plots.plot_dapc_scatter(outputs["dapc"], p)
            outputs["dapc_plot"] = p
        if umap_xy is not None:
            p = _out(config, "umap.png")
            plots.plot_scatter(samples, p, "UMAP1", "UMAP2", color_by=color_by, title="UMAP")
            outputs["umap_plot"] = p
        if spca_res is not None:
            boundaries = load_boundaries(config.boundaries_path) if config.boundaries_path else None
            p = _out(config, "spca_map.png")
            plots.plot_map(
                samples[LAT_COL], samples[LON_COL], p,
                values=spca_res.scores[:, 0],
                boundaries=boundaries,
                title="sPCA axis 1",
                value_label="sPC1",
            )
            outputs["spca_map"] = p
            p = _out(config, "spca_eigenvalues.png")
            plots.plot_spca_eigenvalues(spca_res.eigenvalues, p)
            outputs["spca_eigenvalues_plot"] = p
        if diff is not None:
            p = _out(config, "diff.png")
            plots.plot_diff_heatmap(diff.pairwise, p, metric=diff.metric)
            outputs["diff_plot"] = p

    return PipelineResult(
        ra=ra,
        samples=samples,
        calls=calls,
        dosage=dosage,
        pca=pca_res,
        clusters=clusters,
        expected_hindhe=expected,
        dapc=dapc_res,
        umap=umap_xy,
        spca=spca_res,
        spca_global=glob,
        spca_local=loc,
        mantel=mantel,
        amova=amova_res,
        diff=diff,
        outputs=outputs,
    )

from __future__ import annotations

import argparse
import logging
from dataclasses import replace
from pathlib import Path
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from . import (
    amova,
    config,
    export,
    genotyping,
    hindhe,
    io,
    merge,
    metadata,
    pipeline,
    plots,
    popgen,
    qc,
    sim,
    spatial,
    structure,
)

logger = logging.getLogger(__name__)


# ---------- Shared arguments ----------

def _add_input_args(p: argparse.ArgumentParser, need_meta: bool = False) -> None:
    p.add_argument(
        "depth",
        type=Path,
        help="Read depths: RA tab (CHROM POS sample...), VCF(.gz) with AD, or Zarr store.",
    )
    p.add_argument(
        "--metadata",
        type=Path,
        required=need_meta,
        help="Sample metadata CSV (accession, ploidy, latitude, longitude, population, region).",
    )
    p.add_argument(
        "--ploidy",
        type=int,
        default=None,
        help="Ploidy for all samples when metadata has no ploidy column (default: 2).",
    )
    p.add_argument(
        "--contam-rate",
        type=float,
        default=config.CONTAM_RATE_DEFAULT,
        help=f"Expected sample cross-contamination rate (default: {config.CONTAM_RATE_DEFAULT}).",
    )


def _add_qc_args(p: argparse.ArgumentParser, inherit: bool = False) -> None:
    p.add_argument(
        "--sampdepth-thresh",
        type=float,
        default=None if inherit else config.SAMPDEPTH_THRESH_DEFAULT,
        help=f"Sample mean depth threshold (default: {config.SAMPDEPTH_THRESH_DEFAULT}).",
    )
    p.add_argument(
        "--snpdepth-thresh",
        type=float,
        default=None if inherit else config.SNPDEPTH_THRESH_DEFAULT,
        help=f"Locus mean depth threshold (default: {config.SNPDEPTH_THRESH_DEFAULT}).",
    )
    p.add_argument(
        "--maf-thresh",
        type=float,
        default=None if inherit else config.MAF_THRESH_DEFAULT,
        help=f"Minor allele frequency threshold (default: {config.MAF_THRESH_DEFAULT}).",
    )
    p.add_argument(
        "--hindhe-bounds",
        type=float,
        nargs=2,
        metavar=("LOWER", "UPPER"),
        default=None,
        help="Keep samples whose Hind/He relative to expected lies within these bounds.",
    )


def _add_call_args(p: argparse.ArgumentParser, inherit: bool = False) -> None:
    p.add_argument(
        "--mode",
        choices=list(config.CALL_MODES),
        default=None if inherit else "popstruct",
        help="Genotype priors: popstruct (PCA-informed), hwe or naive (default: popstruct).",
    )
    p.add_argument(
        "--overdispersion",
        type=float,
        default=None if inherit else config.OVERDISPERSION_DEFAULT,
        help="Beta-binomial overdispersion; 0 for a binomial read model (default: 9).",
    )
    p.add_argument(
        "--error-rate",
        type=float,
        default=None if inherit else config.ERROR_RATE_DEFAULT,
        help=f"Per-read sequencing error rate (default: {config.ERROR_RATE_DEFAULT}).",
    )
    p.add_argument(
        "--n-pc",
        type=int,
        default=None,
        help="PCs used to model structure in popstruct mode (default: broken stick).",
    )
    p.add_argument(
        "--max-iter",
        type=int,
        default=None if inherit else config.MAX_ITER_DEFAULT,
        help=f"Maximum calling iterations (default: {config.MAX_ITER_DEFAULT}).",
    )
    p.add_argument(
        "--tol",
        type=float,
        default=None if inherit else config.TOL_DEFAULT,
        help=f"Convergence tolerance on allele frequencies (default: {config.TOL_DEFAULT}).",
    )


def _add_perm_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--permutations",
        type=int,
        default=config.PERMUTATIONS_DEFAULT,
        help=f"Permutations for significance tests (default: {config.PERMUTATIONS_DEFAULT}).",
    )
    p.add_argument("--seed", type=int, default=None, help="Random seed.")


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="radpop",
        description="Population genetics of RAD-seq read depths: Hind/He QC, genotype calling, structure and spatial analyses.",
    )
    p.add_argument("-v", "--verbose", action="count", default=0, help="More log output (-vv for debug).")
    p.add_argument("-q", "--quiet", action="store_true", help="Only log warnings and errors.")

    sub = p.add_subparsers(dest="command", required=True)

    # Hind/He per sample.
    hh = sub.add_parser("hindhe", help="Hind/He per sample (and optionally per locus).")
    _add_input_args(hh)
    _add_qc_args(hh)
    hh.add_argument("--out", type=Path, required=True, help="Output CSV, one row per sample.")
    hh.add_argument("--loci-out", type=Path, default=None, help="Optional CSV of Hind/He per locus.")

    # Expected Hind/He by simulation.
    ehh = sub.add_parser(
        "expected-hindhe",
        help="Simulate the expected distribution of locus Hind/He and optionally filter loci.",
    )
    _add_input_args(ehh)
    _add_qc_args(ehh)
    ehh.add_argument("--sim-ploidy", type=int, default=2, help="Ploidy to simulate (default: 2).")
    ehh.add_argument("--inbreeding", type=float, default=0.0, help="Inbreeding F (default: 0).")
    ehh.add_argument(
        "--overdispersion",
        type=float,
        default=config.OVERDISPERSION_DEFAULT,
        help="Beta-binomial overdispersion (default: 9).",
    )
    ehh.add_argument("--reps", type=int, default=config.HINDHE_REPS_DEFAULT, help="Simulation replicates.")
    ehh.add_argument("--seed", type=int, default=None, help="Random seed.")
    ehh.add_argument("--out", type=Path, required=True, help="Output CSV with mean and 95%% interval.")
    ehh.add_argument(
        "--filtered-out",
        type=Path,
        default=None,
        help="Write loci inside the interval to this RA tab file.",
    )

    # Genotype calling.
    call = sub.add_parser("call", help="Call genotypes and write posterior mean dosages.")
    _add_input_args(call)
    _add_qc_args(call)
    _add_call_args(call)
    call.add_argument("--out", type=Path, required=True, help="Output dosage CSV (samples x loci, 0..1).")
    call.add_argument(
        "--genotypes-out",
        type=Path,
        default=None,
        help="Optional CSV of most probable dosages (-1 below --min-prob).",
    )
    call.add_argument("--min-prob", type=float, default=0.0, help="Minimum posterior for --genotypes-out.")
    call.add_argument(
        "--test-overdispersion",
        action="store_true",
        help="Report the overdispersion that best fits confident calls.",
    )

    # PCA.
    pc = sub.add_parser("pca", help="PCA of posterior mean dosages.")
    _add_input_args(pc)
    _add_qc_args(pc)
    _add_call_args(pc)
    pc.add_argument("--perc-pca", type=float, default=config.PERC_PCA_DEFAULT, help="Variance %% to retain.")
    pc.add_argument("--out", type=Path, required=True, help="Output CSV of PC scores.")

    # DAPC.
    dp = sub.add_parser("dapc", help="DAPC by metadata population, or by k-means clusters.")
    _add_input_args(dp)
    _add_qc_args(dp)
    _add_call_args(dp)
    dp.add_argument("--perc-pca", type=float, default=config.PERC_PCA_DEFAULT, help="Variance %% to retain.")
    dp.add_argument("--n-pca", type=int, default=None, help="PCs passed to the discriminant analysis.")
    dp.add_argument("--max-k", type=int, default=config.MAX_K_DEFAULT, help="Largest k for cluster search.")
    dp.add_argument("--seed", type=int, default=None, help="Random seed for k-means.")
    dp.add_argument("--out", type=Path, required=True, help="Output CSV of LD scores and assignments.")

    # sPCA.
    sp = sub.add_parser("spca", help="Spatial PCA with global and local structure tests.")
    _add_input_args(sp, need_meta=True)
    _add_qc_args(sp)
    _add_call_args(sp)
    _add_perm_args(sp)
    sp.add_argument(
        "--network",
        choices=["delaunay", "knn", "distance"],
        default="delaunay",
        help="Connection network (default: delaunay).",
    )
    sp.add_argument("--knn", type=int, default=config.KNN_DEFAULT, help="Neighbours for --network knn.")
    sp.add_argument("--d-max", type=float, default=None, help="Distance (km) for --network distance.")
    sp.add_argument("--nfposi", type=int, default=2, help="Global axes to keep.")
    sp.add_argument("--nfnega", type=int, default=0, help="Local axes to keep.")
    sp.add_argument("--out", type=Path, required=True, help="Output CSV of sPCA scores.")

    # Mantel.
    mt = sub.add_parser("mantel", help="Mantel test of genetic vs great-circle distance.")
    _add_input_args(mt, need_meta=True)
    _add_qc_args(mt)
    _add_call_args(mt)
    _add_perm_args(mt)
    mt.add_argument("--out", type=Path, default=None, help="Optional CSV with r and p-value.")

    # AMOVA.
    am = sub.add_parser("amova", help="AMOVA over metadata populations (and regions).")
    _add_input_args(am, need_meta=True)
    _add_qc_args(am)
    _add_call_args(am)
    _add_perm_args(am)
    am.add_argument("--no-regions", action="store_true", help="Ignore a region column.")
    am.add_argument("--out", type=Path, required=True, help="Output CSV with the AMOVA table.")

    # Differentiation.
    df = sub.add_parser("diff", help="Differentiation among metadata populations (calcPopDiff).")
    _add_input_args(df, need_meta=True)
    _add_qc_args(df)
    _add_call_args(df)
    df.add_argument("--metric", choices=list(popgen.DIFF_METRICS), default="Jost's D")
    df.add_argument("--pairwise", action="store_true", help="Write a pairwise population table.")
    df.add_argument("--out", type=Path, required=True, help="Output CSV.")

    # UMAP.
    um = sub.add_parser("umap", help="UMAP of PC scores.")
    _add_input_args(um)
    _add_qc_args(um)
    _add_call_args(um)
    um.add_argument("--n-neighbors", type=int, default=config.UMAP_NEIGHBORS_DEFAULT)
    um.add_argument("--min-dist", type=float, default=config.UMAP_MIN_DIST_DEFAULT)
    um.add_argument("--seed", type=int, default=None, help="Random seed.")
    um.add_argument("--out", type=Path, required=True, help="Output CSV with UMAP1, UMAP2.")

    # Structure export.
    st = sub.add_parser("export-structure", help="Write most probable genotypes in Structure format.")
    _add_input_args(st)
    _add_qc_args(st)
    _add_call_args(st)
    st.add_argument("--min-prob", type=float, default=0.0, help="Calls below this posterior become -9.")
    st.add_argument("--out", type=Path, required=True, help="Output Structure file.")

    # Merge technical replicates.
    mrg = sub.add_parser("merge-ra", help="Sum read depths of technical replicates.")
    mrg.add_argument("ra_tab", type=Path, help="Input RA tab file")
    mrg.add_argument("map_csv", type=Path, help="CSV with sample_id and merge_id columns")
    mrg.add_argument("--out", type=Path, required=True, help="Output RA tab file.")

    # Simulation.
    simcmd = sub.add_parser("simulate", help="Simulate a structured RAD-seq data set.")
    simcmd.add_argument("--prefix", type=Path, required=True, help="Output prefix.")
    simcmd.add_argument("--n-pops", type=int, default=3)
    simcmd.add_argument("--n-per-pop", type=int, default=20)
    simcmd.add_argument("--n-snp", type=int, default=500)
    simcmd.add_argument("--fst", type=float, default=0.1)
    simcmd.add_argument("--ploidy", type=int, default=2)
    simcmd.add_argument("--mean-depth", type=float, default=10.0)
    simcmd.add_argument("--seed", type=int, default=None)

    # Full pipeline.
    run = sub.add_parser("run", help="Run the full workflow and write per-sample results.")
    run.add_argument("depth", type=Path, nargs="?", default=None, help="Read depth input.")
    run.add_argument("--config", type=Path, default=None, help="TOML file with pipeline settings.")
    run.add_argument("--metadata", type=Path, default=None)
    run.add_argument("--boundaries", type=Path, default=None, help="Boundary CSV for map plots.")
    run.add_argument("--prefix", type=str, default=None, help="Output prefix (default: radpop).")
    run.add_argument("--ploidy", type=int, default=None)
    _add_qc_args(run, inherit=True)
    _add_call_args(run, inherit=True)
    run.add_argument("--hindhe-locus-filter", action="store_true", default=None)
    run.add_argument("--umap", action="store_true", default=None)
    run.add_argument("--plots", action="store_true", default=None)
    run.add_argument("--permutations", type=int, default=None)
    run.add_argument("--seed", type=int, default=None)

    # Plots.
    psc = sub.add_parser("plot-scatter", help="Scatter plot of two columns of a CSV.")
    psc.add_argument("csv", type=Path)
    psc.add_argument("--x-axis", default="PC1")
    psc.add_argument("--y-axis", default="PC2")
    psc.add_argument("--color-by", default=None)
    psc.add_argument("--out", type=Path, required=True)

    pmap = sub.add_parser("plot-map", help="Map of samples from a CSV with latitude/longitude.")
    pmap.add_argument("csv", type=Path)
    pmap.add_argument("--value", default=None, help="Continuous column for colour.")
    pmap.add_argument("--color-by", default=None, help="Category column for colour.")
    pmap.add_argument("--boundaries", type=Path, default=None)
    pmap.add_argument("--out", type=Path, required=True)

    return p


def _configure_logging(args: argparse.Namespace) -> None:
    if args.quiet:
        level = logging.WARNING
    elif args.verbose >= 2:
        level = logging.DEBUG
    elif args.verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


# ---------- Loading helpers ----------

def _load_metadata(path: Path, ra: io.RADData) -> Tuple[io.RADData, pd.DataFrame]:
    try:
        meta = metadata.load_sample_metadata(path)
        meta = metadata.align_metadata(meta, ra.sample_ids, drop_missing=True)
    except ValueError as e:
        raise SystemExit(f"Metadata error: {e}") from e
    if meta.shape[0] == 0:
        raise SystemExit("No sample in the depth file has metadata.")
    if meta.shape[0] < ra.n_ind:
        have = set(meta[metadata.ACCESSION_COL])
        ra = io.select_samples(ra, np.array([s in have for s in ra.sample_ids]))
    metadata.assert_aligned(meta, ra.sample_ids)
    if metadata.PLOIDY_COL in meta.columns:
        ra = io.with_ploidy(ra, meta[metadata.PLOIDY_COL].to_numpy())
    return ra, meta


def _load_filtered(args: argparse.Namespace) -> Tuple[io.RADData, pd.DataFrame]:
    """Read depths and metadata; depth QC, optional Hind/He sample filter, monomorphic loci removed."""
    ra = replace(io.read_depth_data(args.depth, ploidy=args.ploidy), contam_rate=args.contam_rate)
    if args.metadata is not None:
        ra, meta = _load_metadata(args.metadata, ra)
    else:
        meta = pd.DataFrame({metadata.ACCESSION_COL: ra.sample_ids})

    res = qc.run_qc(
        ra,
        sampdepth_thresh=args.sampdepth_thresh,
        snpdepth_thresh=args.snpdepth_thresh,
        maf_thresh=args.maf_thresh,
    )
    ra = res.ra
    meta = meta.loc[res.keep_ind].reset_index(drop=True)
    if args.hindhe_bounds is not None:
        res = qc.filter_samples_hindhe(ra, *args.hindhe_bounds)
        ra = res.ra
        meta = meta.loc[res.keep_ind].reset_index(drop=True)
    ra = qc.remove_monomorphic(ra).ra
    logger.info("Analysing %d samples x %d loci", ra.n_ind, ra.n_snp)
    return ra, meta


def _call(args: argparse.Namespace, ra: io.RADData) -> genotyping.GenotypeCalls:
    return genotyping.call_genotypes(
        ra,
        mode=args.mode,
        overdispersion=args.overdispersion or None,
        error_rate=args.error_rate,
        n_pc=args.n_pc,
        tol=args.tol,
        max_iter=args.max_iter,
    )


def _require_column(meta: pd.DataFrame, col: str) -> np.ndarray:
    if col not in meta.columns:
        raise SystemExit(f"Metadata must have a '{col}' column for this command.")
    return meta[col].to_numpy()


def _coords(meta: pd.DataFrame) -> Tuple[np.ndarray, np.ndarray]:
    lat = _require_column(meta, metadata.LAT_COL).astype(float)
    lon = _require_column(meta, metadata.LON_COL).astype(float)
    if not (np.isfinite(lat).all() and np.isfinite(lon).all()):
        raise SystemExit("Latitude/longitude missing for some samples.")
    return lat, lon


def _write_csv(df: pd.DataFrame, out: Path, index: bool = False) -> None:
    out.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(out, index=index)


# ---------- Commands ----------

def cmd_hindhe(args: argparse.Namespace) -> None:
    ra, _ = _load_filtered(args)
    res = hindhe.hind_he(ra)
    expected = hindhe.expected_hind_he(np.maximum(ra.ploidy, 2))
    F = np.full(ra.n_ind, np.nan)
    ok = ra.ploidy >= 2
    if ok.any():
        F[ok] = hindhe.inbreeding_from_hind_he(res.by_sample[ok], ra.ploidy[ok])

    out_df = pd.DataFrame(
        {
            "accession": ra.sample_ids,
            "ploidy": ra.ploidy,
            "mean_depth": ra.depth.mean(axis=1),
            "HindHe": res.by_sample,
            "HindHe_relative": res.by_sample / expected,
            "inbreeding": F,
        }
    )
    _write_csv(out_df, args.out)
    if args.loci_out is not None:
        _write_csv(
            pd.DataFrame({"chrom": ra.chrom, "pos": ra.pos, "HindHe": res.by_locus}),
            args.loci_out,
        )
    print(
        f"Hind/He: median by sample {np.nanmedian(res.by_sample):.4f}, "
        f"median by locus {np.nanmedian(res.by_locus):.4f}"
    )


def cmd_expected_hindhe(args: argparse.Namespace) -> None:
    ra, _ = _load_filtered(args)
    res = hindhe.simulate_expected_hind_he(
        ra,
        ploidy=args.sim_ploidy,
        inbreeding=args.inbreeding,
        overdispersion=args.overdispersion or None,
        reps=args.reps,
        seed=args.seed,
    )
    out_df = pd.DataFrame(
        [
            {
                "ploidy": res.ploidy,
                "inbreeding": res.inbreeding,
                "expected": float(hindhe.expected_hind_he(res.ploidy, res.inbreeding)),
                "simulated_mean": res.mean,
                "lower": res.interval[0],
                "upper": res.interval[1],
            }
        ]
    )
    _write_csv(out_df, args.out)
    print(f"Expected Hind/He: mean {res.mean:.4f}, 95% interval [{res.interval[0]:.4f}, {res.interval[1]:.4f}]")
    if args.filtered_out is not None:
        kept = qc.filter_loci_hindhe(ra, *res.interval).ra
        io.write_ra_tab(kept, args.filtered_out)
        print(f"Kept {kept.n_snp}/{ra.n_snp} loci; wrote {args.filtered_out}")


def cmd_call(args: argparse.Namespace) -> None:
    ra, _ = _load_filtered(args)
    calls = _call(args, ra)
    export.write_dosage_csv(calls, args.out)
    if args.genotypes_out is not None:
        geno = genotyping.most_probable_genotypes(calls, min_prob=args.min_prob)
        _write_csv(
            pd.DataFrame(geno, index=pd.Index(calls.sample_ids, name="accession"), columns=calls.locus_names),
            args.genotypes_out,
            index=True,
        )
    status = "converged" if calls.converged else "did not converge"
    print(f"Called {calls.n_ind} samples x {calls.n_snp} loci ({calls.mode}, {status} after {calls.n_iter} iterations)")
    if args.test_overdispersion:
        od = genotyping.estimate_overdispersion(ra, calls, error_rate=args.error_rate)
        print(f"Best overdispersion: {od.best:g}")


def cmd_pca(args: argparse.Namespace) -> None:
    ra, meta = _load_filtered(args)
    calls = _call(args, ra)
    res = structure.pca(genotyping.posterior_mean_dosage(calls), perc_pca=args.perc_pca)
    data = {"accession": calls.sample_ids}
    for j in range(res.n_pc):
        data[f"PC{j + 1}"] = res.scores[:, j]
    _write_csv(pd.DataFrame(data), args.out)
    expl = ", ".join(f"PC{j + 1} {100 * v:.1f}%" for j, v in enumerate(res.var_explained[: min(res.n_pc, 5)]))
    print(f"Retained {res.n_pc} PCs ({expl})")


def cmd_dapc(args: argparse.Namespace) -> None:
    ra, meta = _load_filtered(args)
    calls = _call(args, ra)
    dosage = genotyping.posterior_mean_dosage(calls)
    if metadata.POP_COL in meta.columns:
        groups = meta[metadata.POP_COL].to_numpy()
    else:
        scores = structure.pca(dosage, perc_pca=args.perc_pca).scores
        clusters = structure.find_clusters(scores, max_k=args.max_k, seed=args.seed)
        print(f"No population column; using k-means clusters (k={clusters.k} by BIC)")
        groups = np.array([f"cluster{c + 1}" for c in clusters.labels])
    if np.unique(groups).size < 2:
        raise SystemExit("DAPC needs at least two groups.")

    res = structure.dapc(dosage, groups, calls.sample_ids, n_pca=args.n_pca, perc_pca=args.perc_pca)
    data = {"accession": res.sample_ids, "group": res.groups}
    for j in range(res.lda_scores.shape[1]):
        data[f"LD{j + 1}"] = res.lda_scores[:, j]
    data["assignment"] = res.assignment
    for g, name in enumerate(res.group_names):
        data[f"posterior_{name}"] = res.posterior[:, g]
    _write_csv(pd.DataFrame(data), args.out)
    print(f"DAPC: {res.pc_scores.shape[1]} PCs, {100 * res.assignment_rate:.1f}% correctly reassigned")


def cmd_spca(args: argparse.Namespace) -> None:
    ra, meta = _load_filtered(args)
    lat, lon = _coords(meta)
    calls = _call(args, ra)
    dosage = genotyping.posterior_mean_dosage(calls)
    W = spatial.connection_network(lat, lon, kind=args.network, k=args.knn, d_max=args.d_max)
    res = spatial.spca(dosage, W, nfposi=args.nfposi, nfnega=args.nfnega)
    glob, loc = spatial.spca_tests(dosage, W, permutations=args.permutations, seed=args.seed)

    data = {"accession": calls.sample_ids, "latitude": lat, "longitude": lon}
    for j in range(res.scores.shape[1]):
        data[f"sPC{j + 1}"] = res.scores[:, j]
    _write_csv(pd.DataFrame(data), args.out)
    print(f"Global structure test: obs={glob.observed:.4f} p={glob.p_value:.4f}")
    print(f"Local structure test:  obs={loc.observed:.4f} p={loc.p_value:.4f}")


def cmd_mantel(args: argparse.Namespace) -> None:
    ra, meta = _load_filtered(args)
    lat, lon = _coords(meta)
    calls = _call(args, ra)
    try:
        res = spatial.mantel_test(
            spatial.euclidean_distance(genotyping.posterior_mean_dosage(calls)),
            spatial.great_circle_distance(lat, lon),
            permutations=args.permutations,
            seed=args.seed,
        )
    except ValueError as e:
        raise SystemExit(f"Mantel: {e}") from e
    if args.out is not None:
        _write_csv(pd.DataFrame([{"r": res.observed, "p_value": res.p_value}]), args.out)
    print(f"Mantel r={res.observed:.4f} p={res.p_value:.4f}")


def cmd_amova(args: argparse.Namespace) -> None:
    ra, meta = _load_filtered(args)
    pops = _require_column(meta, metadata.POP_COL)
    regions = None
    if not args.no_regions and metadata.REGION_COL in meta.columns:
        regions = meta[metadata.REGION_COL].to_numpy()
    calls = _call(args, ra)
    try:
        res = amova.amova(
            genotyping.posterior_mean_dosage(calls),
            pops,
            regions,
            permutations=args.permutations,
            seed=args.seed,
        )
    except ValueError as e:
        raise SystemExit(f"AMOVA: {e}") from e
    _write_csv(res.table, args.out)
    for k, v in res.phi.items():
        print(f"{k} = {v:.4f} (p={res.p_values[k]:.4f})")


def cmd_diff(args: argparse.Namespace) -> None:
    ra, meta = _load_filtered(args)
    pops = _require_column(meta, metadata.POP_COL)
    calls = _call(args, ra)
    dosage = genotyping.posterior_mean_dosage(calls)
    freqs = popgen.population_allele_freqs(dosage, pops, calls.ploidy, calls.locus_names)
    sizes = popgen.population_allele_counts(dosage, pops, calls.ploidy, calls.locus_names)
    res = popgen.calc_pop_diff(freqs, metric=args.metric, pairwise=args.pairwise, sizes=sizes)
    if args.pairwise:
        _write_csv(res.pairwise, args.out, index=True)
    else:
        _write_csv(
            pd.DataFrame({"chrom": calls.chrom, "pos": calls.pos, args.metric: res.per_locus.to_numpy()}),
            args.out,
        )
    print(f"Global {args.metric}: {res.global_value:.4f}")


def cmd_umap(args: argparse.Namespace) -> None:
    ra, meta = _load_filtered(args)
    calls = _call(args, ra)
    scores = structure.pca(genotyping.posterior_mean_dosage(calls)).scores
    xy = structure.umap_embedding(scores, n_neighbors=args.n_neighbors, min_dist=args.min_dist, seed=args.seed)
    out_df = meta.copy()
    out_df["UMAP1"] = xy[:, 0]
    out_df["UMAP2"] = xy[:, 1]
    _write_csv(out_df, args.out)


def cmd_export_structure(args: argparse.Namespace) -> None:
    ra, meta = _load_filtered(args)
    calls = _call(args, ra)
    pops = meta[metadata.POP_COL].to_numpy() if metadata.POP_COL in meta.columns else None
    export.export_structure(calls, args.out, populations=pops, min_prob=args.min_prob)
    print(f"Wrote Structure file: {args.out}")


def cmd_merge_ra(args: argparse.Namespace) -> None:
    ra = io.read_ra_tab(args.ra_tab)
    mapping = merge.load_merge_mapping(args.map_csv)
    merged = merge.merge_ra_samples(ra, mapping)
    io.write_ra_tab(merged, args.out)
    print(f"Merged {ra.n_ind} samples into {merged.n_ind}: {args.out}")


def cmd_simulate(args: argparse.Namespace) -> None:
    """Simulate a data set and write RA tab, metadata and a Zarr store."""
    prefix = Path(args.prefix)
    simdata = sim.simulate_rad(
        n_pops=args.n_pops,
        n_per_pop=args.n_per_pop,
        n_snp=args.n_snp,
        fst=args.fst,
        ploidy=args.ploidy,
        mean_depth=args.mean_depth,
        seed=args.seed,
    )
    ra_path = prefix.with_suffix(".ra.tab")
    meta_path = prefix.with_suffix(".meta.csv")
    store_path = prefix.with_suffix(".zarr")
    sim.write_ra_tab(simdata.ra, ra_path)
    sim.write_metadata(simdata, meta_path)
    io.write_ra_store(simdata.ra, store_path)
    print(f"Wrote RA file: {ra_path}")
    print(f"Wrote metadata: {meta_path}")
    print(f"Wrote Zarr store: {store_path}")


def cmd_run(args: argparse.Namespace) -> None:
    overrides = {
        "depth_path": args.depth,
        "metadata_path": args.metadata,
        "boundaries_path": args.boundaries,
        "prefix": args.prefix,
        "mode": args.mode,
        "ploidy": args.ploidy,
        "sampdepth_thresh": args.sampdepth_thresh,
        "snpdepth_thresh": args.snpdepth_thresh,
        "maf_thresh": args.maf_thresh,
        "hindhe_sample_bounds": None if args.hindhe_bounds is None else tuple(args.hindhe_bounds),
        "overdispersion": args.overdispersion,
        "error_rate": args.error_rate,
        "n_pc": args.n_pc,
        "max_iter": args.max_iter,
        "tol": args.tol,
        "hindhe_locus_filter": args.hindhe_locus_filter,
        "umap": args.umap,
        "plots": args.plots,
        "permutations": args.permutations,
        "seed": args.seed,
    }
    if args.config is None and args.depth is None:
        raise SystemExit("run needs a depth file or --config.")
    try:
        if args.config is not None:
            cfg = config.PipelineConfig.from_toml(args.config, **overrides)
        else:
            overrides["prefix"] = args.prefix or "radpop"
            cfg = config.PipelineConfig(**{k: v for k, v in overrides.items() if v is not None})
    except (TypeError, ValueError) as e:
        raise SystemExit(f"Configuration error: {e}") from e

    result = pipeline.run_pipeline(cfg)
    print(f"Kept {result.ra.n_ind} samples x {result.ra.n_snp} loci; {result.pca.n_pc} PCs; k={result.clusters.k}")
    if result.mantel is not None:
        print(f"Mantel r={result.mantel.observed:.4f} p={result.mantel.p_value:.4f}")
    if result.amova is not None:
        for k, v in result.amova.phi.items():
            print(f"{k} = {v:.4f} (p={result.amova.p_values[k]:.4f})")
    for name, path in result.outputs.items():
        print(f"{name}: {path}")


def cmd_plot_map(args: argparse.Namespace) -> None:
    df = metadata.canonical_columns(pd.read_csv(args.csv))
    lat, lon = _coords(df)
    values: Optional[np.ndarray] = None
    labels = None
    if args.value is not None:
        values = _require_column(df, args.value).astype(float)
    elif args.color_by is not None:
        labels = _require_column(df, args.color_by)
    boundaries = metadata.load_boundaries(args.boundaries) if args.boundaries else None
    plots.plot_map(
        lat,
        lon,
        args.out,
        values=values,
        labels=labels,
        boundaries=boundaries,
        value_label=args.value or args.color_by or "",
    )


def main(argv: Sequence[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args)

    if args.command == "hindhe":
        cmd_hindhe(args)
    elif args.command == "expected-hindhe":
        cmd_expected_hindhe(args)
    elif args.command == "call":
        cmd_call(args)
    elif args.command == "pca":
        cmd_pca(args)
    elif args.command == "dapc":
        cmd_dapc(args)
    elif args.command == "spca":
        cmd_spca(args)
    elif args.command == "mantel":
        cmd_mantel(args)
    elif args.command == "amova":
        cmd_amova(args)
    elif args.command == "diff":
        cmd_diff(args)
    elif args.command == "umap":
        cmd_umap(args)
    elif args.command == "export-structure":
        cmd_export_structure(args)
    elif args.command == "merge-ra":
        cmd_merge_ra(args)
    elif args.command == "simulate":
        cmd_simulate(args)
    elif args.command == "run":
        cmd_run(args)
    elif args.command == "plot-scatter":
        plots.plot_scatter(
            pd.read_csv(args.csv),
            args.out,
            x_axis=args.x_axis,
            y_axis=args.y_axis,
            color_by=args.color_by,
        )
    elif args.command == "plot-map":
        cmd_plot_map(args)
    else:
        parser.error(f"Unknown command {args.command}")


if __name__ == "__main__":
    main()

from __future__ import annotations

import tomllib
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional, Tuple

# ---------- Read model / genotype calling ----------
OVERDISPERSION_DEFAULT = 9.0   # beta-binomial alpha + beta
CONTAM_RATE_DEFAULT = 0.001    # expected cross-sample contamination
ERROR_RATE_DEFAULT = 0.001     # per-read sequencing error
MIN_FREQ_DEFAULT = 0.0001      # clip for per-sample allele frequencies
TOL_DEFAULT = 1e-3             # max |delta p| between iterations
MAX_ITER_DEFAULT = 50
PLOIDY_DEFAULT = 2
CALL_MODES = ("popstruct", "hwe", "naive")

# ---------- Depth QC ----------
SAMPDEPTH_THRESH_DEFAULT = 0.01
SNPDEPTH_THRESH_DEFAULT = 0.01
MAF_THRESH_DEFAULT = 1e-9

# ---------- Hind/He ----------
# Bounds on a sample's mean Hind/He, as a multiple of its expected value.
HINDHE_SAMPLE_LOWER = 0.5
HINDHE_SAMPLE_UPPER = 1.5
HINDHE_REPS_DEFAULT = 10

# ---------- Multivariate / permutation tests ----------
PERC_PCA_DEFAULT = 90.0
MAX_K_DEFAULT = 10
PERMUTATIONS_DEFAULT = 999
UMAP_NEIGHBORS_DEFAULT = 15
UMAP_MIN_DIST_DEFAULT = 0.1
KNN_DEFAULT = 5

# Fixed palette for groups (cycled when there are more groups).
PALETTE = [
    "#2A9D8F", "#E76F51", "#264653", "#F4A261", "#8AB17D",
    "#577590", "#FF9F1C", "#3D5A80", "#43AA8B", "#B56576",
]


@dataclass
class PipelineConfig:
    """Settings for one end-to-end run (see pipeline.run_pipeline)."""

    depth_path: Path
    prefix: str
    metadata_path: Optional[Path] = None
    boundaries_path: Optional[Path] = None
    ploidy: int = PLOIDY_DEFAULT
    contam_rate: float = CONTAM_RATE_DEFAULT
    error_rate: float = ERROR_RATE_DEFAULT
    overdispersion: Optional[float] = OVERDISPERSION_DEFAULT
    sampdepth_thresh: float = SAMPDEPTH_THRESH_DEFAULT
    snpdepth_thresh: float = SNPDEPTH_THRESH_DEFAULT
    maf_thresh: float = MAF_THRESH_DEFAULT
    hindhe_sample_bounds: Tuple[float, float] = (HINDHE_SAMPLE_LOWER, HINDHE_SAMPLE_UPPER)
    hindhe_locus_filter: bool = False
    hindhe_reps: int = HINDHE_REPS_DEFAULT
    mode: str = "popstruct"
    tol: float = TOL_DEFAULT
    max_iter: int = MAX_ITER_DEFAULT
    n_pc: Optional[int] = None
    perc_pca: float = PERC_PCA_DEFAULT
    max_k: int = MAX_K_DEFAULT
    permutations: int = PERMUTATIONS_DEFAULT
    umap: bool = False
    knn: int = KNN_DEFAULT
    plots: bool = False
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        self.depth_path = Path(self.depth_path)
        if self.metadata_path is not None:
            self.metadata_path = Path(self.metadata_path)
        if self.boundaries_path is not None:
            self.boundaries_path = Path(self.boundaries_path)
        if self.mode not in CALL_MODES:
            raise ValueError(f"Unknown genotype calling mode '{self.mode}' (expected one of {CALL_MODES}).")
        lo, hi = self.hindhe_sample_bounds
        if hi <= lo:
            raise ValueError("hindhe_sample_bounds must satisfy lower < upper.")
        self.hindhe_sample_bounds = (float(lo), float(hi))

    @classmethod
    def from_toml(cls, path: str | Path, **overrides) -> "PipelineConfig":
        """Build a config from a TOML file; keyword overrides win."""
        with Path(path).open("rb") as fh:
            data = tomllib.load(fh)
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown config keys in {path}: {sorted(unknown)}")
        data.update({k: v for k, v in overrides.items() if v is not None})
        if "hindhe_sample_bounds" in data:
            data["hindhe_sample_bounds"] = tuple(data["hindhe_sample_bounds"])
        return cls(**data)

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import List, Sequence

import numpy as np
import pandas as pd
import zarr

from .config import CONTAM_RATE_DEFAULT, PLOIDY_DEFAULT

logger = logging.getLogger(__name__)


@dataclass
class RADData:
    """Reference/alternate read counts for biallelic RAD-seq loci.

    - n_ind:   number of samples (accessions)
    - n_snp:   number of loci
    - ref[i,s] / alt[i,s]: read counts
    - ploidy[i]: chromosome copies in sample i
    """

    sample_ids: List[str]
    chrom: np.ndarray
    pos: np.ndarray
    ref: np.ndarray  # shape (n_ind, n_snp), int32
    alt: np.ndarray  # shape (n_ind, n_snp), int32
    ploidy: np.ndarray  # shape (n_ind,), int
    contam_rate: float = CONTAM_RATE_DEFAULT

    def __post_init__(self) -> None:
        if self.ref.shape != self.alt.shape:
            raise ValueError("ref and alt must have the same shape")
        if len(self.sample_ids) != self.ref.shape[0]:
            raise ValueError("sample_ids length must match the number of rows in ref/alt")
        if len(set(self.sample_ids)) != len(self.sample_ids):
            raise ValueError("sample_ids must be unique")
        self.ploidy = np.asarray(self.ploidy, dtype=np.int32).reshape(-1)
        if self.ploidy.shape[0] != self.ref.shape[0]:
            raise ValueError("ploidy must have one entry per sample")
        if np.any(self.ploidy < 1):
            raise ValueError("ploidy must be at least 1")

    @property
    def n_ind(self) -> int:
        return int(self.ref.shape[0])

    @property
    def n_snp(self) -> int:
        return int(self.ref.shape[1])

    @property
    def depth(self) -> np.ndarray:
        return self.ref + self.alt

    @property
    def locus_names(self) -> List[str]:
        return [f"{c}_{p}" for c, p in zip(self.chrom, self.pos)]


def _full_ploidy(ploidy, n_ind: int) -> np.ndarray:
    arr = np.asarray(ploidy, dtype=np.int32)
    if arr.ndim == 0:
        return np.full(n_ind, int(arr), dtype=np.int32)
    if arr.shape[0] != n_ind:
        raise ValueError(f"ploidy has {arr.shape[0]} entries but there are {n_ind} samples")
    return arr


def read_ra_tab(path: str | Path, ploidy=PLOIDY_DEFAULT) -> RADData:
    """Read a tab-delimited read-count file into RADData.

    - columns: CHROM, POS, sample1, sample2, ...
    - each sample column is 'ref,alt'.
    """
    path = Path(path)
    df = pd.read_table(path, dtype=str)
    if df.shape[1] < 3:
        raise ValueError(f"RA file {path} must have at least CHROM, POS and one sample column")

    chrom = df.iloc[:, 0].to_numpy()
    pos = df.iloc[:, 1].astype("int64").to_numpy()
    sample_cols: Sequence[str] = list(df.columns[2:])
    n_snp = df.shape[0]
    n_ind = len(sample_cols)

    ref = np.zeros((n_ind, n_snp), dtype=np.int32)
    alt = np.zeros((n_ind, n_snp), dtype=np.int32)

    # Loop over samples (columns), vectorised over loci.
    for i, col in enumerate(sample_cols):
        split_vals = df[col].fillna("0,0").str.split(",", n=1, expand=True)
        if split_vals.shape[1] != 2 or split_vals.iloc[:, 1].isna().any():
            raise ValueError(f"Column {col} in {path} is not in 'ref,alt' format")
        ref[i, :] = split_vals.iloc[:, 0].astype("int32").to_numpy()
        alt[i, :] = split_vals.iloc[:, 1].astype("int32").to_numpy()

    logger.info("Read %d samples x %d loci from %s", n_ind, n_snp, path)
    return RADData(
        sample_ids=list(sample_cols),
        chrom=chrom,
        pos=pos,
        ref=ref,
        alt=alt,
        ploidy=_full_ploidy(ploidy, n_ind),
    )


def write_ra_tab(ra: RADData, path: str | Path) -> None:
    """Write RADData back to the tab-delimited 'ref,alt' layout."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {"CHROM": ra.chrom, "POS": ra.pos}
    for i, sid in enumerate(ra.sample_ids):
        data[sid] = [f"{r},{a}" for r, a in zip(ra.ref[i, :], ra.alt[i, :])]
    pd.DataFrame(data).to_csv(path, sep="\t", index=False)


def read_vcf(path: str | Path, ploidy=PLOIDY_DEFAULT) -> RADData:
    """Read allele depths (FORMAT/AD) from a VCF or BCF into RADData.

    Compression is detected by htslib. Multi-allelic records keep the
    reference and first alternate allele; missing depths become 0.
    """
    from cyvcf2 import VCF

    path = Path(path)
    vcf = VCF(path.as_posix())
    try:
        sample_ids = list(vcf.samples)
        if not sample_ids:
            raise ValueError(f"VCF {path} has no samples")
        n_ind = len(sample_ids)
        chrom, pos, ref_rows, alt_rows = [], [], [], []
        for variant in vcf:
            ad = variant.format("AD")
            if ad is None:
                raise ValueError(f"VCF record {variant.CHROM}:{variant.POS} in {path} has no AD field")
            ad = np.asarray(ad).reshape(n_ind, -1)
            # htslib codes missing and end-of-vector values as negative ints
            ad = np.where(ad < 0, 0, ad)
            chrom.append(variant.CHROM)
            pos.append(variant.POS)
            ref_rows.append(ad[:, 0])
            alt_rows.append(ad[:, 1] if ad.shape[1] > 1 else np.zeros(n_ind, dtype=ad.dtype))
    finally:
        vcf.close()

    if ref_rows:
        ref = np.stack(ref_rows, axis=1).astype(np.int32)
        alt = np.stack(alt_rows, axis=1).astype(np.int32)
    else:
        ref = np.zeros((n_ind, 0), dtype=np.int32)
        alt = np.zeros((n_ind, 0), dtype=np.int32)

    logger.info("Read %d samples x %d loci from VCF %s", n_ind, ref.shape[1], path)
    return RADData(
        sample_ids=sample_ids,
        chrom=np.asarray(chrom),
        pos=np.asarray(pos, dtype=np.int64),
        ref=ref,
        alt=alt,
        ploidy=_full_ploidy(ploidy, n_ind),
    )


def write_ra_store(ra: RADData, store_path: str | Path) -> None:
    """Write RADData to a Zarr store.

    Layout:
      - chrom, pos: (n_snp,)
      - sample_ids, ploidy: (n_ind,)
      - ref, alt: (n_ind, n_snp), chunked along loci
      - attrs["contam_rate"]
    """
    store_path = Path(store_path)
    store_path.parent.mkdir(parents=True, exist_ok=True)

    g = zarr.open_group(store_path.as_posix(), mode="w")

    n_ind = ra.n_ind
    n_snp = max(ra.n_snp, 1)

    g.create_dataset(
        "sample_ids",
        data=np.asarray(ra.sample_ids, dtype="U"),
        compressor=None,
        overwrite=True,
    )
    g.create_dataset("ploidy", data=ra.ploidy, overwrite=True)
    g.create_dataset(
        "chrom",
        data=np.asarray(ra.chrom, dtype="U"),
        chunks=(min(n_snp, 4096),),
        overwrite=True,
    )
    g.create_dataset(
        "pos",
        data=ra.pos,
        chunks=(min(n_snp, 4096),),
        overwrite=True,
    )

    snp_chunk = min(n_snp, 1024)
    g.create_dataset("ref", data=ra.ref, chunks=(n_ind, snp_chunk), overwrite=True)
    g.create_dataset("alt", data=ra.alt, chunks=(n_ind, snp_chunk), overwrite=True)
    g.attrs["contam_rate"] = float(ra.contam_rate)


def read_ra_store(store_path: str | Path) -> RADData:
    """Read a Zarr store written by write_ra_store into RADData."""
    store_path = Path(store_path)
    g = zarr.open_group(store_path.as_posix(), mode="r")

    return RADData(
        sample_ids=[str(s) for s in np.asarray(g["sample_ids"][:])],
        chrom=np.asarray(g["chrom"][:]),
        pos=np.asarray(g["pos"][:]),
        ref=np.asarray(g["ref"][:], dtype=np.int32),
        alt=np.asarray(g["alt"][:], dtype=np.int32),
        ploidy=np.asarray(g["ploidy"][:], dtype=np.int32),
        contam_rate=float(g.attrs.get("contam_rate", CONTAM_RATE_DEFAULT)),
    )


def read_depth_data(path: str | Path, ploidy=None) -> RADData:
    """Dispatch on file name: Zarr store, VCF(.gz)/BCF or RA tab.

    Zarr stores keep their stored ploidy unless one is given.
    """
    path = Path(path)
    name = path.name.lower()
    if name.endswith(".zarr") or path.is_dir():
        ra = read_ra_store(path)
        return ra if ploidy is None else with_ploidy(ra, ploidy)
    if ploidy is None:
        ploidy = PLOIDY_DEFAULT
    if name.endswith((".vcf", ".vcf.gz", ".bcf")):
        return read_vcf(path, ploidy=ploidy)
    return read_ra_tab(path, ploidy=ploidy)


def with_ploidy(ra: RADData, ploidy) -> RADData:
    """Return a copy of ra with scalar or per-sample ploidy."""
    return replace(ra, ploidy=_full_ploidy(ploidy, ra.n_ind))


def _as_index(selection) -> np.ndarray:
    sel = np.asarray(selection)
    if sel.dtype == bool:
        return np.flatnonzero(sel)
    return sel.astype(int)


def select_samples(ra: RADData, sample_indices: Sequence[int]) -> RADData:
    """Return RADData restricted to a subset of samples (indices or a mask)."""
    idx = _as_index(sample_indices)
    return replace(
        ra,
        sample_ids=[ra.sample_ids[i] for i in idx],
        ref=ra.ref[idx, :],
        alt=ra.alt[idx, :],
        ploidy=ra.ploidy[idx],
    )


def select_snps(ra: RADData, snp_indices: Sequence[int]) -> RADData:
    """Return RADData restricted to a subset of loci (indices or a mask)."""
    idx = _as_index(snp_indices)
    return replace(
        ra,
        chrom=ra.chrom[idx],
        pos=ra.pos[idx],
        ref=ra.ref[:, idx],
        alt=ra.alt[:, idx],
    )

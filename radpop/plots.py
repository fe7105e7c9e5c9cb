from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt  # noqa: E402
import numpy as np  # noqa: E402
import pandas as pd  # noqa: E402

from .config import PALETTE  # noqa: E402


def _save(out_png: Path) -> None:
    plt.tight_layout()
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(out_png, dpi=150)
    plt.close()


def _color(i: int) -> str:
    return PALETTE[i % len(PALETTE)]


def _category_scatter(x, y, labels, title: Optional[str], s: float = 20) -> None:
    if labels is None:
        plt.scatter(x, y, s=s, alpha=0.8, color=_color(0))
        return
    labels = np.asarray(labels).astype(str)
    uniq = np.unique(labels)
    for i, lab in enumerate(uniq):
        mask = labels == lab
        plt.scatter(x[mask], y[mask], s=s, alpha=0.8, label=str(lab), color=_color(i))
    plt.legend(title=title, fontsize="small")


def plot_hindhe_hist(
    hindhe: np.ndarray,
    out_png: Path,
    expected: Optional[float] = None,
    bounds: Optional[Sequence[float]] = None,
    title: str = "Hind/He by sample",
) -> None:
    """Histogram of Hind/He values with the expected value and filter bounds marked."""
    vals = np.asarray(hindhe, dtype=np.float64)
    vals = vals[np.isfinite(vals)]

    plt.figure(figsize=(6, 4))
    plt.hist(vals, bins=30, color=_color(0), alpha=0.8)
    if expected is not None:
        plt.axvline(expected, color="black", linewidth=1, label="expected")
    if bounds is not None:
        for b in bounds:
            plt.axvline(b, color="grey", linewidth=1, linestyle="--")
    plt.xlabel("Hind/He")
    plt.ylabel("Count")
    plt.title(title)
    if expected is not None:
        plt.legend(fontsize="small")
    _save(out_png)


def plot_hindhe_by_depth(
    hindhe: np.ndarray,
    depth: np.ndarray,
    out_png: Path,
    labels: Optional[Sequence[str]] = None,
    color_by: str = "ploidy",
) -> None:
    """Sample Hind/He against mean read depth (log scale)."""
    x = np.asarray(depth, dtype=np.float64)
    y = np.asarray(hindhe, dtype=np.float64)

    plt.figure(figsize=(6, 5))
    _category_scatter(x, y, labels, color_by)
    plt.xscale("log")
    plt.xlabel("Mean read depth")
    plt.ylabel("Hind/He")
    plt.title("Hind/He vs read depth")
    _save(out_png)


def plot_scatter(
    df: pd.DataFrame,
    out_png: Path,
    x_axis: str = "PC1",
    y_axis: str = "PC2",
    color_by: Optional[str] = None,
    title: Optional[str] = None,
) -> None:
    """Scatter of two columns (PCA, UMAP, DAPC ...) coloured by a category column."""
    if x_axis not in df.columns or y_axis not in df.columns:
        raise ValueError(f"Table must have columns '{x_axis}' and '{y_axis}'.")
    x = df[x_axis].to_numpy(dtype=np.float64)
    y = df[y_axis].to_numpy(dtype=np.float64)
    labels = df[color_by].to_numpy() if color_by and color_by in df.columns else None

    plt.figure(figsize=(6, 6))
    _category_scatter(x, y, labels, color_by)
    plt.xlabel(x_axis)
    plt.ylabel(y_axis)
    plt.title(title or f"{y_axis} vs {x_axis}")
    _save(out_png)


def plot_dapc_scatter(
    dapc_csv: Path,
    out_png: Path,
    x_axis: str = "LD1",
    y_axis: str = "LD2",
    color_by: str = "group",
) -> None:
    """DAPC scatter plot using discriminant coordinates.

    With a single discriminant function, LD1 is plotted against sample order.
    """
    df = pd.read_csv(dapc_csv)
    if x_axis not in df.columns:
        raise ValueError(f"DAPC CSV must have column '{x_axis}'.")
    if y_axis not in df.columns:
        df = df.copy()
        y_axis = "sample"
        df[y_axis] = np.arange(df.shape[0])
    plot_scatter(df, out_png, x_axis=x_axis, y_axis=y_axis, color_by=color_by, title="DAPC scatter")


def plot_map(
    lat: np.ndarray,
    lon: np.ndarray,
    out_png: Path,
    values: Optional[np.ndarray] = None,
    labels: Optional[Sequence[str]] = None,
    boundaries: Optional[pd.DataFrame] = None,
    title: str = "Sample locations",
    value_label: str = "",
) -> None:
    """Samples on longitude/latitude, coloured by a continuous value or a category.

    boundaries (from metadata.load_boundaries) are drawn as outline polygons.
    """
    lat = np.asarray(lat, dtype=np.float64)
    lon = np.asarray(lon, dtype=np.float64)

    plt.figure(figsize=(7, 6))
    if boundaries is not None:
        for _, poly in boundaries.groupby("group", sort=False):
            plt.fill(
                poly["longitude"].to_numpy(),
                poly["latitude"].to_numpy(),
                facecolor="#EEEEEE",
                edgecolor="grey",
                linewidth=0.6,
            )
    if values is not None:
        sc = plt.scatter(lon, lat, c=np.asarray(values, dtype=np.float64), s=25, cmap="viridis")
        plt.colorbar(sc, label=value_label)
    else:
        _category_scatter(lon, lat, labels, value_label or None, s=25)
    plt.xlabel("Longitude")
    plt.ylabel("Latitude")
    plt.title(title)
    _save(out_png)


def plot_diff_heatmap(table: pd.DataFrame, out_png: Path, metric: str = "Jost's D") -> None:
    """Heatmap of a pairwise population differentiation table."""
    mat = table.to_numpy(dtype=np.float64)
    names = [str(c) for c in table.columns]

    plt.figure(figsize=(1.0 + 0.6 * len(names), 0.8 + 0.6 * len(names)))
    im = plt.imshow(mat, cmap="magma_r", vmin=0.0)
    plt.colorbar(im, label=metric)
    plt.xticks(range(len(names)), names, rotation=90)
    plt.yticks(range(len(names)), names)
    plt.title(f"Pairwise {metric}")
    _save(out_png)


def plot_spca_eigenvalues(eigenvalues: np.ndarray, out_png: Path) -> None:
    """Bar plot of sPCA eigenvalues; positive bars are global, negative local."""
    ev = np.asarray(eigenvalues, dtype=np.float64)
    colors = [_color(0) if v >= 0 else _color(1) for v in ev]

    plt.figure(figsize=(7, 4))
    plt.bar(np.arange(1, ev.size + 1), ev, color=colors)
    plt.axhline(0.0, color="grey", linewidth=1)
    plt.xlabel("Axis")
    plt.ylabel("Eigenvalue")
    plt.title("sPCA eigenvalues")
    _save(out_png)

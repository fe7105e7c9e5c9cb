from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.spatial import Delaunay
from scipy.spatial.distance import pdist, squareform

from .config import KNN_DEFAULT, PERMUTATIONS_DEFAULT

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


@dataclass
class RandTestResult:
    """Monte Carlo test: observed statistic, permutation p-value and null draws."""

    observed: float
    p_value: float
    sims: np.ndarray


@dataclass
class SPCAResult:
    """Spatial PCA (Jombart et al. 2008).

    eigenvalues are var * Moran's I of each axis; positive ones describe
    global structure (neighbours alike), negative ones local structure
    (neighbours differ).
    """

    eigenvalues: np.ndarray  # all non-null eigenvalues, decreasing
    axes: np.ndarray         # (n_snp, nfposi + nfnega) locus loadings
    scores: np.ndarray       # (n_ind, nfposi + nfnega)
    lag_scores: np.ndarray   # (n_ind, nfposi + nfnega), W @ scores
    moran: np.ndarray        # Moran's I of each retained axis
    variance: np.ndarray     # variance of each retained axis
    nfposi: int
    nfnega: int


def great_circle_distance(lat: np.ndarray, lon: np.ndarray) -> np.ndarray:
    """Pairwise haversine distance in km between points in degrees."""
    lat = np.deg2rad(np.asarray(lat, dtype=np.float64))
    lon = np.deg2rad(np.asarray(lon, dtype=np.float64))
    dlat = lat[:, None] - lat[None, :]
    dlon = lon[:, None] - lon[None, :]
    a = np.sin(dlat / 2.0) ** 2 + np.cos(lat[:, None]) * np.cos(lat[None, :]) * np.sin(dlon / 2.0) ** 2
    return 2.0 * EARTH_RADIUS_KM * np.arcsin(np.sqrt(np.clip(a, 0.0, 1.0)))


def euclidean_distance(X: np.ndarray) -> np.ndarray:
    """Pairwise Euclidean distance between rows of a dosage matrix."""
    X = np.asarray(X, dtype=np.float64)
    if np.isnan(X).any():
        col_mean = np.nanmean(X, axis=0)
        X = np.where(np.isnan(X), col_mean[None, :], X)
    return squareform(pdist(X, metric="euclidean"))


def connection_network(
    lat: np.ndarray,
    lon: np.ndarray,
    kind: str = "delaunay",
    k: int = KNN_DEFAULT,
    d_max: Optional[float] = None,
) -> np.ndarray:
    """Row-standardised spatial weights between samples.

    kind:
      - 'delaunay': Delaunay triangulation on (lon, lat)
      - 'knn':      k nearest neighbours by great-circle distance, symmetrised
      - 'distance': all pairs closer than d_max km
    """
    lat = np.asarray(lat, dtype=np.float64)
    lon = np.asarray(lon, dtype=np.float64)
    n = lat.shape[0]
    if n < 3:
        raise ValueError("A connection network needs at least three samples.")
    kind = kind.lower()
    adj = np.zeros((n, n), dtype=bool)

    if kind == "delaunay":
        # Joggled input tolerates duplicate or collinear coordinates.
        tri = Delaunay(np.column_stack([lon, lat]), qhull_options="QJ")
        for simplex in tri.simplices:
            for a in simplex:
                for b in simplex:
                    if a != b:
                        adj[a, b] = True
    elif kind == "knn":
        if not 1 <= k < n:
            raise ValueError("k must be between 1 and n_samples - 1.")
        dist = great_circle_distance(lat, lon)
        np.fill_diagonal(dist, np.inf)
        nearest = np.argsort(dist, axis=1)[:, :k]
        rows = np.repeat(np.arange(n), k)
        adj[rows, nearest.ravel()] = True
        adj |= adj.T
    elif kind == "distance":
        if d_max is None or d_max <= 0:
            raise ValueError("kind='distance' requires a positive d_max (km).")
        dist = great_circle_distance(lat, lon)
        adj = dist <= d_max
        np.fill_diagonal(adj, False)
    else:
        raise ValueError(f"Unknown network kind '{kind}' (expected delaunay, knn or distance).")

    rowsum = adj.sum(axis=1)
    if np.any(rowsum == 0):
        raise ValueError(f"{int(np.sum(rowsum == 0))} samples have no neighbours in the network.")
    logger.debug("Connection network (%s): %d edges", kind, int(adj.sum() // 2))
    return adj / rowsum[:, None]


def _prepare(X: np.ndarray, scale: bool) -> np.ndarray:
    X = np.asarray(X, dtype=np.float64)
    col_mean = np.nanmean(X, axis=0) if np.isnan(X).any() else X.mean(axis=0)
    col_mean = np.where(np.isfinite(col_mean), col_mean, 0.0)
    X = np.where(np.isnan(X), col_mean[None, :], X) - col_mean[None, :]
    if scale:
        sd = X.std(axis=0)
        X = np.where(sd[None, :] > 0, X / np.where(sd > 0, sd, 1.0)[None, :], 0.0)
    return X


def moran_i(x: np.ndarray, weights: np.ndarray) -> float:
    """Moran's I of a centred variable under row-standardised weights."""
    x = np.asarray(x, dtype=np.float64)
    x = x - x.mean()
    denom = float(x @ x)
    if denom == 0.0:
        return float("nan")
    return float(x @ weights @ x) / denom


def spca(
    X: np.ndarray,
    weights: np.ndarray,
    nfposi: int = 2,
    nfnega: int = 0,
    scale: bool = False,
) -> SPCAResult:
    """Spatial PCA of a sample x locus matrix under a connection network.

    Diagonalises X' (W + W')/2 X / n, with X column-centred (NaN -> mean).
    """
    Xc = _prepare(X, scale)
    n = Xc.shape[0]
    W = np.asarray(weights, dtype=np.float64)
    if W.shape != (n, n):
        raise ValueError("weights must be an (n_ind, n_ind) matrix.")
    Ws = 0.5 * (W + W.T)

    # Eigenvectors lie in the row space of X: work in the SVD basis.
    U, S, Vt = np.linalg.svd(Xc, full_matrices=False)
    keep = S > 1e-10 * max(S.max(initial=0.0), 1.0)
    U, S, Vt = U[:, keep], S[keep], Vt[keep]
    B = (S[:, None] * (U.T @ Ws @ U)) * S[None, :] / n
    evals, Q = np.linalg.eigh(B)
    order = np.argsort(evals)[::-1]
    evals, Q = evals[order], Q[:, order]
    axes_all = Vt.T @ Q

    r = evals.size
    nfposi = int(min(nfposi, r))
    nfnega = int(min(nfnega, r - nfposi))
    idx = list(range(nfposi)) + list(range(r - nfnega, r))
    axes = axes_all[:, idx]
    scores = Xc @ axes
    lag = W @ scores
    moran = np.array([moran_i(scores[:, j], W) for j in range(scores.shape[1])])
    variance = scores.var(axis=0)

    return SPCAResult(
        eigenvalues=evals,
        axes=axes,
        scores=scores,
        lag_scores=lag,
        moran=moran,
        variance=variance,
        nfposi=nfposi,
        nfnega=nfnega,
    )


def _moran_eigenvectors(weights: np.ndarray):
    n = weights.shape[0]
    Ws = 0.5 * (weights + weights.T)
    H = np.eye(n) - np.full((n, n), 1.0 / n)
    evals, evecs = np.linalg.eigh(H @ Ws @ H)
    order = np.argsort(evals)[::-1]
    evals, evecs = evals[order], evecs[:, order]
    tol = 1e-10
    return evecs[:, evals > tol], evecs[:, evals < -tol][:, ::-1]


def _max_mean_r2(X: np.ndarray, E: np.ndarray) -> float:
    """Largest mean R^2 (over columns of X) obtained with a single column of E."""
    if E.shape[1] == 0:
        return 0.0
    norm2 = np.sum(X**2, axis=0)
    use = norm2 > 0
    if not use.any():
        return 0.0
    proj = (E.T @ X[:, use]) ** 2  # (m, p)
    r2 = proj / norm2[use][None, :]
    return float(r2.mean(axis=1).max())


def spca_tests(
    X: np.ndarray,
    weights: np.ndarray,
    permutations: int = PERMUTATIONS_DEFAULT,
    seed: Optional[int] = None,
) -> tuple[RandTestResult, RandTestResult]:
    """Global and local structure tests (global.rtest / local.rtest).

    The statistic is the largest mean R^2 of the loci regressed on any one
    positive (global) or negative (local) Moran eigenvector; the null
    distribution permutes samples over locations.
    """
    Xc = _prepare(X, scale=False)
    W = np.asarray(weights, dtype=np.float64)
    n = Xc.shape[0]
    if W.shape != (n, n):
        raise ValueError("weights must be an (n_ind, n_ind) matrix.")
    E_pos, E_neg = _moran_eigenvectors(W)
    rng = np.random.default_rng(seed)

    obs_g = _max_mean_r2(Xc, E_pos)
    obs_l = _max_mean_r2(Xc, E_neg)
    sims_g = np.empty(permutations)
    sims_l = np.empty(permutations)
    for i in range(permutations):
        Xp = Xc[rng.permutation(Xc.shape[0])]
        sims_g[i] = _max_mean_r2(Xp, E_pos)
        sims_l[i] = _max_mean_r2(Xp, E_neg)

    def _result(obs: float, sims: np.ndarray) -> RandTestResult:
        p = (np.sum(sims >= obs) + 1.0) / (sims.size + 1.0)
        return RandTestResult(observed=obs, p_value=float(p), sims=sims)

    glob, loc = _result(obs_g, sims_g), _result(obs_l, sims_l)
    logger.info("sPCA global test p=%.4f, local test p=%.4f", glob.p_value, loc.p_value)
    return glob, loc


def mantel_test(
    d1: np.ndarray,
    d2: np.ndarray,
    permutations: int = PERMUTATIONS_DEFAULT,
    seed: Optional[int] = None,
) -> RandTestResult:
    """Mantel test: Pearson r between two distance matrices, one-sided (greater)."""
    d1 = np.asarray(d1, dtype=np.float64)
    d2 = np.asarray(d2, dtype=np.float64)
    if d1.shape != d2.shape or d1.shape[0] != d1.shape[1]:
        raise ValueError("Mantel test needs two square matrices of the same shape.")
    n = d1.shape[0]
    if n < 3:
        raise ValueError("Mantel test needs at least three samples.")
    iu = np.triu_indices(n, k=1)
    y = d2[iu]

    def _r(a: np.ndarray) -> float:
        x = a[iu]
        sx, sy = x.std(), y.std()
        if sx == 0 or sy == 0:
            return float("nan")
        return float(np.mean((x - x.mean()) * (y - y.mean())) / (sx * sy))

    obs = _r(d1)
    if not np.isfinite(obs):
        raise ValueError("Mantel test is undefined when a distance matrix is constant off the diagonal.")
    rng = np.random.default_rng(seed)
    sims = np.empty(permutations)
    for i in range(permutations):
        perm = rng.permutation(n)
        sims[i] = _r(d1[np.ix_(perm, perm)])
    p = (np.sum(sims >= obs) + 1.0) / (permutations + 1.0)
    logger.info("Mantel r=%.4f, p=%.4f", obs, p)
    return RandTestResult(observed=obs, p_value=float(p), sims=sims)

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from .config import (
    MAX_K_DEFAULT,
    PERC_PCA_DEFAULT,
    UMAP_MIN_DIST_DEFAULT,
    UMAP_NEIGHBORS_DEFAULT,
)

logger = logging.getLogger(__name__)


@dataclass
class PCAResult:
    """PCA of a sample x locus matrix.

    eigenvalues and var_explained cover every component; scores and loadings
    only the retained ones.
    """

    scores: np.ndarray         # (n_ind, n_pc)
    loadings: np.ndarray       # (n_snp, n_pc)
    eigenvalues: np.ndarray    # (n_comp,)
    var_explained: np.ndarray  # (n_comp,), fractions summing to 1

    @property
    def n_pc(self) -> int:
        return int(self.scores.shape[1])


@dataclass
class ClusterResult:
    """k-means cluster search on PC scores (find.clusters analogue)."""

    k: int
    labels: np.ndarray   # (n_ind,), 0..k-1
    ks: np.ndarray       # candidate k values
    bic: np.ndarray      # BIC for each candidate


@dataclass
class DAPCResult:
    """Discriminant Analysis of Principal Components on genotype-based PCs."""

    sample_ids: np.ndarray          # shape (n_ind,)
    groups: np.ndarray              # shape (n_ind,)
    group_names: List[str]
    pc_scores: np.ndarray           # shape (n_ind, n_pc)
    pc_eigenvalues: np.ndarray      # shape (n_pc,)
    lda_scores: np.ndarray          # shape (n_ind, n_disc)
    lda_loadings: np.ndarray        # shape (n_pc, n_disc)
    lda_eigenvalues: np.ndarray     # shape (n_disc,)
    posterior: np.ndarray           # shape (n_ind, n_groups)
    assignment: np.ndarray          # shape (n_ind,), group names

    @property
    def assignment_rate(self) -> float:
        return float(np.mean(self.assignment == self.groups))


def _center(X: np.ndarray) -> np.ndarray:
    X = np.asarray(X, dtype=np.float64)
    col_mean = np.nanmean(X, axis=0) if np.isnan(X).any() else X.mean(axis=0)
    col_mean = np.where(np.isfinite(col_mean), col_mean, 0.0)
    X = np.where(np.isnan(X), col_mean[None, :], X)
    return X - col_mean[None, :]


def pca(
    X: np.ndarray,
    n_pc: Optional[int] = None,
    perc_pca: float = PERC_PCA_DEFAULT,
) -> PCAResult:
    """PCA via SVD on the column-centred matrix; NaN cells take the column mean.

    Retains n_pc components, or if None, the fewest explaining perc_pca
    percent of the variance.
    """
    Xc = _center(X)
    n_ind = Xc.shape[0]
    if n_ind < 2:
        raise ValueError("PCA requires at least two samples.")

    U, S, Vt = np.linalg.svd(Xc, full_matrices=False)
    evals = S**2 / (n_ind - 1)
    total = evals.sum()
    var_expl = evals / total if total > 0 else np.zeros_like(evals)
    cum = 100.0 * np.cumsum(var_expl)

    if n_pc is None:
        k = int(min(np.sum(cum < perc_pca) + 1, len(evals)))
    else:
        k = int(min(n_pc, len(evals)))
    if k < 1:
        k = 1

    return PCAResult(
        scores=U[:, :k] * S[:k],
        loadings=Vt[:k].T,
        eigenvalues=evals,
        var_explained=var_expl,
    )


def find_clusters(
    scores: np.ndarray,
    max_k: int = MAX_K_DEFAULT,
    n_init: int = 10,
    seed: Optional[int] = None,
) -> ClusterResult:
    """Choose a number of genetic clusters by k-means and BIC.

    BIC = n log(RSS / n) + k log(n), evaluated for k = 1..max_k; the k with
    the lowest BIC is kept.
    """
    from sklearn.cluster import KMeans

    scores = np.asarray(scores, dtype=np.float64)
    n = scores.shape[0]
    max_k = int(min(max_k, n - 1))
    if max_k < 1:
        raise ValueError("find_clusters requires at least two samples.")

    ks = np.arange(1, max_k + 1)
    bic = np.zeros(ks.size, dtype=np.float64)
    labels_by_k = []
    for i, k in enumerate(ks):
        if k == 1:
            labels = np.zeros(n, dtype=int)
            rss = float(np.sum((scores - scores.mean(axis=0)) ** 2))
        else:
            km = KMeans(n_clusters=int(k), n_init=n_init, random_state=seed)
            labels = km.fit_predict(scores)
            rss = float(km.inertia_)
        rss = max(rss, 1e-12)
        bic[i] = n * np.log(rss / n) + k * np.log(n)
        labels_by_k.append(labels)

    best = int(np.argmin(bic))
    logger.info("find_clusters: lowest BIC at k=%d", ks[best])
    return ClusterResult(k=int(ks[best]), labels=labels_by_k[best], ks=ks, bic=bic)


def dapc(
    X: np.ndarray,
    groups: Sequence,
    sample_ids: Sequence[str],
    n_pca: Optional[int] = None,
    perc_pca: float = PERC_PCA_DEFAULT,
) -> DAPCResult:
    """DAPC on a dosage matrix.

    Steps:
      1. PCA via SVD on the centred matrix.
      2. Choose n_pca PCs based on perc_pca if not given, capped at
         (n_ind - n_groups) // 3.
      3. LDA on these PC scores with class labels 'groups'.
      4. Posterior group membership from Gaussian densities with pooled
         covariance in discriminant space, priors proportional to group size.
    """
    classes = np.asarray(groups).astype(str).astype(object)
    sample_ids = np.asarray(sample_ids)
    uniq = np.unique(classes)
    n_classes = len(uniq)
    if n_classes < 2:
        raise ValueError("DAPC requires at least two groups.")
    if classes.shape[0] != np.asarray(X).shape[0]:
        raise ValueError("groups must have one label per sample.")

    res = pca(X, n_pc=n_pca, perc_pca=perc_pca)
    pc_scores = res.scores
    k = pc_scores.shape[1]
    if n_pca is None:
        max_pc = max(1, (classes.shape[0] - n_classes) // 3)
        if k > max_pc:
            logger.info("DAPC: %d PCs reach %.0f%% variance, keeping %d", k, perc_pca, max_pc)
            k = max_pc
            pc_scores = pc_scores[:, :k]

    mu = pc_scores.mean(axis=0)
    Sw = np.zeros((k, k), dtype=np.float64)
    Sb = np.zeros((k, k), dtype=np.float64)

    for lab in uniq:
        idx = np.where(classes == lab)[0]
        Xc = pc_scores[idx, :]
        mu_c = Xc.mean(axis=0)
        Sw += (Xc - mu_c).T @ (Xc - mu_c)
        diff = (mu_c - mu).reshape(-1, 1)
        Sb += idx.size * (diff @ diff.T)

    # Generalized eigenproblem Sw^{-1} Sb.
    Sw_inv = np.linalg.pinv(Sw)
    A = Sw_inv @ Sb
    eigvals, eigvecs = np.linalg.eig(A)
    eigvals = eigvals.real
    eigvecs = eigvecs.real

    order = np.argsort(eigvals)[::-1]
    eigvals = eigvals[order]
    eigvecs = eigvecs[:, order]

    n_disc = min(k, n_classes - 1)
    lda_loadings = eigvecs[:, :n_disc]
    lda_scores = pc_scores @ lda_loadings

    posterior = _membership_posterior(lda_scores, classes, uniq)
    assignment = uniq[np.argmax(posterior, axis=1)].astype(object)

    logger.info(
        "DAPC: %d PCs, %d discriminant functions, %.1f%% correctly reassigned",
        k, n_disc, 100.0 * np.mean(assignment == classes),
    )
    return DAPCResult(
        sample_ids=sample_ids,
        groups=classes,
        group_names=[str(u) for u in uniq],
        pc_scores=pc_scores,
        pc_eigenvalues=res.eigenvalues[:k],
        lda_scores=lda_scores,
        lda_loadings=lda_loadings,
        lda_eigenvalues=eigvals[:n_disc],
        posterior=posterior,
        assignment=assignment,
    )


def _membership_posterior(
    scores: np.ndarray,
    classes: np.ndarray,
    uniq: np.ndarray,
) -> np.ndarray:
    n, d = scores.shape
    means = np.vstack([scores[classes == lab].mean(axis=0) for lab in uniq])
    resid = scores - means[np.searchsorted(uniq, classes)]
    dof = max(n - len(uniq), 1)
    cov = resid.T @ resid / dof
    cov_inv = np.linalg.pinv(cov + 1e-9 * np.eye(d))
    prior = np.array([np.mean(classes == lab) for lab in uniq])

    diff = scores[:, None, :] - means[None, :, :]  # (n, g, d)
    maha = np.einsum("ngd,de,nge->ng", diff, cov_inv, diff)
    logp = np.log(prior)[None, :] - 0.5 * maha
    logp -= logp.max(axis=1, keepdims=True)
    post = np.exp(logp)
    return post / post.sum(axis=1, keepdims=True)


def umap_embedding(
    scores: np.ndarray,
    n_neighbors: int = UMAP_NEIGHBORS_DEFAULT,
    min_dist: float = UMAP_MIN_DIST_DEFAULT,
    n_components: int = 2,
    seed: Optional[int] = None,
) -> np.ndarray:
    """UMAP embedding of PC scores (or any sample x feature matrix)."""
    import umap

    scores = np.asarray(scores, dtype=np.float64)
    n = scores.shape[0]
    if n < 3:
        raise ValueError("UMAP requires at least three samples.")
    n_neighbors = max(2, min(n_neighbors, n - 1))
    reducer = umap.UMAP(
        n_neighbors=n_neighbors,
        min_dist=min_dist,
        n_components=n_components,
        random_state=seed,
    )
    return np.asarray(reducer.fit_transform(scores), dtype=np.float64)

from __future__ import annotations

from typing import Callable, Optional

import jax.numpy as jnp
import numpy as np
from jax.scipy.special import betaln

from .config import CONTAM_RATE_DEFAULT, ERROR_RATE_DEFAULT, OVERDISPERSION_DEFAULT


# float32-safe clip for proportions passed to log().
_EPS = 1e-6

ReadModelFn = Callable[[jnp.ndarray, jnp.ndarray, jnp.ndarray], jnp.ndarray]


def loglik_binom(alt: jnp.ndarray, depth: jnp.ndarray, q: jnp.ndarray) -> jnp.ndarray:
    """Binomial log-likelihood of alt reads, without the binomial coefficient."""
    q = jnp.clip(q, _EPS, 1.0 - _EPS)
    return alt * jnp.log(q) + (depth - alt) * jnp.log1p(-q)


def loglik_betabinom(
    alt: jnp.ndarray,
    depth: jnp.ndarray,
    q: jnp.ndarray,
    overdispersion: float = OVERDISPERSION_DEFAULT,
) -> jnp.ndarray:
    """Beta-binomial log-likelihood with alpha = q*od, beta = (1-q)*od.

    The binomial coefficient is dropped; it does not depend on genotype.
    """
    q = jnp.clip(q, _EPS, 1.0 - _EPS)
    od = jnp.asarray(overdispersion, dtype=q.dtype)
    a = q * od
    b = (1.0 - q) * od
    return betaln(alt + a, depth - alt + b) - betaln(a, b)


def make_read_model(model: str = "bb", overdispersion: Optional[float] = None) -> ReadModelFn:
    """Factory for read-count models: 'bb' (beta-binomial) or 'binom'."""
    model = model.lower()
    if model not in {"bb", "binom"}:
        raise ValueError(f"Unsupported read model '{model}' (expected 'bb' or 'binom').")

    if model == "binom":
        return loglik_binom

    if overdispersion is None:
        overdispersion = OVERDISPERSION_DEFAULT
    if not overdispersion > 0:
        raise ValueError("overdispersion must be positive.")

    def fn(alt: jnp.ndarray, depth: jnp.ndarray, q: jnp.ndarray) -> jnp.ndarray:
        return loglik_betabinom(alt, depth, q, overdispersion=overdispersion)

    return fn


def expected_alt_proportion(
    ploidy: int,
    p_contam,
    contam_rate: float = CONTAM_RATE_DEFAULT,
    error_rate: float = ERROR_RATE_DEFAULT,
) -> np.ndarray:
    """Expected proportion of alt reads for dosages 0..ploidy.

    p_contam is the alt allele frequency of the contaminating pool; it may be
    an array, in which case the dosage axis is appended last.
    """
    k = np.arange(ploidy + 1, dtype=np.float64) / float(ploidy)
    p_contam = np.asarray(p_contam, dtype=np.float64)[..., None]
    q = k * (1.0 - contam_rate) + contam_rate * p_contam
    return q * (1.0 - error_rate) + (1.0 - q) * error_rate


def genotype_log_likelihoods(
    ref: np.ndarray,
    alt: np.ndarray,
    ploidy: np.ndarray,
    allele_freq: np.ndarray,
    read_model: ReadModelFn,
    contam_rate: float = CONTAM_RATE_DEFAULT,
    error_rate: float = ERROR_RATE_DEFAULT,
) -> np.ndarray:
    """Log-likelihood of reads for every dosage, shape (n_ind, n_snp, max_ploidy+1).

    Dosages above a sample's ploidy are -inf. Zero-depth cells are 0 for all
    valid dosages.
    """
    ref = np.asarray(ref, dtype=np.float64)
    alt = np.asarray(alt, dtype=np.float64)
    ploidy = np.asarray(ploidy, dtype=np.int32)
    allele_freq = np.asarray(allele_freq, dtype=np.float64)
    n_ind, n_snp = ref.shape
    max_ploidy = int(ploidy.max())
    depth = ref + alt

    out = np.full((n_ind, n_snp, max_ploidy + 1), -np.inf, dtype=np.float64)
    # Samples of one ploidy share the dosage grid; evaluate them as a block.
    for pl in np.unique(ploidy):
        rows = np.where(ploidy == pl)[0]
        q = expected_alt_proportion(int(pl), allele_freq, contam_rate, error_rate)
        q = np.broadcast_to(q, (n_snp, int(pl) + 1))
        ll = read_model(
            jnp.asarray(alt[rows][:, :, None]),
            jnp.asarray(depth[rows][:, :, None]),
            jnp.asarray(q[None, :, :]),
        )
        out[rows, :, : int(pl) + 1] = np.asarray(ll, dtype=np.float64)
    return out

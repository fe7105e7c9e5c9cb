from __future__ import annotations

import os
import unittest

os.environ.setdefault("JAX_PLATFORM_NAME", "cpu")
os.environ.setdefault("JAX_PLATFORMS", "cpu")

import numpy as np
import pandas as pd

from hypothesis import assume, given, settings
from hypothesis import strategies as st
from hypothesis.extra import numpy as hnp

from radpop import genotyping, hindhe, io, likelihood, merge, popgen, spatial
from tests.jax_preflight import assert_cpu_backend

assert_cpu_backend()


@st.composite
def _ref_alt_arrays(draw, min_value: int = 0, max_value: int = 30):
    n_ind = draw(st.integers(min_value=1, max_value=6))
    n_snp = draw(st.integers(min_value=1, max_value=8))
    ref = draw(
        hnp.arrays(
            dtype=np.int32,
            shape=(n_ind, n_snp),
            elements=st.integers(min_value=min_value, max_value=max_value),
        )
    )
    alt = draw(
        hnp.arrays(
            dtype=np.int32,
            shape=(n_ind, n_snp),
            elements=st.integers(min_value=min_value, max_value=max_value),
        )
    )
    return ref, alt


@st.composite
def _ploidies(draw, n: int):
    return np.asarray(draw(st.lists(st.sampled_from([2, 4, 6]), min_size=n, max_size=n)), dtype=np.int32)


@st.composite
def _freq_table(draw, min_pops: int = 2, max_pops: int = 5):
    k = draw(st.integers(min_value=min_pops, max_value=max_pops))
    n_snp = draw(st.integers(min_value=1, max_value=8))
    P = draw(
        hnp.arrays(
            dtype=np.float64,
            shape=(k, n_snp),
            elements=st.floats(min_value=0.0, max_value=1.0, allow_nan=False, allow_infinity=False),
        )
    )
    return pd.DataFrame(P, index=[f"P{i}" for i in range(k)])


@st.composite
def _coords(draw, min_size: int = 4, max_size: int = 12):
    n = draw(st.integers(min_value=min_size, max_value=max_size))
    lat = draw(
        hnp.arrays(
            dtype=np.float64,
            shape=(n,),
            elements=st.floats(min_value=-60.0, max_value=60.0, allow_nan=False, allow_infinity=False),
        )
    )
    lon = draw(
        hnp.arrays(
            dtype=np.float64,
            shape=(n,),
            elements=st.floats(min_value=-170.0, max_value=170.0, allow_nan=False, allow_infinity=False),
        )
    )
    return lat, lon


class TestHindHeProperties(unittest.TestCase):
    @given(_ref_alt_arrays())
    @settings(max_examples=50, deadline=None)
    def test_hind_he_nan_below_two_reads(self, arrays) -> None:
        ref, alt = arrays
        mat = hindhe.hind_he_matrix(ref, alt)
        depth = ref + alt
        self.assertTrue(np.all(np.isnan(mat[depth < 2])))
        finite = mat[np.isfinite(mat)]
        self.assertTrue(np.all(finite >= -1e-12))

    @given(_ref_alt_arrays())
    @settings(max_examples=50, deadline=None)
    def test_read_allele_freq_range(self, arrays) -> None:
        ref, alt = arrays
        p = hindhe.read_allele_freq(ref, alt)
        finite = p[np.isfinite(p)]
        self.assertTrue(np.all((finite >= 0.0) & (finite <= 1.0)))
        has_reads = (ref + alt).sum(axis=0) > 0
        self.assertTrue(np.all(np.isfinite(p[has_reads])))

    @given(
        st.integers(min_value=2, max_value=8),
        st.floats(min_value=0.0, max_value=1.0, allow_nan=False, allow_infinity=False),
    )
    @settings(max_examples=50, deadline=None)
    def test_inbreeding_inverts_expectation(self, ploidy: int, F: float) -> None:
        hh = hindhe.expected_hind_he(ploidy, F)
        self.assertAlmostEqual(float(hindhe.inbreeding_from_hind_he(hh, ploidy)), F, places=9)


class TestLikelihoodProperties(unittest.TestCase):
    @given(
        st.integers(min_value=1, max_value=8),
        st.floats(min_value=0.0, max_value=1.0, allow_nan=False, allow_infinity=False),
        st.floats(min_value=0.0, max_value=0.1, allow_nan=False, allow_infinity=False),
        st.floats(min_value=0.0, max_value=0.1, allow_nan=False, allow_infinity=False),
    )
    @settings(max_examples=50, deadline=None)
    def test_expected_alt_proportion_monotone(self, ploidy, p, contam, err) -> None:
        q = likelihood.expected_alt_proportion(ploidy, p, contam, err)
        self.assertEqual(q.shape, (ploidy + 1,))
        self.assertTrue(np.all((q >= 0.0) & (q <= 1.0)))
        self.assertTrue(np.all(np.diff(q) >= -1e-12))

    @given(_ref_alt_arrays(max_value=15), st.data())
    @settings(max_examples=30, deadline=None)
    def test_posteriors_sum_to_one(self, arrays, data) -> None:
        ref, alt = arrays
        ploidy = data.draw(_ploidies(ref.shape[0]))
        p = data.draw(
            hnp.arrays(
                dtype=np.float64,
                shape=(ref.shape[1],),
                elements=st.floats(min_value=0.01, max_value=0.99, allow_nan=False, allow_infinity=False),
            )
        )
        ll = likelihood.genotype_log_likelihoods(ref, alt, ploidy, p, likelihood.make_read_model("bb", 9.0))
        post = genotyping.posterior_from(genotyping.hwe_priors(p, ploidy), ll)
        np.testing.assert_allclose(post.sum(axis=2), 1.0, atol=1e-8)
        for i, pl in enumerate(ploidy):
            self.assertTrue(np.all(post[i, :, pl + 1:] == 0.0))

    @given(
        hnp.arrays(
            dtype=np.float64,
            shape=st.integers(min_value=1, max_value=6),
            elements=st.floats(min_value=0.0, max_value=1.0, allow_nan=False, allow_infinity=False),
        ),
        st.sampled_from([1, 2, 3, 4, 6]),
        st.floats(min_value=0.0, max_value=1.0, allow_nan=False, allow_infinity=False),
    )
    @settings(max_examples=50, deadline=None)
    def test_hwe_priors_sum_to_one(self, p, ploidy, F) -> None:
        pri = genotyping.hwe_priors(p, np.array([ploidy]), inbreeding=F)
        np.testing.assert_allclose(pri.sum(axis=2), 1.0, atol=1e-9)
        self.assertTrue(np.all(pri >= 0.0))


class TestMergeProperties(unittest.TestCase):
    @given(_ref_alt_arrays(), st.data())
    @settings(max_examples=40, deadline=None)
    def test_merge_preserves_total_depth(self, arrays, data) -> None:
        ref, alt = arrays
        n_ind, n_snp = ref.shape
        ids = [f"S{i}" for i in range(n_ind)]
        groups = data.draw(st.lists(st.sampled_from(["G1", "G2", "G3"]), min_size=n_ind, max_size=n_ind))
        ra = io.RADData(ids, np.array(["1"] * n_snp), np.arange(n_snp), ref, alt, [2] * n_ind)
        mapping = merge.MergeMapping(sample_ids=np.array(ids), merge_ids=np.array(groups))
        merged = merge.merge_ra_samples(ra, mapping)
        self.assertEqual(merged.n_ind, len(set(groups)))
        np.testing.assert_array_equal(merged.ref.sum(axis=0), ref.sum(axis=0))
        np.testing.assert_array_equal(merged.alt.sum(axis=0), alt.sum(axis=0))


class TestPopDiffProperties(unittest.TestCase):
    @given(_freq_table(), st.sampled_from(["Gst", "Jost's D", "G'st"]))
    @settings(max_examples=50, deadline=None)
    def test_bounded(self, freqs: pd.DataFrame, metric: str) -> None:
        res = popgen.calc_pop_diff(freqs, metric=metric)
        vals = res.per_locus.to_numpy()
        vals = vals[np.isfinite(vals)]
        self.assertTrue(np.all(vals >= -1e-9))
        self.assertTrue(np.all(vals <= 1.0 + 1e-9))

    @given(_freq_table(min_pops=3))
    @settings(max_examples=30, deadline=None)
    def test_pairwise_symmetric(self, freqs: pd.DataFrame) -> None:
        table = popgen.calc_pop_diff(freqs, metric="Gst", pairwise=True, global_=False).pairwise
        mat = table.to_numpy()
        np.testing.assert_array_equal(mat, mat.T)
        np.testing.assert_array_equal(np.diag(mat), 0.0)


class TestSpatialProperties(unittest.TestCase):
    @given(_coords())
    @settings(max_examples=40, deadline=None)
    def test_knn_rows_sum_to_one(self, coords) -> None:
        lat, lon = coords
        W = spatial.connection_network(lat, lon, kind="knn", k=2)
        np.testing.assert_allclose(W.sum(axis=1), 1.0)
        self.assertTrue(np.all(np.diag(W) == 0.0))

    @given(_coords())
    @settings(max_examples=40, deadline=None)
    def test_great_circle_metric(self, coords) -> None:
        lat, lon = coords
        d = spatial.great_circle_distance(lat, lon)
        np.testing.assert_allclose(d, d.T)
        self.assertTrue(np.all(d >= 0.0))
        self.assertTrue(np.all(d <= np.pi * spatial.EARTH_RADIUS_KM + 1e-6))

    @given(_coords(), st.integers(min_value=0, max_value=2**16))
    @settings(max_examples=25, deadline=None)
    def test_mantel_r_bounded(self, coords, seed) -> None:
        lat, lon = coords
        rng = np.random.default_rng(seed)
        X = rng.random((lat.size, 5))
        geo = spatial.great_circle_distance(lat, lon)
        assume(np.ptp(geo[np.triu_indices(lat.size, k=1)]) > 1e-6)
        res = spatial.mantel_test(spatial.euclidean_distance(X), geo, permutations=9, seed=seed)
        self.assertTrue(np.isfinite(res.observed))
        self.assertLessEqual(abs(res.observed), 1.0 + 1e-9)
        self.assertGreater(res.p_value, 0.0)
        self.assertLessEqual(res.p_value, 1.0)


class TestStructureProperties(unittest.TestCase):
    @given(
        hnp.arrays(
            dtype=np.float64,
            shape=st.integers(min_value=1, max_value=12),
            elements=st.floats(min_value=1e-3, max_value=1.0, allow_nan=False, allow_infinity=False),
        )
    )
    @settings(max_examples=50, deadline=None)
    def test_broken_stick_count(self, values) -> None:
        var = np.sort(values)[::-1]
        var = var / var.sum()
        k = genotyping._broken_stick_npc(var)
        self.assertGreaterEqual(k, 1)
        self.assertLessEqual(k, var.size)


if __name__ == "__main__":
    unittest.main()
